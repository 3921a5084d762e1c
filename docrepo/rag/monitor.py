"""
Filesystem monitor keeping document bases in sync with the disk.

One watchdog watch per root ``file``/``folder`` source. Raw events arrive
on the observer thread, are handed to the event loop and debounced per
path before being translated into repository operations:

- add        -> new child of the owning folder, then duplicate cleanup
- change     -> re-ingest under the same uuid, or add a folder file not yet known
- unlink     -> remove the root source or the folder child
- unlink_dir -> remove every folder source at or under the path

A watchdog ``moved`` event is an unlink of the source path plus an add of
the destination path.
A change arriving while an add is pending for the same path keeps the add.
"""

import asyncio
import os
from collections.abc import Callable
from functools import partial
from pathlib import Path

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch

from docrepo.observability.metrics import get_metrics
from docrepo.rag.config import RagConfig
from docrepo.rag.docbase import DocumentBase
from docrepo.rag.repository import DocRepoListener, DocumentRepository
from docrepo.rag.schemas import DocumentSource, QueueTask, SourceType
from docrepo.rag.timers import AsyncioScheduler, Scheduler, TimerHandle

logger = structlog.get_logger(__name__)

ADD = "add"
CHANGE = "change"
UNLINK = "unlink"
UNLINK_DIR = "unlink_dir"

# add events wait longer so move-induced unlink/add pairs settle first
ADD_DELAY_FACTOR = 1.5


def _is_within(path: str, folder: str) -> bool:
    """True when ``path`` is strictly inside ``folder``."""
    path_obj, folder_obj = Path(path), Path(folder)
    return path_obj != folder_obj and path_obj.is_relative_to(folder_obj)


class _SourceEventHandler(FileSystemEventHandler):
    """Forwards watchdog events for one watched source to the monitor."""

    def __init__(self, monitor: "DocumentMonitor", origin: str, is_folder: bool):
        super().__init__()
        self._monitor = monitor
        self.origin = origin
        self.is_folder = is_folder

    def _accepts(self, path: str) -> bool:
        if not self.is_folder:
            return path == self.origin
        if not _is_within(path, self.origin):
            return False
        relative = Path(path).relative_to(self.origin)
        return not any(part.startswith(".") for part in relative.parts)

    def _forward(self, path: str, operation: str) -> None:
        if self._accepts(path):
            self._monitor.dispatch_threadsafe(path, operation)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(os.fsdecode(event.src_path), ADD)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(os.fsdecode(event.src_path), CHANGE)

    def on_deleted(self, event: FileSystemEvent) -> None:
        path = os.fsdecode(event.src_path)
        self._forward(path, UNLINK_DIR if event.is_directory else UNLINK)

    def on_moved(self, event: FileSystemEvent) -> None:
        src = os.fsdecode(event.src_path)
        self._forward(src, UNLINK_DIR if event.is_directory else UNLINK)
        if not event.is_directory:
            self._forward(os.fsdecode(event.dest_path), ADD)


class DocumentMonitor(DocRepoListener):
    """
    Watches filesystem sources and reconciles changes through the repository.

    Usage:
        monitor = DocumentMonitor(repository)
        monitor.start()   # inside a running event loop
        ...
        monitor.stop()
    """

    def __init__(
        self,
        repository: DocumentRepository,
        config: RagConfig | None = None,
        scheduler: Scheduler | None = None,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ):
        self._repo = repository
        self._config = config or RagConfig()
        self._scheduler = scheduler or AsyncioScheduler()
        self._observer_factory = observer_factory

        self._observer: BaseObserver | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._watches: dict[str, tuple[_SourceEventHandler, ObservedWatch]] = {}
        self._pending: dict[str, tuple[TimerHandle, str]] = {}
        self._cleanups: dict[str, tuple[str, str]] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def debounce_delay(self) -> float:
        return self._config.debounce_seconds

    @property
    def watched_paths(self) -> list[str]:
        return list(self._watches)

    @property
    def pending_paths(self) -> list[str]:
        return list(self._pending)

    # ── Lifecycle ───────────────────────────────────────────────

    def start(self) -> None:
        """Watch every root file and folder source and subscribe to the repository."""
        logger.info("Starting document monitor")
        self._loop = asyncio.get_running_loop()
        self._observer = self._observer_factory()

        for base in self._repo.bases:
            for source in base.roots():
                self._add_watch(source.type, source.origin)

        self._observer.start()
        self._repo.add_listener(self)

    def stop(self) -> None:
        logger.info("Stopping document monitor")
        self._repo.remove_listener(self)

        for handle, _ in self._pending.values():
            handle.cancel()
        self._pending.clear()
        self._cleanups.clear()

        if self._observer is not None:
            self._observer.unschedule_all()
            self._observer.stop()
            if self._observer.is_alive():
                self._observer.join()
            self._observer = None

        self._watches.clear()
        get_metrics().active_watchers.set(0)

    async def drain(self) -> None:
        """Wait for dispatched operations to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Watches ─────────────────────────────────────────────────

    def _add_watch(self, source_type: SourceType, origin: str) -> None:
        source_type = SourceType(source_type)
        if not source_type.is_filesystem or origin in self._watches:
            return
        if not os.path.exists(origin):
            logger.warning("Watched path does not exist", path=origin)
            return

        is_folder = source_type == SourceType.FOLDER
        handler = _SourceEventHandler(self, origin, is_folder)
        # files are watched through their directory and filtered to themselves
        watch_path = origin if is_folder else os.path.dirname(origin)
        try:
            watch = self._observer.schedule(handler, watch_path, recursive=is_folder)
        except OSError as e:
            logger.error("Failed to create watcher", path=origin, error=str(e))
            return

        self._watches[origin] = (handler, watch)
        get_metrics().active_watchers.set(len(self._watches))
        logger.debug("Watching", type=source_type.value, path=origin)

    def _remove_watch(self, origin: str) -> None:
        entry = self._watches.pop(origin, None)
        if entry is None:
            return

        handler, watch = entry
        shared = any(other == watch for _, other in self._watches.values())
        if self._observer is not None:
            if shared:
                self._observer.remove_handler_for_watch(handler, watch)
            else:
                self._observer.unschedule(watch)

        get_metrics().active_watchers.set(len(self._watches))
        logger.debug("Stopped watching", path=origin)

    # ── Repository notifications ────────────────────────────────

    def on_document_source_added(
        self, base_id: str, doc_id: str, source_type: SourceType, origin: str
    ) -> None:
        source = self._repo.get_document_source(base_id, doc_id)
        if source is not None and source.parent_id is not None:
            return
        if self._observer is not None:
            self._add_watch(source_type, origin)

    def on_document_source_removed(self, origin: str) -> None:
        self._remove_watch(origin)
        self._clear_pending(origin)

    def on_task_done(self, task: QueueTask, queue_length: int) -> None:
        target = self._cleanups.pop(task.task_id, None)
        if target is not None:
            self._spawn(self.cleanup_duplicates(*target))

    def on_task_error(self, task: QueueTask, error: Exception, queue_length: int) -> None:
        self._cleanups.pop(task.task_id, None)

    # ── Debounce ────────────────────────────────────────────────

    def dispatch_threadsafe(self, path: str, operation: str) -> None:
        """Entry point from the observer thread."""
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self.handle_event, path, operation)

    def handle_event(self, path: str, operation: str) -> None:
        """
        Debounce a raw event: restart the timer for this exact path.

        The latest operation wins, except that a change never downgrades a
        pending add. Writing a new file emits ``created`` then ``modified``
        and the file still has to be added.
        """
        pending = self._pending.get(path)
        if operation == CHANGE and pending is not None and pending[1] == ADD:
            operation = ADD

        self._clear_pending(path)
        delay = self.debounce_delay * (ADD_DELAY_FACTOR if operation == ADD else 1)
        handle = self._scheduler.call_later(delay, partial(self._fire, path, operation))
        self._pending[path] = (handle, operation)

    def pending_operation(self, path: str) -> str | None:
        pending = self._pending.get(path)
        return pending[1] if pending is not None else None

    def _clear_pending(self, path: str) -> None:
        pending = self._pending.pop(path, None)
        if pending is not None:
            pending[0].cancel()

    def _fire(self, path: str, operation: str) -> None:
        self._pending.pop(path, None)
        get_metrics().watcher_events.labels(event=operation).inc()
        self._spawn(self.process_event(path, operation))

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ── Event processing ────────────────────────────────────────

    async def process_event(self, path: str, operation: str) -> None:
        try:
            logger.info("Processing filesystem event", operation=operation, path=path)
            if operation == UNLINK_DIR:
                await self._process_directory(path)
            else:
                await self._process_file(path, operation)
        except Exception:
            logger.exception("Filesystem event failed", operation=operation, path=path)

    def _affected(self, path: str) -> list[tuple[DocumentBase, DocumentSource]]:
        affected = []
        for base in self._repo.bases:
            for root in base.roots():
                if root.type == SourceType.FOLDER:
                    if _is_within(path, root.origin):
                        affected.append((base, root))
                elif root.type == SourceType.FILE and root.origin == path:
                    affected.append((base, root))
        return affected

    async def _process_file(self, path: str, operation: str) -> None:
        affected = self._affected(path)
        if not affected:
            logger.debug("No document base affected", path=path)
            return

        for base, source in affected:
            is_folder = source.type == SourceType.FOLDER

            if operation == ADD:
                if is_folder and os.path.exists(path):
                    await self._add_child(base, source, path)

            elif operation == CHANGE:
                if not os.path.exists(path):
                    continue
                if is_folder:
                    child = base.find_child(source.uuid, path)
                    if child is None:
                        # the add was missed or debounced away
                        await self._add_child(base, source, path)
                    else:
                        await self._repo.add_child_document_source(
                            base.uuid, source.uuid, child.type, child.origin, commit=False
                        )
                else:
                    await self._repo.add_document_source(
                        base.uuid, source.type, source.origin, commit=False
                    )

            elif operation == UNLINK:
                if is_folder:
                    child = base.find_child(source.uuid, path)
                    if child is not None:
                        await self._repo.remove_child_document_source(base.uuid, child.uuid)
                else:
                    await self._repo.remove_document_source(base.uuid, source.uuid)

    async def _add_child(self, base: DocumentBase, folder: DocumentSource, path: str) -> None:
        task_id = await self._repo.add_child_document_source(
            base.uuid, folder.uuid, SourceType.FILE, path, commit=False
        )
        self._cleanups[task_id] = (base.uuid, path)

    async def _process_directory(self, path: str) -> None:
        for base in self._repo.bases:
            for root in base.roots():
                if root.type != SourceType.FOLDER:
                    continue
                if root.origin == path or _is_within(root.origin, path):
                    logger.info("Removing folder source", base=base.name, path=root.origin)
                    await self._repo.remove_document_source(base.uuid, root.uuid)

    async def cleanup_duplicates(self, base_id: str, path: str) -> None:
        """Drop root-level copies of a file that is now a folder child."""
        base = self._repo.get_document_base(base_id)
        if base is None:
            return

        in_folder = any(
            base.find_child(root.uuid, path) is not None
            for root in base.roots()
            if root.type == SourceType.FOLDER
        )
        if not in_folder:
            return

        duplicates = [
            root for root in base.roots()
            if root.type != SourceType.FOLDER and root.origin == path
        ]
        for duplicate in duplicates:
            logger.info("Removing duplicate root document", base=base.name, path=path)
            await self._repo.remove_document_source(base_id, duplicate.uuid)
