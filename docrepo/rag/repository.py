"""
Document repository: the registry of document bases.

Owns:
- the serial ingestion queue and task cancellation
- persisted metadata (``docrepo.json``) for every base and source tree
- the single active vector store connection
- offline reconciliation of filesystem sources
- listener notifications consumed by the filesystem monitor and the CLI

Every storage mutation, queued or direct, runs under one asyncio lock so
watcher-triggered and caller-triggered work never race on a vector store.
"""

import asyncio
import os
import time
import uuid as uuidlib
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from docrepo.config.settings import get_settings
from docrepo.embedding.config import EmbeddingConfig
from docrepo.observability.logging import bind_context, unbind_context
from docrepo.observability.metrics import get_metrics
from docrepo.rag.config import RagConfig
from docrepo.rag.docbase import DocumentBase, EmbedderFactory
from docrepo.rag.errors import CancellationAbort, DatabaseNotFound, ParentNotFound
from docrepo.rag.loader import Loader
from docrepo.rag.queue import TaskQueue
from docrepo.rag.schemas import (
    DocumentSource,
    QueryResult,
    QueueTask,
    RepositoryRecord,
    SourceType,
    TaskOptions,
)
from docrepo.vectorstore import VectorStoreConfig

logger = structlog.get_logger(__name__)

METADATA_FILE_NAME = "docrepo.json"
STORAGE_DIR_NAME = "docrepo"


class DocRepoListener:
    """
    Receiver of repository notifications.

    Subclasses override what they need; every method defaults to a no-op.
    Callbacks run on the event loop and must not block.
    """

    def on_document_source_added(
        self, base_id: str, doc_id: str, source_type: SourceType, origin: str
    ) -> None:
        pass

    def on_document_source_removed(self, origin: str) -> None:
        pass

    def on_task_done(self, task: QueueTask, queue_length: int) -> None:
        pass

    def on_task_error(self, task: QueueTask, error: Exception, queue_length: int) -> None:
        pass


class DocumentRepository:
    """
    Registry of document bases with a cancellable serial ingestion queue.

    Usage:
        repo = DocumentRepository()
        base_id = await repo.create_doc_base("ws-1", "notes", "openai", "text-embedding-3-small")
        doc_id = await repo.add_document_source(base_id, SourceType.FOLDER, "/notes")
        await repo.wait_idle()
        results = await repo.query(base_id, "what is left to do?")
    """

    def __init__(
        self,
        data_dir: Path | None = None,
        config: RagConfig | None = None,
        loader: Loader | None = None,
        embedder_factory: EmbedderFactory | None = None,
        task_queue: TaskQueue | None = None,
        embedding_config: EmbeddingConfig | None = None,
        vector_config: VectorStoreConfig | None = None,
    ):
        self.data_dir = Path(data_dir) if data_dir else get_settings().data_dir
        self._config = config or RagConfig()
        self._base_kwargs: dict[str, Any] = {
            "config": self._config,
            "loader": loader or Loader(),
            "embedder_factory": embedder_factory,
            "embedding_config": embedding_config,
            "vector_config": vector_config,
        }

        self._bases: dict[str, DocumentBase] = {}
        self._listeners: list[DocRepoListener] = []
        self._lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()
        self.active_db: DocumentBase | None = None

        self._queue = task_queue or TaskQueue()
        self._queue.bind(self.process_task)

        self.load()

    # ── Metadata ────────────────────────────────────────────────

    @property
    def metadata_file(self) -> Path:
        return self.data_dir / METADATA_FILE_NAME

    @property
    def storage_dir(self) -> Path:
        return self.data_dir / STORAGE_DIR_NAME

    @property
    def bases(self) -> list[DocumentBase]:
        return list(self._bases.values())

    def load(self) -> None:
        """Read the metadata file; a missing file means an empty repository."""
        self._bases.clear()
        if not self.metadata_file.exists():
            return

        record = RepositoryRecord.model_validate_json(self.metadata_file.read_text(encoding="utf-8"))
        for base_record in record.bases:
            self._bases[base_record.uuid] = DocumentBase.from_record(
                base_record, self.storage_dir, **self._base_kwargs
            )
        logger.debug("Repository loaded", bases=len(self._bases))

    def save(self) -> None:
        """Rewrite the metadata file atomically."""
        record = RepositoryRecord(bases=[base.to_record() for base in self._bases.values()])
        self.data_dir.mkdir(parents=True, exist_ok=True)

        tmp = self.metadata_file.with_name(self.metadata_file.name + ".tmp")
        tmp.write_text(record.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, self.metadata_file)

    # ── Bases ───────────────────────────────────────────────────

    def _require_base(self, base_id: str) -> DocumentBase:
        base = self._bases.get(base_id)
        if base is None:
            raise DatabaseNotFound(base_id)
        return base

    def get_document_base(self, base_id: str) -> DocumentBase | None:
        return self._bases.get(base_id)

    def get_document_source(self, base_id: str, doc_id: str) -> DocumentSource | None:
        base = self._bases.get(base_id)
        return base.get(doc_id) if base else None

    async def create_doc_base(
        self,
        workspace_id: str,
        name: str,
        embedding_engine: str,
        embedding_model: str,
        description: str | None = None,
    ) -> str:
        """Create a base and its vector store; the new base becomes active."""
        base = DocumentBase(
            uuid=str(uuidlib.uuid4()),
            name=name,
            workspace_id=workspace_id,
            embedding_engine=embedding_engine,
            embedding_model=embedding_model,
            storage_dir=self.storage_dir,
            description=description,
            **self._base_kwargs,
        )

        async with self._lock:
            await base.create()
            if self.active_db is not None:
                await self.active_db.disconnect()
            self.active_db = base
            self._bases[base.uuid] = base
            self.save()

        return base.uuid

    async def update_doc_base(
        self, base_id: str, name: str, description: str | None = None
    ) -> None:
        base = self._require_base(base_id)
        base.name = name
        if description is not None:
            base.description = description
        self.save()

    async def delete_doc_base(self, base_id: str) -> None:
        """Delete a base, its storage directory and every source it holds."""
        base = self._require_base(base_id)

        async with self._lock:
            for root in base.roots():
                for child in base.children(root.uuid):
                    self._emit_removed(child.origin)
                self._emit_removed(root.origin)

            if self.active_db is base:
                self.active_db = None
            await base.destroy()
            del self._bases[base_id]
            self.save()

        logger.info("Document base deleted", base=base.name, uuid=base_id)

    async def connect(
        self,
        base_id: str,
        replace_active: bool = True,
        connect_to_db: bool = True,
    ) -> DocumentBase:
        """
        Make a base usable.

        Args:
            replace_active: close the current active connection and track this one
            connect_to_db: open the vector store now
        """
        base = self._require_base(base_id)

        if replace_active and self.active_db is not None and self.active_db is not base:
            await self.active_db.disconnect()
        if connect_to_db:
            await base.connect()
        if replace_active:
            self.active_db = base
        return base

    async def disconnect(self) -> None:
        if self.active_db is not None:
            await self.active_db.disconnect()
            self.active_db = None

    # ── Sources ─────────────────────────────────────────────────

    def is_source_supported(self, source_type: SourceType, origin: str) -> bool:
        return self._base_kwargs["loader"].is_parseable(SourceType(source_type), origin)

    def _pending_task_for(self, base_id: str, parent_id: str | None, origin: str) -> QueueTask | None:
        """Queued or in-flight task for the same source, if any."""
        candidates = list(self._queue.pending())
        current = self._queue.current
        if current is not None and not current.cancelled:
            candidates.insert(0, current)
        for task in candidates:
            if task.base_id == base_id and task.parent_id == parent_id and task.origin == origin:
                return task
        return None

    def _enqueue(self, task: QueueTask) -> str:
        logger.debug("Task queued", task_id=task.task_id, type=task.type.value, origin=task.origin)
        self._queue.submit(task)
        return task.task_id

    async def add_document_source(
        self,
        base_id: str,
        source_type: SourceType,
        origin: str,
        commit: bool = True,
        title: str | None = None,
        skip_size_check: bool = False,
    ) -> str:
        """
        Queue the ingestion of a root source and return its uuid at once.

        Re-adding an origin already in the base reuses its uuid and replaces
        its content.

        Args:
            commit: announce the source to listeners once processed

        Raises:
            DatabaseNotFound: unknown base
        """
        base = self._require_base(base_id)
        source_type = SourceType(source_type)

        existing = base.find_root(origin)
        pending = self._pending_task_for(base_id, None, origin)
        if existing is not None:
            doc_id = existing.uuid
        elif pending is not None:
            doc_id = pending.task_id
        else:
            doc_id = str(uuidlib.uuid4())

        return self._enqueue(
            QueueTask(
                task_id=doc_id,
                base_id=base_id,
                type=source_type,
                origin=origin,
                commit=commit,
                options=TaskOptions(title=title, skip_size_check=skip_size_check),
            )
        )

    async def add_child_document_source(
        self,
        base_id: str,
        parent_id: str,
        source_type: SourceType,
        origin: str,
        commit: bool = True,
    ) -> str:
        """
        Queue the ingestion of one child under an existing container.

        Raises:
            DatabaseNotFound: unknown base
            ParentNotFound: parent_id is not a container of the base
        """
        base = self._require_base(base_id)
        parent = base.get(parent_id)
        if parent is None or not parent.type.is_container:
            raise ParentNotFound(parent_id)

        existing = base.find_child(parent_id, origin)
        pending = self._pending_task_for(base_id, parent_id, origin)
        if existing is not None:
            doc_id = existing.uuid
        elif pending is not None:
            doc_id = pending.task_id
        else:
            doc_id = str(uuidlib.uuid4())

        return self._enqueue(
            QueueTask(
                task_id=doc_id,
                base_id=base_id,
                parent_id=parent_id,
                type=SourceType(source_type),
                origin=origin,
                commit=commit,
            )
        )

    async def update_document_source(self, base_id: str, doc_id: str) -> str | None:
        """Re-ingest a root source (a child id is routed to its container)."""
        base = self._require_base(base_id)
        source = base.get(doc_id)
        if source is None:
            logger.warning("Update of unknown document ignored", base=base.name, doc_id=doc_id)
            return None
        if source.parent_id is not None:
            return await self.update_child_document_source(base_id, doc_id)

        title = source.title if source.type == SourceType.TEXT else None
        return await self.add_document_source(
            base_id, source.type, source.origin, commit=False, title=title
        )

    async def update_child_document_source(self, base_id: str, doc_id: str) -> str | None:
        base = self._require_base(base_id)
        source = base.get(doc_id)
        if source is None or source.parent_id is None:
            logger.warning("Update of unknown child ignored", base=base.name, doc_id=doc_id)
            return None
        return await self.add_child_document_source(
            base_id, source.parent_id, source.type, source.origin, commit=False
        )

    async def remove_document_source(self, base_id: str, doc_id: str) -> None:
        """
        Remove a source and its vectors; containers cascade to their children.

        Unknown ids are logged and ignored.
        """
        base = self._require_base(base_id)
        source = base.get(doc_id)
        if source is None:
            logger.warning("Removal of unknown document ignored", base=base.name, doc_id=doc_id)
            return
        if source.parent_id is not None:
            await self.remove_child_document_source(base_id, doc_id)
            return

        async with self._lock:
            await self.connect(base_id)
            await base.delete_document_source(doc_id, on_progress=self.save)
            self.save()
        self._emit_removed(source.origin)

    async def remove_child_document_source(self, base_id: str, doc_id: str) -> None:
        base = self._require_base(base_id)
        source = base.get(doc_id)
        if source is None or source.parent_id is None:
            logger.warning("Removal of unknown child ignored", base=base.name, doc_id=doc_id)
            return

        async with self._lock:
            await self.connect(base_id)
            await base.delete_child_document_source(doc_id)
            self.save()
        self._emit_removed(source.origin)

    # ── Queue ───────────────────────────────────────────────────

    def cancel_task(self, task_id: str) -> bool:
        """Withdraw a queued task or flag the one in flight. Never raises."""
        return self._queue.cancel(task_id)

    def queue_length(self) -> int:
        return len(self._queue)

    def get_current_queue_item(self) -> QueueTask | None:
        return self._queue.current

    async def wait_idle(self) -> None:
        await self._queue.join()

    async def process_task(self, task: QueueTask) -> None:
        """Run one queued task; failures are reported to listeners, never raised."""
        bind_context(task_id=task.task_id, base_id=task.base_id)
        try:
            await self._run_task(task)
        finally:
            unbind_context("task_id", "base_id")

    async def _run_task(self, task: QueueTask) -> None:
        error: Exception | None = None
        started = time.perf_counter()
        log = logger.bind(type=task.type.value, origin=task.origin)

        def on_stage(stage) -> None:
            task.stage = stage

        async with self._lock:
            try:
                base = self._require_base(task.base_id)
                await self.connect(task.base_id)
                log.info("Processing document")

                if task.is_child:
                    await base.add_child_document_source(
                        task.parent_id,
                        task.task_id,
                        task.type,
                        task.origin,
                        token=task.token,
                        on_stage=on_stage,
                    )
                else:
                    await base.add_document_source(
                        task.task_id,
                        task.type,
                        task.origin,
                        title=task.options.title,
                        skip_size_check=task.options.skip_size_check,
                        token=task.token,
                        on_progress=self.save,
                        on_stage=on_stage,
                    )

                if task.cancelled:
                    error = CancellationAbort(task.task_id)
            except Exception as e:
                error = e
                log.warning("Document processing failed", error=str(e), error_type=type(e).__name__)

            if task.base_id in self._bases:
                self.save()

        remaining = self._queue.pending_count
        metrics = get_metrics()
        if error is None:
            log.info("Document processed", seconds=round(time.perf_counter() - started, 3))
            metrics.record_task(task.type.value, "success")
            if task.commit:
                self._emit(
                    "on_document_source_added", task.base_id, task.task_id, task.type, task.origin
                )
            self._emit("on_task_done", task, remaining)
        else:
            status = "cancelled" if isinstance(error, CancellationAbort) else "error"
            metrics.record_task(task.type.value, status)
            self._emit("on_task_error", task, error, remaining)

    # ── Query ───────────────────────────────────────────────────

    async def query(self, base_id: str, text: str) -> list[QueryResult]:
        """
        Most similar chunks of a base, best first.

        Raises:
            DatabaseNotFound: unknown base
        """
        base = self._require_base(base_id)
        async with self._lock:
            await self.connect(base_id)
            return await base.query(text)

    # ── Offline reconciliation ──────────────────────────────────

    async def scan_for_updates(self, callback: Callable[[], None] | None = None) -> dict[str, int]:
        """
        Reconcile filesystem sources with changes made while not running.

        Modified files are re-ingested, new files under folders are added as
        children and vanished files or folders are removed. ``callback`` runs
        once every resulting task has been processed.
        """
        totals = {"added": 0, "modified": 0, "deleted": 0}

        for base in self.bases:
            async with self._lock:
                changes = await base.scan_for_updates()

            for source in changes.deleted:
                await self.remove_document_source(base.uuid, source.uuid)
            for source in changes.modified:
                await self.update_document_source(base.uuid, source.uuid)
            for source, parent in changes.added:
                await self.add_child_document_source(
                    base.uuid, parent.uuid, source.type, source.origin, commit=False
                )

            totals["added"] += len(changes.added)
            totals["modified"] += len(changes.modified)
            totals["deleted"] += len(changes.deleted)

        if callback is not None:
            task = asyncio.get_running_loop().create_task(self._after_idle(callback))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        return totals

    async def _after_idle(self, callback: Callable[[], None]) -> None:
        await self.wait_idle()
        callback()

    # ── Listeners ───────────────────────────────────────────────

    def add_listener(self, listener: DocRepoListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: DocRepoListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit_removed(self, origin: str) -> None:
        self._emit("on_document_source_removed", origin)

    def _emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, event)(*args)
            except Exception:
                logger.exception("Listener failed", listener=type(listener).__name__, event=event)

    async def close(self) -> None:
        """Stop the queue and release the active connection."""
        await self._queue.close()
        for task in list(self._background):
            task.cancel()
        await self.disconnect()

    # defined last: the name shadows the builtin inside the class body
    def list(self, workspace_id: str) -> list[dict[str, Any]]:
        """Snapshot of the bases of a workspace and their source trees."""
        return [
            base.to_listing()
            for base in self._bases.values()
            if base.workspace_id == workspace_id
        ]
