"""
Serial ingestion queue.

One worker coroutine drains a FIFO of QueueTasks, handing each one to the
bound handler. Tasks still waiting can be withdrawn; the task in flight is
cancelled cooperatively through its CancellationToken.
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable

import structlog

from docrepo.observability.metrics import get_metrics
from docrepo.rag.schemas import QueueTask

logger = structlog.get_logger(__name__)

TaskHandler = Callable[[QueueTask], Awaitable[None]]


class TaskQueue:
    """
    FIFO of ingestion tasks processed one at a time.

    States: IDLE (no worker) -> PROCESSING (worker draining) -> IDLE.

    Usage:
        queue = TaskQueue()
        queue.bind(repository.process_task)
        queue.submit(task)
        await queue.join()
    """

    def __init__(self, handler: TaskHandler | None = None):
        self._handler = handler
        self._pending: deque[QueueTask] = deque()
        self._current: QueueTask | None = None
        self._worker: asyncio.Task | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    def bind(self, handler: TaskHandler) -> None:
        """Set the coroutine that processes each task."""
        self._handler = handler

    def __len__(self) -> int:
        return len(self._pending) + (1 if self._current is not None else 0)

    @property
    def pending_count(self) -> int:
        """Tasks waiting behind the one in flight."""
        return len(self._pending)

    @property
    def current(self) -> QueueTask | None:
        return self._current

    @property
    def processing(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def pending(self) -> list[QueueTask]:
        return list(self._pending)

    def find(self, task_id: str) -> QueueTask | None:
        """The in-flight or queued task with this id."""
        if self._current is not None and self._current.task_id == task_id:
            return self._current
        for task in self._pending:
            if task.task_id == task_id:
                return task
        return None

    def submit(self, task: QueueTask) -> None:
        """Append a task and start the worker if idle."""
        if self._handler is None:
            raise RuntimeError("TaskQueue has no handler bound")
        self._pending.append(task)
        self._idle.clear()
        get_metrics().queue_depth.set(len(self))
        self.start()

    def start(self) -> None:
        if self.processing or not self._pending:
            return
        self._worker = asyncio.get_running_loop().create_task(
            self._run(), name="docrepo-task-queue"
        )

    def cancel(self, task_id: str) -> bool:
        """
        Withdraw queued tasks with this id, or flag the one in flight.

        Returns:
            True if something was cancelled
        """
        queued = [t for t in self._pending if t.task_id == task_id]
        for task in queued:
            self._pending.remove(task)
            task.token.cancel()

        in_flight = self._current is not None and self._current.task_id == task_id
        if in_flight:
            self._current.token.cancel()

        if queued or in_flight:
            logger.info("Task cancelled", task_id=task_id, queued=len(queued), in_flight=in_flight)
            get_metrics().queue_depth.set(len(self))
            if not self._pending and self._current is None:
                self._idle.set()
            return True
        return False

    async def join(self) -> None:
        """Wait until the queue is drained."""
        await self._idle.wait()

    async def close(self) -> None:
        """Drop pending tasks and stop the worker."""
        self._pending.clear()
        if self._current is not None:
            self._current.token.cancel()

        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        self._current = None
        self._idle.set()

    async def _run(self) -> None:
        metrics = get_metrics()
        try:
            while self._pending:
                task = self._pending.popleft()
                self._current = task
                try:
                    await self._handler(task)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Task handler failed", task_id=task.task_id)
                finally:
                    self._current = None
                    metrics.queue_depth.set(len(self))
        finally:
            if not self._pending:
                self._idle.set()
