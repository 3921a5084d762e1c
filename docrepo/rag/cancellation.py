"""Cooperative cancellation for queued ingestion work."""


class CancellationToken:
    """
    Flag shared between the task queue and the ingestion call chain.

    The queue sets it; the pipeline polls ``cancelled`` before each stage,
    between embedding batches and before each child of a container, and
    unwinds on its own. Work already committed stays committed.
    """

    __slots__ = ("_cancelled",)

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled})"
