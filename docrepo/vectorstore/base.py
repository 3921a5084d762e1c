"""
Abstract base class and data models for vector store implementations.

Defines the interface that all vector store backends must implement,
plus shared data structures for stored items and query results.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class VectorStoreError(Exception):
    """Raised on misuse of a vector store (bad transaction nesting, wrong dimensions)."""


@dataclass
class VectorItem:
    """
    One stored chunk.

    Attributes:
        id: Unique item identifier assigned on insert
        doc_id: Identifier of the document source the chunk belongs to
        content: Chunk text
        metadata: Source metadata (uuid, type, title, url)
    """

    id: str
    doc_id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorQueryResult:
    """
    Result from a vector similarity query.

    Attributes:
        item: The matched item
        score: Cosine similarity score (-1.0 to 1.0, higher is more similar)
    """

    item: VectorItem
    score: float


class VectorStore(ABC):
    """
    Abstract base class for vector store implementations.

    A store lives in one directory and holds items of a fixed
    dimensionality. Writes are bracketed by transactions: every
    ``begin_transaction`` must be paired with exactly one
    ``commit_transaction`` or ``cancel_transaction``, and transactions
    do not nest. ``insert`` and ``delete`` outside a transaction
    commit immediately.

    All methods are async to support non-blocking I/O.
    """

    @classmethod
    @abstractmethod
    async def create(cls, path: Path, dimensions: int) -> "VectorStore":
        """Initialize an empty index at ``path`` and return it connected."""
        ...

    @classmethod
    @abstractmethod
    async def connect(cls, path: Path) -> "VectorStore":
        """Open an existing index at ``path``."""
        ...

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Vector dimensionality of the index."""
        ...

    @property
    @abstractmethod
    def in_transaction(self) -> bool:
        """Whether a transaction is currently open."""
        ...

    @abstractmethod
    async def begin_transaction(self) -> None:
        """Open a transaction. Raises VectorStoreError if one is already open."""
        ...

    @abstractmethod
    async def commit_transaction(self) -> None:
        """Persist every staged change. Raises VectorStoreError if none is open."""
        ...

    @abstractmethod
    async def cancel_transaction(self) -> None:
        """Discard every staged change. Raises VectorStoreError if none is open."""
        ...

    @abstractmethod
    async def insert(
        self,
        doc_id: str,
        content: str,
        vector: list[float],
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """
        Store one chunk.

        Args:
            doc_id: Owning document source id (shared by all its chunks)
            content: Chunk text
            vector: Embedding (must match dimensionality)
            metadata: Source metadata

        Returns:
            The new item id
        """
        ...

    @abstractmethod
    async def delete(self, doc_id: str) -> int:
        """
        Delete every item stored for ``doc_id``.

        Returns:
            Number of items deleted
        """
        ...

    @abstractmethod
    async def query(self, vector: list[float], k: int) -> list[VectorQueryResult]:
        """
        Find up to ``k`` nearest items.

        Results follow the store's native ordering; relevance cutoff and
        sorting are the caller's responsibility.
        """
        ...

    @abstractmethod
    async def count(self) -> int:
        """Number of committed items."""
        ...

    @abstractmethod
    async def list_items(self) -> list[VectorItem]:
        """All committed items in insertion order."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources. Any open transaction is cancelled."""
        ...
