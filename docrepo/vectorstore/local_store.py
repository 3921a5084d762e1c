"""
Filesystem-backed vector store.

Each store owns one directory holding two files:
- index.json: dimensionality and the item records (id, doc_id, content, metadata)
- vectors.npy: float32 matrix with one row per item, aligned with the records

Similarity is brute-force cosine over the whole matrix, which is adequate
for the size of a personal knowledge base. Commits stage both files as
temporary siblings, then ``os.replace`` the matrix before the index. The
index records a digest of the matrix it describes. If a commit stops
between the two replaces, the next ``connect`` finishes it from the staged
index, and any other mismatch is reported as a corrupt index.
"""

import asyncio
import hashlib
import json
import os
import uuid
from pathlib import Path
from typing import Any

import numpy as np
import structlog

from docrepo.vectorstore.base import (
    VectorItem,
    VectorQueryResult,
    VectorStore,
    VectorStoreError,
)
from docrepo.vectorstore.config import VectorStoreConfig

logger = structlog.get_logger(__name__)

INDEX_VERSION = 1


class _WorkingSet:
    """Staged copy of the index while a transaction is open."""

    def __init__(self, items: list[VectorItem], vectors: np.ndarray):
        self.items = list(items)
        self.rows = [row for row in vectors]

    def insert(self, item: VectorItem, row: np.ndarray) -> None:
        self.items.append(item)
        self.rows.append(row)

    def delete(self, doc_id: str) -> int:
        keep = [i for i, item in enumerate(self.items) if item.doc_id != doc_id]
        deleted = len(self.items) - len(keep)
        if deleted:
            self.items = [self.items[i] for i in keep]
            self.rows = [self.rows[i] for i in keep]
        return deleted


class LocalVectorStore(VectorStore):
    """
    Vector index persisted as JSON records plus a numpy matrix.

    Usage:
        store = await LocalVectorStore.create(path, dimensions=1536)
        await store.begin_transaction()
        await store.insert("doc-1", "chunk text", vector, {"title": "a.txt"})
        await store.commit_transaction()
        results = await store.query(query_vector, k=15)
    """

    def __init__(
        self,
        path: Path,
        dimensions: int,
        items: list[VectorItem] | None = None,
        vectors: np.ndarray | None = None,
        config: VectorStoreConfig | None = None,
    ):
        self._path = Path(path)
        self._dimensions = dimensions
        self._config = config or VectorStoreConfig()
        self._items: list[VectorItem] = items or []
        self._vectors = (
            vectors
            if vectors is not None
            else np.zeros((0, dimensions), dtype=np.float32)
        )
        self._tx: _WorkingSet | None = None
        self._closed = False

    # ── Lifecycle ───────────────────────────────────────────────

    @classmethod
    async def create(
        cls,
        path: Path,
        dimensions: int,
        config: VectorStoreConfig | None = None,
    ) -> "LocalVectorStore":
        if dimensions < 1:
            raise VectorStoreError(f"Invalid vector dimensions: {dimensions}")

        store = cls(Path(path), dimensions, config=config)
        store._path.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(store._persist, store._items, store._vectors)
        logger.debug("Vector index created", path=str(path), dimensions=dimensions)
        return store

    @classmethod
    async def connect(
        cls,
        path: Path,
        config: VectorStoreConfig | None = None,
    ) -> "LocalVectorStore":
        config = config or VectorStoreConfig()
        index_file = Path(path) / config.index_file_name
        if not index_file.exists():
            raise VectorStoreError(f"No vector index at {path}")

        dimensions, items, vectors = await asyncio.to_thread(
            cls._read, Path(path), config
        )
        logger.debug("Vector index opened", path=str(path), items=len(items))
        return cls(Path(path), dimensions, items, vectors, config)

    @classmethod
    async def exists(cls, path: Path, config: VectorStoreConfig | None = None) -> bool:
        """Whether an index has been created at ``path``."""
        config = config or VectorStoreConfig()
        return (Path(path) / config.index_file_name).exists()

    async def close(self) -> None:
        if self._tx is not None:
            logger.warning("Closing vector index with open transaction", path=str(self._path))
            self._tx = None
        self._closed = True

    @property
    def path(self) -> Path:
        return self._path

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def in_transaction(self) -> bool:
        return self._tx is not None

    # ── Transactions ────────────────────────────────────────────

    async def begin_transaction(self) -> None:
        self._check_open()
        if self._tx is not None:
            raise VectorStoreError("Transaction already in progress")
        self._tx = _WorkingSet(self._items, self._vectors)

    async def commit_transaction(self) -> None:
        if self._tx is None:
            raise VectorStoreError("No transaction in progress")

        tx = self._tx
        items = tx.items
        vectors = (
            np.vstack(tx.rows).astype(np.float32, copy=False)
            if tx.rows
            else np.zeros((0, self._dimensions), dtype=np.float32)
        )
        await asyncio.to_thread(self._persist, items, vectors)

        self._items = items
        self._vectors = vectors
        self._tx = None

    async def cancel_transaction(self) -> None:
        if self._tx is None:
            raise VectorStoreError("No transaction in progress")
        self._tx = None

    # ── Writes ──────────────────────────────────────────────────

    async def insert(
        self,
        doc_id: str,
        content: str,
        vector: list[float],
        metadata: dict[str, Any] | None = None,
    ) -> str:
        self._check_open()
        row = np.asarray(vector, dtype=np.float32)
        if row.shape != (self._dimensions,):
            raise VectorStoreError(
                f"Vector has {row.size} dimensions, index expects {self._dimensions}"
            )

        item = VectorItem(
            id=uuid.uuid4().hex,
            doc_id=doc_id,
            content=content,
            metadata=dict(metadata or {}),
        )

        if self._tx is not None:
            self._tx.insert(item, row)
            return item.id

        await self.begin_transaction()
        self._tx.insert(item, row)
        await self.commit_transaction()
        return item.id

    async def delete(self, doc_id: str) -> int:
        self._check_open()
        if self._tx is not None:
            return self._tx.delete(doc_id)

        await self.begin_transaction()
        deleted = self._tx.delete(doc_id)
        if deleted:
            await self.commit_transaction()
        else:
            await self.cancel_transaction()
        return deleted

    # ── Reads ───────────────────────────────────────────────────

    async def query(self, vector: list[float], k: int) -> list[VectorQueryResult]:
        self._check_open()
        if k < 1 or not self._items:
            return []

        query = np.asarray(vector, dtype=np.float32)
        if query.shape != (self._dimensions,):
            raise VectorStoreError(
                f"Query has {query.size} dimensions, index expects {self._dimensions}"
            )

        scores = _cosine_scores(self._vectors, query)
        k = min(k, len(self._items))
        # argpartition keeps the top k without a full sort
        top = np.argpartition(-scores, k - 1)[:k]

        return [
            VectorQueryResult(item=self._items[i], score=float(scores[i]))
            for i in top
        ]

    async def count(self) -> int:
        return len(self._items)

    async def list_items(self) -> list[VectorItem]:
        return list(self._items)

    # ── Persistence ─────────────────────────────────────────────

    def _check_open(self) -> None:
        if self._closed:
            raise VectorStoreError(f"Vector index at {self._path} is closed")

    def _persist(self, items: list[VectorItem], vectors: np.ndarray) -> None:
        index_file = self._path / self._config.index_file_name
        vectors_file = self._path / self._config.vectors_file_name

        payload = {
            "version": INDEX_VERSION,
            "dimensions": self._dimensions,
            "vectors_digest": _digest(vectors),
            "items": [
                {
                    "id": item.id,
                    "doc_id": item.doc_id,
                    "content": item.content,
                    "metadata": item.metadata,
                }
                for item in items
            ],
        }

        tmp_vectors = _staged(vectors_file)
        with open(tmp_vectors, "wb") as f:
            np.save(f, vectors)

        tmp_index = _staged(index_file)
        with open(tmp_index, "w", encoding="utf-8") as f:
            json.dump(payload, f)

        # the index replace is the commit point
        os.replace(tmp_vectors, vectors_file)
        os.replace(tmp_index, index_file)

    @staticmethod
    def _read(
        path: Path, config: VectorStoreConfig
    ) -> tuple[int, list[VectorItem], np.ndarray]:
        index_file = path / config.index_file_name
        with open(index_file, encoding="utf-8") as f:
            payload = json.load(f)

        vectors_file = path / config.vectors_file_name
        if vectors_file.exists():
            vectors = np.load(vectors_file).astype(np.float32, copy=False)
        else:
            vectors = np.zeros((0, int(payload["dimensions"])), dtype=np.float32)

        if not _describes(payload, vectors):
            staged = _staged(index_file)
            staged_payload = _load_staged(staged)
            if staged_payload is None or not _describes(staged_payload, vectors):
                raise VectorStoreError(
                    f"Corrupt vector index at {path}: "
                    f"{len(payload.get('items', []))} records do not match "
                    f"{vectors.shape[0]} vectors"
                )
            logger.warning("Completing interrupted vector index commit", path=str(path))
            os.replace(staged, index_file)
            payload = staged_payload

        dimensions = int(payload["dimensions"])
        items = [
            VectorItem(
                id=record["id"],
                doc_id=record["doc_id"],
                content=record["content"],
                metadata=record.get("metadata", {}),
            )
            for record in payload.get("items", [])
        ]
        return dimensions, items, vectors


def _staged(target: Path) -> Path:
    return target.with_name(target.name + ".tmp")


def _digest(vectors: np.ndarray) -> str:
    data = np.ascontiguousarray(vectors, dtype=np.float32).tobytes()
    return hashlib.blake2b(data, digest_size=16).hexdigest()


def _load_staged(index_file: Path) -> dict[str, Any] | None:
    """Payload of a staged index, or None when it is missing or truncated."""
    try:
        with open(index_file, encoding="utf-8") as f:
            return json.load(f)
    except (FileNotFoundError, json.JSONDecodeError):
        return None


def _describes(payload: dict[str, Any], vectors: np.ndarray) -> bool:
    """Whether an index payload belongs to this vector matrix."""
    if vectors.shape[0] != len(payload.get("items", [])):
        return False
    digest = payload.get("vectors_digest")
    return digest is None or digest == _digest(vectors)


def _cosine_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of every matrix row against the query (zero-norm safe)."""
    row_norms = np.linalg.norm(matrix, axis=1)
    query_norm = np.linalg.norm(query)
    denom = np.clip(row_norms * query_norm, 1e-12, None)
    return (matrix @ query) / denom
