"""
Vector store abstraction layer for semantic retrieval.

Main components:
- VectorStore: Abstract base class defining the transactional store interface
- LocalVectorStore: numpy implementation persisted in one directory per base
- VectorItem / VectorQueryResult: stored chunk and query hit data classes
- VectorStoreConfig: file names and transaction sizing
"""

from docrepo.vectorstore.base import (
    VectorItem,
    VectorQueryResult,
    VectorStore,
    VectorStoreError,
)
from docrepo.vectorstore.config import VectorStoreConfig
from docrepo.vectorstore.local_store import LocalVectorStore

__all__ = [
    "VectorStore",
    "VectorStoreError",
    "VectorItem",
    "VectorQueryResult",
    "VectorStoreConfig",
    "LocalVectorStore",
]
