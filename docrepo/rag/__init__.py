"""
Document bases for semantic retrieval.

This package provides:
- DocumentRepository (repository.py): registry of bases, serial ingestion queue
- DocumentBase (docbase.py): load/split/embed/store pipeline for one base
- DocumentMonitor (monitor.py): watchdog-based filesystem synchronisation
- TaskQueue (queue.py), Loader (loader.py), RecursiveCharacterSplitter (splitter.py)

Only the data model, configuration and errors are re-exported here; the
pipeline modules depend on ``docrepo.embedding`` and are imported by path.
"""

from docrepo.rag.cancellation import CancellationToken
from docrepo.rag.config import RagConfig
from docrepo.rag.errors import (
    CancellationAbort,
    DatabaseNotFound,
    DocRepoError,
    LoadFailure,
    OversizeDocument,
    ParentNotFound,
    UnsupportedEmbeddingEngine,
    UnsupportedType,
)
from docrepo.rag.schemas import (
    DocumentSource,
    IngestionStage,
    QueryResult,
    QueueTask,
    SourceType,
    TaskOptions,
)

__all__ = [
    "CancellationAbort",
    "CancellationToken",
    "DatabaseNotFound",
    "DocRepoError",
    "DocumentSource",
    "IngestionStage",
    "LoadFailure",
    "OversizeDocument",
    "ParentNotFound",
    "QueryResult",
    "QueueTask",
    "RagConfig",
    "SourceType",
    "TaskOptions",
    "UnsupportedEmbeddingEngine",
    "UnsupportedType",
]
