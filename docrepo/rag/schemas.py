"""
Data model for document bases.

DocumentSource records live in a flat arena keyed by uuid with a
``parent_id`` back-reference; the recursive ``items`` tree only exists in
the persisted metadata file (SourceRecord / DocBaseRecord / RepositoryRecord).
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from docrepo.rag.cancellation import CancellationToken

TEXT_TITLE_LENGTH = 64


class SourceType(str, Enum):
    """Kinds of ingestible sources."""

    FILE = "file"
    FOLDER = "folder"
    URL = "url"
    SITEMAP = "sitemap"
    TEXT = "text"

    @property
    def is_container(self) -> bool:
        """Folders and sitemaps own child sources; every other type is a leaf."""
        return self in (SourceType.FOLDER, SourceType.SITEMAP)

    @property
    def is_filesystem(self) -> bool:
        return self in (SourceType.FILE, SourceType.FOLDER)


class IngestionStage(str, Enum):
    """Progress of a queue task through the pipeline."""

    QUEUED = "queued"
    LOADING = "loading"
    SPLITTING = "splitting"
    EMBEDDING = "embedding"
    STORING = "storing"


class DocumentSource(BaseModel):
    """One ingested unit: a file, folder, web page, sitemap or raw text."""

    uuid: str
    type: SourceType
    origin: str
    title: str = ""
    parent_id: str | None = None

    # Filesystem state at last successful ingestion (file/folder only)
    last_modified: int | None = Field(default=None, description="mtime in ms")
    file_size: int | None = None

    @model_validator(mode="after")
    def _default_title(self) -> "DocumentSource":
        if not self.title:
            if self.type.is_filesystem:
                self.title = self.filename
            elif self.type == SourceType.TEXT:
                self.title = self.origin[:TEXT_TITLE_LENGTH]
            else:
                self.title = self.origin
        return self

    @property
    def url(self) -> str:
        if self.type.is_filesystem:
            return f"file://{self.origin}"
        if self.type == SourceType.TEXT:
            return ""
        return self.origin

    @property
    def filename(self) -> str:
        if self.type == SourceType.TEXT:
            return ""
        return os.path.basename(self.origin.rstrip("/\\")) or self.origin

    def exists(self) -> bool:
        """Whether a filesystem source is still on disk (always true otherwise)."""
        if not self.type.is_filesystem:
            return True
        return os.path.exists(self.origin)

    def has_changed(self) -> bool:
        """Compare the on-disk mtime and size to those recorded at ingestion."""
        if self.type != SourceType.FILE:
            return False
        try:
            stat = os.stat(self.origin)
        except OSError:
            return False
        if self.last_modified is None or self.file_size is None:
            return True
        return (
            int(stat.st_mtime * 1000) != self.last_modified
            or stat.st_size != self.file_size
        )

    def record_file_state(self) -> None:
        """Remember mtime and size after a successful ingestion."""
        if not self.type.is_filesystem:
            return
        try:
            stat = os.stat(self.origin)
        except OSError:
            # removed while it was being processed
            return
        self.last_modified = int(stat.st_mtime * 1000)
        self.file_size = stat.st_size

    def to_listing(self) -> dict[str, Any]:
        return {
            "uuid": self.uuid,
            "type": self.type.value,
            "title": self.title,
            "origin": self.origin,
            "filename": self.filename,
            "url": self.url,
        }


# ── Persisted metadata ─────────────────────────────────────────


class SourceRecord(BaseModel):
    """Persisted form of a source and its children."""

    uuid: str
    type: SourceType
    origin: str
    title: str = ""
    url: str = ""
    last_modified: int | None = None
    file_size: int | None = None
    items: list["SourceRecord"] = Field(default_factory=list)


class DocBaseRecord(BaseModel):
    """Persisted form of a document base (never contains vectors)."""

    uuid: str
    name: str
    description: str | None = None
    workspace_id: str
    embedding_engine: str
    embedding_model: str
    documents: list[SourceRecord] = Field(default_factory=list)


class RepositoryRecord(BaseModel):
    """Root of the metadata file."""

    version: int = 1
    bases: list[DocBaseRecord] = Field(default_factory=list)


# ── Queue and query ────────────────────────────────────────────


@dataclass
class TaskOptions:
    """Per-task ingestion options."""

    title: str | None = None
    skip_size_check: bool = False


@dataclass
class QueueTask:
    """
    A pending or in-flight ingestion request.

    ``task_id`` is the uuid of the source the task targets, so the id
    returned by ``add_document_source`` is also the one to cancel with.
    """

    task_id: str
    base_id: str
    type: SourceType
    origin: str
    parent_id: str | None = None
    commit: bool = True
    options: TaskOptions = field(default_factory=TaskOptions)
    stage: IngestionStage = IngestionStage.QUEUED
    token: CancellationToken = field(
        default_factory=CancellationToken, repr=False, compare=False
    )

    @property
    def is_child(self) -> bool:
        return self.parent_id is not None

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled


@dataclass
class QueryResult:
    """One retrieved chunk with its similarity score."""

    content: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)
