"""
Document base: one named collection sharing a vector store and an embedder.

Owns the add/update/delete pipeline for its sources:
- leaf ingestion: load, split, embed in batches, store per chunk
- container expansion: folder listing or sitemap urls, one leaf per child
- cascade deletion in transactional batches
- similarity query and offline change detection

Sources are kept in a flat arena (``documents``) keyed by uuid; children
point at their container through ``parent_id``.
"""

import asyncio
import re
import shutil
import time
import uuid as uuidlib
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from docrepo.embedding.config import EmbeddingConfig
from docrepo.embedding.service import Embedder, create_embedder
from docrepo.observability.metrics import get_metrics
from docrepo.rag.cancellation import CancellationToken
from docrepo.rag.config import (
    ADD_COMMIT_EVERY,
    DELETE_COMMIT_EVERY,
    QUERY_OVERFETCH,
    RagConfig,
)
from docrepo.rag.errors import (
    LoadFailure,
    OversizeDocument,
    ParentNotFound,
    UnsupportedType,
)
from docrepo.rag.loader import Loader, list_files_recursively
from docrepo.rag.schemas import (
    DocBaseRecord,
    DocumentSource,
    IngestionStage,
    QueryResult,
    SourceRecord,
    SourceType,
)
from docrepo.rag.splitter import RecursiveCharacterSplitter
from docrepo.vectorstore import LocalVectorStore, VectorStore, VectorStoreConfig

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[], None]
StageCallback = Callable[[IngestionStage], None]
EmbedderFactory = Callable[[str, str], Embedder]

# Markers extractors emit in place of text, compared case-insensitively
PLACEHOLDER_MARKERS = frozenset({
    "[empty pdf]",
    "[empty document]",
    "[no text layer]",
    "[no text content]",
    "[image]",
    "[binary file]",
})

_TITLE_RE = re.compile(r"<title>(.*?)</title>", re.IGNORECASE | re.DOTALL)


def is_empty_content(text: str | None) -> bool:
    """Blank text, or text that is nothing but a known placeholder marker."""
    if not text or not text.strip():
        return True
    return text.strip().casefold() in PLACEHOLDER_MARKERS


@dataclass
class ScanResult:
    """Differences between the stored source tree and the filesystem."""

    added: list[tuple[DocumentSource, DocumentSource]] = field(default_factory=list)
    modified: list[DocumentSource] = field(default_factory=list)
    deleted: list[DocumentSource] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.added or self.modified or self.deleted)


class DocumentBase:
    """
    A named collection of document sources with its own vector index.

    Usage:
        base = DocumentBase(uuid, "notes", "ws-1", "openai", "text-embedding-3-small",
                            storage_dir=Path("~/.docrepo/docrepo"))
        await base.create()
        await base.add_document_source(doc_id, SourceType.FILE, "/notes/todo.md")
        results = await base.query("what is left to do?")
    """

    def __init__(
        self,
        uuid: str,
        name: str,
        workspace_id: str,
        embedding_engine: str,
        embedding_model: str,
        storage_dir: Path,
        description: str | None = None,
        config: RagConfig | None = None,
        loader: Loader | None = None,
        embedder_factory: EmbedderFactory | None = None,
        embedding_config: EmbeddingConfig | None = None,
        vector_config: VectorStoreConfig | None = None,
    ):
        self.uuid = uuid
        self.name = name
        self.description = description
        self.workspace_id = workspace_id
        self.embedding_engine = embedding_engine
        self.embedding_model = embedding_model
        self.documents: dict[str, DocumentSource] = {}

        self._storage_dir = Path(storage_dir)
        self._config = config or RagConfig()
        self._loader = loader or Loader()
        self._embedder_factory = embedder_factory or create_embedder
        self._embedding_config = embedding_config or EmbeddingConfig()
        self._vector_config = vector_config or VectorStoreConfig()
        self._embedder: Embedder | None = None
        self._db: VectorStore | None = None

    # ── Persistence ─────────────────────────────────────────────

    @classmethod
    def from_record(cls, record: DocBaseRecord, storage_dir: Path, **kwargs) -> "DocumentBase":
        base = cls(
            uuid=record.uuid,
            name=record.name,
            workspace_id=record.workspace_id,
            embedding_engine=record.embedding_engine,
            embedding_model=record.embedding_model,
            storage_dir=storage_dir,
            description=record.description,
            **kwargs,
        )

        def walk(records: list[SourceRecord], parent_id: str | None) -> None:
            for item in records:
                base.documents[item.uuid] = DocumentSource(
                    uuid=item.uuid,
                    type=item.type,
                    origin=item.origin,
                    title=item.title,
                    parent_id=parent_id,
                    last_modified=item.last_modified,
                    file_size=item.file_size,
                )
                walk(item.items, item.uuid)

        walk(record.documents, None)
        return base

    def to_record(self) -> DocBaseRecord:
        def build(source: DocumentSource) -> SourceRecord:
            return SourceRecord(
                uuid=source.uuid,
                type=source.type,
                origin=source.origin,
                title=source.title,
                url=source.url,
                last_modified=source.last_modified,
                file_size=source.file_size,
                items=[build(child) for child in self.children(source.uuid)],
            )

        return DocBaseRecord(
            uuid=self.uuid,
            name=self.name,
            description=self.description,
            workspace_id=self.workspace_id,
            embedding_engine=self.embedding_engine,
            embedding_model=self.embedding_model,
            documents=[build(root) for root in self.roots()],
        )

    def to_listing(self) -> dict:
        return {
            "uuid": self.uuid,
            "name": self.name,
            "description": self.description,
            "workspace_id": self.workspace_id,
            "embedding_engine": self.embedding_engine,
            "embedding_model": self.embedding_model,
            "documents": [
                {
                    **root.to_listing(),
                    "items": [child.to_listing() for child in self.children(root.uuid)],
                }
                for root in self.roots()
            ],
        }

    # ── Arena ───────────────────────────────────────────────────

    def get(self, doc_id: str) -> DocumentSource | None:
        return self.documents.get(doc_id)

    def roots(self) -> list[DocumentSource]:
        return [d for d in self.documents.values() if d.parent_id is None]

    def children(self, parent_id: str) -> list[DocumentSource]:
        return [d for d in self.documents.values() if d.parent_id == parent_id]

    def find_root(self, origin: str) -> DocumentSource | None:
        for source in self.roots():
            if source.origin == origin:
                return source
        return None

    def find_child(self, parent_id: str, origin: str) -> DocumentSource | None:
        for source in self.children(parent_id):
            if source.origin == origin:
                return source
        return None

    # ── Storage lifecycle ───────────────────────────────────────

    @property
    def path(self) -> Path:
        return self._storage_dir / self.uuid

    @property
    def connected(self) -> bool:
        return self._db is not None

    @property
    def embedder(self) -> Embedder:
        if self._embedder is None:
            self._embedder = self._embedder_factory(self.embedding_engine, self.embedding_model)
        return self._embedder

    async def create(self) -> None:
        """Allocate the vector store, sized to the embedder's dimensionality."""
        dimensions = await self.embedder.dimensions()
        self._db = await LocalVectorStore.create(self.path, dimensions, self._vector_config)
        logger.info(
            "Document base created",
            base=self.name,
            uuid=self.uuid,
            dimensions=dimensions,
        )

    async def connect(self) -> None:
        if self._db is None:
            self._db = await LocalVectorStore.connect(self.path, self._vector_config)
            logger.debug("Connected to document base", base=self.name)

    async def disconnect(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
        if self._embedder is not None:
            await self._embedder.close()
            self._embedder = None

    async def destroy(self) -> None:
        """Close the store and delete the storage directory."""
        await self.disconnect()
        try:
            await asyncio.to_thread(shutil.rmtree, self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to delete document base storage", base=self.name, error=str(e))

    # ── Add ─────────────────────────────────────────────────────

    async def add_document_source(
        self,
        uuid: str,
        source_type: SourceType,
        origin: str,
        title: str | None = None,
        skip_size_check: bool = False,
        token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
        on_stage: StageCallback | None = None,
    ) -> str | None:
        """
        Ingest a root source, replacing the content of an existing one.

        Containers are recorded before expansion so they are visible while
        children are processed. Leaves are recorded only once stored.

        Returns:
            The source uuid, or None when the task was cancelled
        """
        token = token or CancellationToken()
        source_type = SourceType(source_type)

        existing = self.documents.get(uuid)
        if existing is not None:
            await self._clear(existing)

        source = DocumentSource(uuid=uuid, type=source_type, origin=origin, title=title or "")

        if source_type.is_container:
            self.documents[uuid] = source
            _notify(on_progress)
            if source_type == SourceType.FOLDER:
                await self.add_folder(source, token, on_progress)
            else:
                await self.add_sitemap(source, token, on_progress)
            source.record_file_state()
            logger.info(
                "Added container",
                base=self.name,
                origin=origin,
                children=len(self.children(uuid)),
                cancelled=token.cancelled,
            )
            return None if token.cancelled else uuid

        try:
            completed = await self.add_document(
                source, token, skip_size_check=skip_size_check, on_stage=on_stage
            )
        except Exception:
            self.documents.pop(uuid, None)
            raise

        if not completed:
            self.documents.pop(uuid, None)
            return None

        # assignment keeps the arena position of a replaced source
        self.documents[uuid] = source
        logger.info("Added document", base=self.name, url=source.url)
        return uuid

    async def add_child_document_source(
        self,
        parent_id: str,
        uuid: str,
        source_type: SourceType,
        origin: str,
        token: CancellationToken | None = None,
        on_stage: StageCallback | None = None,
    ) -> str | None:
        """
        Ingest one child of an existing container.

        The child is attached to its parent only after it was stored.

        Raises:
            ParentNotFound: parent_id is not a container of this base
        """
        token = token or CancellationToken()
        parent = self.documents.get(parent_id)
        if parent is None or not parent.type.is_container:
            raise ParentNotFound(parent_id)

        existing = self.documents.get(uuid)
        if existing is not None:
            await self._clear(existing)

        child = DocumentSource(
            uuid=uuid,
            type=SourceType(source_type),
            origin=origin,
            parent_id=parent_id,
        )

        try:
            completed = await self.add_document(child, token, on_stage=on_stage)
        except Exception:
            self.documents.pop(uuid, None)
            raise

        if not completed:
            self.documents.pop(uuid, None)
            return None

        self.documents[uuid] = child
        logger.info("Added child document", base=self.name, parent=parent.origin, url=child.url)
        return uuid

    async def add_document(
        self,
        source: DocumentSource,
        token: CancellationToken | None = None,
        skip_size_check: bool = False,
        on_stage: StageCallback | None = None,
    ) -> bool:
        """
        Load, split, embed and store one leaf source.

        Returns:
            False when cancelled (the open transaction is rolled back)

        Raises:
            UnsupportedType, LoadFailure, OversizeDocument
        """
        token = token or CancellationToken()
        metrics = get_metrics()
        await self.connect()

        # Loading
        if token.cancelled:
            return False
        _stage(on_stage, IngestionStage.LOADING)
        started = time.perf_counter()

        if not self._loader.is_parseable(source.type, source.origin):
            raise UnsupportedType(source.type.value, source.origin)

        logger.debug("Extracting text", type=source.type.value, origin=source.origin)
        text = await self._loader.load(source.type, source.origin)
        if is_empty_content(text):
            raise LoadFailure(source.origin)

        if not skip_size_check and len(text) > self._config.max_document_chars:
            raise OversizeDocument(source.origin, self._config.max_document_size_mb)

        if source.type == SourceType.URL:
            match = _TITLE_RE.search(text)
            if match and match.group(1).strip():
                source.title = match.group(1).strip()
        metrics.record_stage_latency(IngestionStage.LOADING.value, time.perf_counter() - started)

        # Splitting
        if token.cancelled:
            return False
        _stage(on_stage, IngestionStage.SPLITTING)
        started = time.perf_counter()
        splitter = RecursiveCharacterSplitter(self._config.chunk_size, self._config.chunk_overlap)
        chunks = splitter.split(text)
        metrics.record_stage_latency(IngestionStage.SPLITTING.value, time.perf_counter() - started)

        # Embedding + storing
        batch_size = self._embedding_config.batch_size_for(splitter.chunk_size)
        batch_count = -(-len(chunks) // batch_size)
        logger.debug(
            "Embedding chunks",
            origin=source.origin,
            chunks=len(chunks),
            batches=batch_count,
        )

        metadata = {
            "uuid": source.uuid,
            "type": source.type.value,
            "title": source.title,
            "url": source.url,
        }

        await self._db.begin_transaction()
        pending = 0
        try:
            for start in range(0, len(chunks), batch_size):
                if token.cancelled:
                    await self._db.cancel_transaction()
                    logger.info("Ingestion cancelled", origin=source.origin)
                    return False

                batch = chunks[start : start + batch_size]
                _stage(on_stage, IngestionStage.EMBEDDING)
                started = time.perf_counter()
                vectors = await self.embedder.embed(batch)
                metrics.record_stage_latency(
                    IngestionStage.EMBEDDING.value, time.perf_counter() - started
                )

                _stage(on_stage, IngestionStage.STORING)
                started = time.perf_counter()
                for chunk, vector in zip(batch, vectors, strict=True):
                    await self._db.insert(source.uuid, chunk, vector, metadata)
                    pending += 1
                    if pending == self._vector_config.commit_every:
                        await self._db.commit_transaction()
                        await self._db.begin_transaction()
                        pending = 0
                metrics.chunks_stored.inc(len(batch))
                metrics.record_stage_latency(
                    IngestionStage.STORING.value, time.perf_counter() - started
                )
        except BaseException:
            if self._db.in_transaction:
                await self._db.cancel_transaction()
            raise

        await self._db.commit_transaction()
        source.record_file_state()
        return True

    async def add_folder(
        self,
        source: DocumentSource,
        token: CancellationToken,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        files = await asyncio.to_thread(list_files_recursively, source.origin)
        await self._add_children(source, ((SourceType.FILE, f) for f in files), token, on_progress)

    async def add_sitemap(
        self,
        source: DocumentSource,
        token: CancellationToken,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        urls = await self._loader.get_sitemap_urls(source.origin)
        await self._add_children(source, ((SourceType.URL, u) for u in urls), token, on_progress)

    async def _add_children(
        self,
        parent: DocumentSource,
        items: Iterable[tuple[SourceType, str]],
        token: CancellationToken,
        on_progress: ProgressCallback | None,
    ) -> None:
        added = 0
        for child_type, origin in items:
            if token.cancelled:
                break

            child = DocumentSource(
                uuid=str(uuidlib.uuid4()),
                type=child_type,
                origin=origin,
                parent_id=parent.uuid,
            )
            try:
                completed = await self.add_document(child, token)
            except Exception as e:
                logger.warning(
                    "Skipping child document",
                    parent=parent.origin,
                    origin=origin,
                    error=str(e),
                )
                get_metrics().record_child_failure(e)
                continue

            if not completed:
                break

            self.documents[child.uuid] = child
            added += 1
            if added % ADD_COMMIT_EVERY == 0:
                _notify(on_progress)

        _notify(on_progress)

    # ── Delete ──────────────────────────────────────────────────

    async def _clear(self, source: DocumentSource, on_progress: ProgressCallback | None = None) -> None:
        """Delete the vectors of a source (and its children) but keep its record."""
        await self.connect()
        metrics = get_metrics()

        if not source.type.is_container:
            deleted = await self._db.delete(source.uuid)
            metrics.vectors_deleted.inc(deleted)
            return

        await self._db.begin_transaction()
        removed = 0
        try:
            for child in self.children(source.uuid):
                metrics.vectors_deleted.inc(await self._db.delete(child.uuid))
                self.documents.pop(child.uuid, None)
                removed += 1
                if removed % DELETE_COMMIT_EVERY == 0:
                    await self._db.commit_transaction()
                    _notify(on_progress)
                    await self._db.begin_transaction()
        except BaseException:
            if self._db.in_transaction:
                await self._db.cancel_transaction()
            raise
        await self._db.commit_transaction()

    async def delete_document_source(
        self,
        doc_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> bool:
        """
        Remove a source and its vectors; containers cascade to their children.

        Returns:
            False when doc_id is unknown
        """
        source = self.documents.get(doc_id)
        if source is None:
            return False

        await self._clear(source, on_progress)
        self.documents.pop(doc_id, None)
        _notify(on_progress)
        logger.info("Deleted document", base=self.name, origin=source.origin)
        return True

    async def delete_child_document_source(self, doc_id: str) -> bool:
        """Remove one child from its container. False when not a known child."""
        child = self.documents.get(doc_id)
        if child is None or child.parent_id is None:
            return False

        await self._clear(child)
        self.documents.pop(doc_id, None)
        logger.info("Deleted child document", base=self.name, origin=child.origin)
        return True

    # ── Query ───────────────────────────────────────────────────

    async def query(self, text: str) -> list[QueryResult]:
        started = time.perf_counter()
        vectors = await self.embedder.embed([text])

        await self.connect()
        count = self._config.search_result_count
        hits = await self._db.query(vectors[0], count + QUERY_OVERFETCH)

        results = [
            QueryResult(content=hit.item.content, score=hit.score, metadata=dict(hit.item.metadata))
            for hit in hits
            if hit.score > self._config.relevance_cut_off
        ]
        results.sort(key=lambda r: r.score, reverse=True)

        get_metrics().query_latency.observe(time.perf_counter() - started)
        return results[:count]

    # ── Offline changes ─────────────────────────────────────────

    async def scan_for_updates(self) -> ScanResult:
        """Compare filesystem sources to their recorded state."""
        result = ScanResult()
        for root in self.roots():
            await self._scan(root, result)

        if not result.empty:
            logger.info(
                "Offline changes detected",
                base=self.name,
                added=len(result.added),
                modified=len(result.modified),
                deleted=len(result.deleted),
            )
        return result

    async def _scan(self, source: DocumentSource, result: ScanResult) -> None:
        if not source.type.is_filesystem:
            return

        if not source.exists():
            result.deleted.append(source)
            return

        if source.type == SourceType.FILE:
            if source.has_changed():
                result.modified.append(source)
            return

        known = {child.origin for child in self.children(source.uuid)}
        try:
            files = await asyncio.to_thread(list_files_recursively, source.origin)
        except OSError as e:
            logger.warning("Failed to scan folder", origin=source.origin, error=str(e))
            files = []

        for path in files:
            if path not in known:
                new = DocumentSource(
                    uuid=str(uuidlib.uuid4()),
                    type=SourceType.FILE,
                    origin=path,
                    parent_id=source.uuid,
                )
                result.added.append((new, source))

        for child in self.children(source.uuid):
            await self._scan(child, result)


def _notify(callback: ProgressCallback | None) -> None:
    if callback is not None:
        callback()


def _stage(callback: StageCallback | None, stage: IngestionStage) -> None:
    if callback is not None:
        callback(stage)
