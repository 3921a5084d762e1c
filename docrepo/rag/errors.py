"""Error taxonomy for document repository operations."""


class DocRepoError(Exception):
    """Base class for document repository errors."""


class UnsupportedType(DocRepoError):
    """The loader cannot parse this source type or file extension."""

    def __init__(self, source_type: str, origin: str):
        super().__init__(f"Unsupported document type: [{source_type}] {origin}")
        self.source_type = source_type
        self.origin = origin


class LoadFailure(DocRepoError):
    """Text extraction failed or produced no usable content."""

    def __init__(self, origin: str, reason: str = "Unable to load document"):
        super().__init__(f"{reason}: {origin}")
        self.origin = origin
        self.reason = reason


class OversizeDocument(DocRepoError):
    """Extracted text exceeds the configured size limit."""

    def __init__(self, origin: str, max_size_mb: float):
        super().__init__(f"Document is too large (max {max_size_mb}MB): {origin}")
        self.origin = origin
        self.max_size_mb = max_size_mb


class ParentNotFound(DocRepoError):
    """The container a child was added to does not exist."""

    def __init__(self, parent_id: str):
        super().__init__(f"Parent document not found: {parent_id}")
        self.parent_id = parent_id


class DatabaseNotFound(DocRepoError):
    """No document base with this uuid."""

    def __init__(self, base_id: str):
        super().__init__(f"Database not found: {base_id}")
        self.base_id = base_id


class CancellationAbort(DocRepoError):
    """
    Outcome of a task cancelled while processing.

    Reported to listeners as the task error; never raised through the
    ingestion call chain.
    """

    def __init__(self, task_id: str):
        super().__init__(f"Task cancelled: {task_id}")
        self.task_id = task_id


class UnsupportedEmbeddingEngine(DocRepoError):
    """No embedder exists for this engine name."""

    def __init__(self, engine: str):
        super().__init__(f"Unsupported embedding engine: {engine}")
        self.engine = engine
