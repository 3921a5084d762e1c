"""
Ingestion and retrieval configuration.

Uses Pydantic BaseSettings for environment variable support.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Container expansion commits the vector store every N successful children
ADD_COMMIT_EVERY = 5
# Cascade deletes commit the vector store every N removed children
DELETE_COMMIT_EVERY = 10
# Queries fetch this many extra neighbours before relevance filtering
QUERY_OVERFETCH = 10


class RagConfig(BaseSettings):
    """
    Configuration for document bases.

    All settings can be overridden via environment variables with
    RAG_ prefix (e.g., RAG_CHUNK_SIZE=500).
    """

    model_config = SettingsConfigDict(
        env_prefix="RAG_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Ingestion
    max_document_size_mb: float = Field(
        default=16,
        gt=0,
        description="Largest extracted text accepted, in megabytes of characters",
    )
    chunk_size: int = Field(
        default=1000,
        ge=1,
        description="Target chunk length in characters",
    )
    chunk_overlap: int = Field(
        default=200,
        ge=0,
        description="Characters shared between consecutive chunks",
    )

    # Retrieval
    search_result_count: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Maximum number of query results",
    )
    relevance_cut_off: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Results must score strictly above this value",
    )

    # Filesystem monitor
    debounce_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Quiet period before a filesystem event is acted on",
    )

    @model_validator(mode="after")
    def _check_overlap(self) -> "RagConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self

    @property
    def max_document_chars(self) -> int:
        """Size guard threshold in characters."""
        return int(self.max_document_size_mb * 1024 * 1024)
