"""
Configuration for vector store operations.

Uses Pydantic BaseSettings for environment variable support.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class VectorStoreConfig(BaseSettings):
    """
    Configuration for LocalVectorStore.

    All settings can be overridden via environment variables with
    VECTORSTORE_ prefix (e.g., VECTORSTORE_COMMIT_EVERY=500).
    """

    # Files inside a base directory
    index_file_name: str = Field(
        default="index.json",
        description="Item records and dimensionality",
    )
    vectors_file_name: str = Field(
        default="vectors.npy",
        description="Float32 matrix, one row per item",
    )

    # Transactions
    commit_every: int = Field(
        default=1000,
        ge=1,
        le=100_000,
        description="Inserts per transaction chunk while storing one document",
    )

    model_config = SettingsConfigDict(env_prefix="VECTORSTORE_")
