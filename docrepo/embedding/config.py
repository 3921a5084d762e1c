"""
Embedding engine configuration.

Provides Pydantic settings shared by the OpenAI, Ollama and local
transformers embedders: batching limits, request timeouts and the
inference device for local models.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Dimensions of the hosted OpenAI embedding models
OPENAI_DIMENSIONS: dict[str, int] = {
    "text-embedding-ada-002": 1536,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
}


class EmbeddingConfig(BaseSettings):
    """
    Configuration for embedding generation.

    Settings can be overridden via environment variables prefixed with EMBEDDING_.
    """

    model_config = SettingsConfigDict(
        env_prefix="EMBEDDING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Batching
    batch_size: int = Field(
        default=20,
        ge=1,
        le=128,
        description="Maximum number of chunks sent in one embedding request",
    )
    token_budget: int = Field(
        default=8192,
        ge=256,
        description="Token ceiling of one embedding request",
    )

    # Remote engines
    request_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for one embedding HTTP request",
    )

    # Local transformers engine
    max_sequence_length: int = Field(
        default=512,
        description="Maximum token sequence length for local models",
    )
    use_fp16: bool = Field(
        default=True,
        description="Use FP16 (half precision) for GPU acceleration",
    )
    device: Literal["auto", "cpu", "cuda", "mps"] = Field(
        default="auto",
        description="Device for model inference (auto detects best available)",
    )

    def batch_size_for(self, chunk_size: int) -> int:
        """
        Number of chunks per embedding request for a given chunk size.

        A chunk of ``chunk_size`` characters is estimated at a quarter as
        many tokens, and a request may use three quarters of the budget.
        """
        approx_tokens = max(1.0, chunk_size / 4)
        fits = int(self.token_budget * 0.75 // approx_tokens)
        return max(1, min(self.batch_size, fits))
