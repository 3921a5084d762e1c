"""Pytest fixtures for embedding tests."""

import pytest

from docrepo.embedding.config import EmbeddingConfig

OPENAI_URL = "https://api.openai.com/v1/embeddings"
OLLAMA_URL = "http://localhost:11434"


@pytest.fixture
def embedding_config() -> EmbeddingConfig:
    """Configuration for testing."""
    return EmbeddingConfig(
        batch_size=4,
        request_timeout_seconds=5.0,
        use_fp16=False,
        device="cpu",
    )


@pytest.fixture
def openai_url() -> str:
    return OPENAI_URL


@pytest.fixture
def ollama_url() -> str:
    return OLLAMA_URL
