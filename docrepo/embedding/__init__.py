"""
Embedding engines for document bases.

This module provides:
- Embedder: Interface every engine implements (embed, dimensions)
- OpenAIEmbedder / OllamaEmbedder: HTTP engines built on the retrying client
- create_embedder: Engine factory keyed by engine name
- embedding_dimensions: Vector length of an engine/model pair
- EmbeddingConfig: Batching, timeout and device settings

The local transformers engine lives in ``docrepo.embedding.local`` and is
imported on demand so torch is only loaded when it is used.
"""

from docrepo.embedding.config import EmbeddingConfig
from docrepo.embedding.service import (
    SUPPORTED_ENGINES,
    Embedder,
    OllamaEmbedder,
    OpenAIEmbedder,
    create_embedder,
    embedding_dimensions,
)

__all__ = [
    "SUPPORTED_ENGINES",
    "Embedder",
    "EmbeddingConfig",
    "OllamaEmbedder",
    "OpenAIEmbedder",
    "create_embedder",
    "embedding_dimensions",
]
