"""
Embedding engines for document bases.

Provides async embedding generation behind one interface:
- OpenAIEmbedder: hosted OpenAI-compatible ``/embeddings`` endpoint
- OllamaEmbedder: local Ollama server ``/api/embed`` endpoint
- TransformersEmbedder: HuggingFace model run in-process (see local.py)

Engines are selected by name through ``create_embedder`` and the vector
dimensionality of an engine/model pair is resolved by ``embedding_dimensions``.
"""

from abc import ABC, abstractmethod
from typing import Any

import structlog

from docrepo.config.settings import get_settings
from docrepo.embedding.config import OPENAI_DIMENSIONS, EmbeddingConfig
from docrepo.rag.errors import UnsupportedEmbeddingEngine
from docrepo.rag.http_client import HTTPClient, HTTPClientError, RetryConfig

logger = structlog.get_logger(__name__)

SUPPORTED_ENGINES = ("openai", "ollama", "transformers")


class Embedder(ABC):
    """Turns a batch of texts into one vector per text."""

    engine: str = ""

    def __init__(self, model: str, config: EmbeddingConfig | None = None):
        self.model = model
        self._config = config or EmbeddingConfig()

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts, preserving order."""
        ...

    @abstractmethod
    async def dimensions(self) -> int:
        """Length of the vectors this engine/model produces."""
        ...

    async def close(self) -> None:
        """Release engine resources."""
        return None

    def _check_count(self, texts: list[str], vectors: list[Any]) -> None:
        if len(vectors) != len(texts):
            raise HTTPClientError(
                f"{self.engine} returned {len(vectors)} embeddings for {len(texts)} inputs"
            )


class OpenAIEmbedder(Embedder):
    """
    OpenAI embeddings over the REST API.

    Works against any OpenAI-compatible base URL configured through
    ``OPENAI_BASE_URL``.
    """

    engine = "openai"

    def __init__(
        self,
        model: str,
        config: EmbeddingConfig | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        super().__init__(model, config)
        settings = get_settings()
        self._api_key = api_key if api_key is not None else settings.openai_api_key
        self._base_url = (base_url or settings.openai_base_url).rstrip("/")
        if self._api_key is None and not settings.openai_configured:
            logger.warning("OPENAI_API_KEY is not set", model=model)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        async with HTTPClient(
            RetryConfig.from_settings(),
            timeout=self._config.request_timeout_seconds,
        ) as client:
            response = await client.post(
                f"{self._base_url}/embeddings",
                json_body={"input": texts, "model": self.model},
                bearer_token=self._api_key,
            )

        data = response.json().get("data", [])
        # the API may return items out of order
        data = sorted(data, key=lambda item: item.get("index", 0))
        vectors = [item["embedding"] for item in data]
        self._check_count(texts, vectors)
        return vectors

    async def dimensions(self) -> int:
        if self.model in OPENAI_DIMENSIONS:
            return OPENAI_DIMENSIONS[self.model]

        # custom deployments: probe once
        probe = await self.embed(["dimensions"])
        logger.info("Probed embedding dimensions", engine=self.engine, model=self.model)
        return len(probe[0])


class OllamaEmbedder(Embedder):
    """Embeddings from a running Ollama server."""

    engine = "ollama"

    def __init__(
        self,
        model: str,
        config: EmbeddingConfig | None = None,
        base_url: str | None = None,
    ):
        super().__init__(model, config)
        self._base_url = (base_url or get_settings().ollama_base_url).rstrip("/")

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        async with HTTPClient(
            RetryConfig.from_settings(),
            timeout=self._config.request_timeout_seconds,
        ) as client:
            response = await client.post(
                f"{self._base_url}/api/embed",
                json_body={"model": self.model, "input": texts},
            )

        vectors = response.json().get("embeddings", [])
        self._check_count(texts, vectors)
        return vectors

    async def dimensions(self) -> int:
        """Read ``*.embedding_length`` from the model info."""
        async with HTTPClient(
            RetryConfig.from_settings(),
            timeout=self._config.request_timeout_seconds,
        ) as client:
            response = await client.post(
                f"{self._base_url}/api/show",
                json_body={"model": self.model},
            )

        model_info = response.json().get("model_info", {})
        for key, value in model_info.items():
            if key.endswith("embedding_length"):
                return int(value)

        raise HTTPClientError(f"Ollama model {self.model} reports no embedding length")


def create_embedder(
    engine: str,
    model: str,
    config: EmbeddingConfig | None = None,
) -> Embedder:
    """
    Build the embedder for an engine name.

    Raises:
        UnsupportedEmbeddingEngine: engine is not one of SUPPORTED_ENGINES
    """
    if engine == "openai":
        return OpenAIEmbedder(model, config)
    if engine == "ollama":
        return OllamaEmbedder(model, config)
    if engine == "transformers":
        # torch is only imported when a local model is actually requested
        from docrepo.embedding.local import TransformersEmbedder

        return TransformersEmbedder(model, config)
    raise UnsupportedEmbeddingEngine(engine)


async def embedding_dimensions(
    engine: str,
    model: str,
    config: EmbeddingConfig | None = None,
) -> int:
    """Vector length produced by ``engine``/``model``."""
    embedder = create_embedder(engine, model, config)
    try:
        return await embedder.dimensions()
    finally:
        await embedder.close()
