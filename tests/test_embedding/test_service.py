"""Tests for the HTTP embedding engines and the engine factory."""

import json

import httpx
import pytest
import respx

from docrepo.embedding.config import EmbeddingConfig
from docrepo.embedding.service import (
    OllamaEmbedder,
    OpenAIEmbedder,
    create_embedder,
    embedding_dimensions,
)
from docrepo.rag.errors import UnsupportedEmbeddingEngine
from docrepo.rag.http_client import HTTPClientError


class TestOpenAIEmbedder:
    """Tests for the OpenAI engine."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_embed_sends_batch_with_api_key(self, embedding_config, openai_url):
        route = respx.post(openai_url).mock(
            return_value=httpx.Response(
                200,
                json={"data": [
                    {"index": 0, "embedding": [0.1, 0.2]},
                    {"index": 1, "embedding": [0.3, 0.4]},
                ]},
            )
        )
        embedder = OpenAIEmbedder("text-embedding-3-small", embedding_config)

        vectors = await embedder.embed(["first", "second"])

        assert vectors == [[0.1, 0.2], [0.3, 0.4]]
        request = route.calls[0].request
        assert request.headers["authorization"] == "Bearer sk-test"
        assert json.loads(request.content) == {
            "input": ["first", "second"],
            "model": "text-embedding-3-small",
        }

    @pytest.mark.asyncio
    @respx.mock
    async def test_embed_restores_input_order(self, embedding_config, openai_url):
        respx.post(openai_url).mock(
            return_value=httpx.Response(
                200,
                json={"data": [
                    {"index": 1, "embedding": [2.0]},
                    {"index": 0, "embedding": [1.0]},
                ]},
            )
        )
        embedder = OpenAIEmbedder("text-embedding-3-small", embedding_config)

        assert await embedder.embed(["a", "b"]) == [[1.0], [2.0]]

    @pytest.mark.asyncio
    @respx.mock
    async def test_custom_base_url(self, embedding_config):
        route = respx.post("http://proxy.local/v1/embeddings").mock(
            return_value=httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]})
        )
        embedder = OpenAIEmbedder(
            "text-embedding-3-small",
            embedding_config,
            api_key="other-key",
            base_url="http://proxy.local/v1/",
        )

        await embedder.embed(["a"])

        assert route.calls[0].request.headers["authorization"] == "Bearer other-key"

    @pytest.mark.asyncio
    async def test_embed_nothing_makes_no_request(self, embedding_config):
        embedder = OpenAIEmbedder("text-embedding-3-small", embedding_config)
        assert await embedder.embed([]) == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_count_mismatch_is_an_error(self, embedding_config, openai_url):
        respx.post(openai_url).mock(
            return_value=httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]})
        )
        embedder = OpenAIEmbedder("text-embedding-3-small", embedding_config)

        with pytest.raises(HTTPClientError, match="1 embeddings for 2 inputs"):
            await embedder.embed(["a", "b"])

    @pytest.mark.asyncio
    async def test_known_model_dimensions(self, embedding_config):
        assert await OpenAIEmbedder("text-embedding-3-large", embedding_config).dimensions() == 3072
        assert await OpenAIEmbedder("text-embedding-ada-002", embedding_config).dimensions() == 1536

    @pytest.mark.asyncio
    @respx.mock
    async def test_unknown_model_dimensions_are_probed(self, embedding_config, openai_url):
        route = respx.post(openai_url).mock(
            return_value=httpx.Response(
                200, json={"data": [{"index": 0, "embedding": [0.0] * 384}]}
            )
        )
        embedder = OpenAIEmbedder("my-finetune", embedding_config)

        assert await embedder.dimensions() == 384
        assert route.call_count == 1


class TestOllamaEmbedder:
    """Tests for the Ollama engine."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_embed(self, embedding_config, ollama_url):
        route = respx.post(f"{ollama_url}/api/embed").mock(
            return_value=httpx.Response(200, json={"embeddings": [[1.0, 0.0], [0.0, 1.0]]})
        )
        embedder = OllamaEmbedder("nomic-embed-text", embedding_config)

        vectors = await embedder.embed(["a", "b"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        assert json.loads(route.calls[0].request.content) == {
            "model": "nomic-embed-text",
            "input": ["a", "b"],
        }
        assert "authorization" not in route.calls[0].request.headers

    @pytest.mark.asyncio
    @respx.mock
    async def test_dimensions_from_model_info(self, embedding_config, ollama_url):
        respx.post(f"{ollama_url}/api/show").mock(
            return_value=httpx.Response(
                200,
                json={"model_info": {
                    "general.architecture": "nomic-bert",
                    "nomic-bert.embedding_length": 768,
                }},
            )
        )

        embedder = OllamaEmbedder("nomic-embed-text", embedding_config)

        assert await embedder.dimensions() == 768

    @pytest.mark.asyncio
    @respx.mock
    async def test_missing_embedding_length(self, embedding_config, ollama_url):
        respx.post(f"{ollama_url}/api/show").mock(
            return_value=httpx.Response(200, json={"model_info": {}})
        )

        embedder = OllamaEmbedder("llama3", embedding_config)

        with pytest.raises(HTTPClientError, match="no embedding length"):
            await embedder.dimensions()

    @pytest.mark.asyncio
    @respx.mock
    async def test_server_error_surfaces(self, embedding_config, ollama_url):
        respx.post(f"{ollama_url}/api/embed").mock(
            return_value=httpx.Response(404, json={"error": "model not found"})
        )

        embedder = OllamaEmbedder("missing", embedding_config)

        with pytest.raises(HTTPClientError):
            await embedder.embed(["a"])


class TestFactory:
    def test_http_engines(self):
        assert isinstance(create_embedder("openai", "text-embedding-3-small"), OpenAIEmbedder)
        assert isinstance(create_embedder("ollama", "nomic-embed-text"), OllamaEmbedder)

    def test_config_is_passed_through(self, embedding_config):
        embedder = create_embedder("ollama", "nomic-embed-text", embedding_config)
        assert embedder._config is embedding_config

    def test_unsupported_engine(self):
        with pytest.raises(UnsupportedEmbeddingEngine):
            create_embedder("word2vec", "whatever")

    @pytest.mark.asyncio
    @respx.mock
    async def test_embedding_dimensions(self, ollama_url):
        respx.post(f"{ollama_url}/api/show").mock(
            return_value=httpx.Response(
                200, json={"model_info": {"bert.embedding_length": 384}}
            )
        )

        assert await embedding_dimensions("ollama", "all-minilm") == 384
        assert await embedding_dimensions("openai", "text-embedding-3-small") == 1536


class TestEmbeddingConfig:
    def test_defaults(self):
        config = EmbeddingConfig()

        assert config.batch_size == 20
        assert config.token_budget == 8192
        assert config.device == "auto"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("EMBEDDING_BATCH_SIZE", "8")
        monkeypatch.setenv("EMBEDDING_DEVICE", "cpu")

        config = EmbeddingConfig()

        assert config.batch_size == 8
        assert config.device == "cpu"

    def test_batch_size_capped_by_batch_size(self):
        assert EmbeddingConfig(batch_size=20).batch_size_for(100) == 20

    def test_batch_size_shrinks_for_large_chunks(self):
        config = EmbeddingConfig(batch_size=20, token_budget=8192)

        # 4000 characters ~ 1000 tokens; 6144 usable tokens fit 6 chunks
        assert config.batch_size_for(4000) == 6

    def test_batch_size_never_zero(self):
        assert EmbeddingConfig(token_budget=256).batch_size_for(1_000_000) == 1
