"""Tests for the retrying HTTP client."""

import json

import httpx
import pytest
import respx

from docrepo.rag.http_client import HTTPClient, HTTPClientError, RateLimitError, RetryConfig


class TestRetryConfig:
    def test_from_settings(self, monkeypatch):
        from docrepo.config.settings import get_settings

        monkeypatch.setenv("MAX_HTTP_RETRIES", "5")
        monkeypatch.setenv("MAX_BACKOFF_SECONDS", "12")
        get_settings.cache_clear()

        config = RetryConfig.from_settings()

        assert config.max_retries == 5
        assert config.max_backoff_seconds == 12.0

    def test_backoff_grows_and_caps(self):
        config = RetryConfig(base_delay=1.0, max_backoff_seconds=5.0, jitter_factor=0.0)

        assert config.calculate_backoff(0) == 1.0
        assert config.calculate_backoff(1) == 2.0
        assert config.calculate_backoff(2) == 4.0
        assert config.calculate_backoff(6) == 5.0

    def test_jitter_bounded(self):
        config = RetryConfig(base_delay=1.0, jitter_factor=0.1)
        for _ in range(50):
            assert 1.0 <= config.calculate_backoff(0) <= 1.1

    def test_retryable_statuses(self):
        config = RetryConfig()

        assert config.is_retryable_status(429)
        assert config.is_retryable_status(503)
        assert not config.is_retryable_status(404)
        assert not config.is_retryable_status(200)


class TestHTTPClient:
    @pytest.mark.asyncio
    @respx.mock
    async def test_post_sends_json_and_bearer_token(self):
        route = respx.post("https://api.example.com/embeddings").mock(
            return_value=httpx.Response(200, json={"ok": True})
        )

        async with HTTPClient() as client:
            response = await client.post(
                "https://api.example.com/embeddings",
                json_body={"input": ["a"]},
                bearer_token="sk-test",
            )

        assert response.json() == {"ok": True}
        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert json.loads(request.content) == {"input": ["a"]}

    @pytest.mark.asyncio
    @respx.mock
    async def test_get_without_token_sends_no_auth_header(self):
        route = respx.get("https://example.com/page").mock(
            return_value=httpx.Response(200, text="hello")
        )

        async with HTTPClient() as client:
            await client.get("https://example.com/page")

        assert "Authorization" not in route.calls.last.request.headers

    @pytest.mark.asyncio
    @respx.mock
    async def test_retry_on_500_then_success(self):
        call_count = 0

        def side_effect(request):
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                return httpx.Response(500, text="Server error")
            return httpx.Response(200, json={"success": True})

        respx.get("https://example.com/data").mock(side_effect=side_effect)

        config = RetryConfig(max_retries=2, base_delay=0.01, jitter_factor=0.0)
        async with HTTPClient(retry_config=config) as client:
            response = await client.get("https://example.com/data")

        assert response.status_code == 200
        assert call_count == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_rate_limit_error_after_retries(self):
        respx.get("https://example.com/data").mock(
            return_value=httpx.Response(429, text="Slow down")
        )

        config = RetryConfig(max_retries=1, base_delay=0.01, jitter_factor=0.0)
        async with HTTPClient(retry_config=config) as client:
            with pytest.raises(RateLimitError) as exc_info:
                await client.get("https://example.com/data")

        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    @respx.mock
    async def test_no_retry_on_4xx(self):
        route = respx.get("https://example.com/data").mock(
            return_value=httpx.Response(401, text="Unauthorized")
        )

        config = RetryConfig(max_retries=3, base_delay=0.01, jitter_factor=0.0)
        async with HTTPClient(retry_config=config) as client:
            with pytest.raises(HTTPClientError) as exc_info:
                await client.get("https://example.com/data")

        assert route.call_count == 1
        assert exc_info.value.status_code == 401
        assert exc_info.value.response_body == "Unauthorized"

    @pytest.mark.asyncio
    @respx.mock
    async def test_retry_on_timeout_then_fail(self):
        route = respx.get("https://example.com/data").mock(
            side_effect=httpx.ReadTimeout("timed out")
        )

        config = RetryConfig(max_retries=2, base_delay=0.01, jitter_factor=0.0)
        async with HTTPClient(retry_config=config) as client:
            with pytest.raises(HTTPClientError, match="after 3 attempts"):
                await client.get("https://example.com/data")

        assert route.call_count == 3

    @pytest.mark.asyncio
    async def test_requires_context_manager(self):
        client = HTTPClient()

        with pytest.raises(RuntimeError, match="context manager"):
            await client.get("https://example.com/data")
