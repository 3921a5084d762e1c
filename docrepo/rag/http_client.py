"""
HTTP infrastructure layer with retry logic.

Provides:
- RetryConfig: Exponential backoff configuration
- HTTPClient: Async HTTP client with automatic retry on transient failures

Used by the embedding engine clients (OpenAI, Ollama) and by the loader
when fetching web pages and sitemaps.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from docrepo.config.settings import get_settings

logger = structlog.get_logger(__name__)


@dataclass
class RetryConfig:
    """
    Exponential backoff configuration for HTTP retries.

    Formula: min(max_backoff, base_delay * 2^attempt) * (1 + random(0, jitter_factor))
    """

    max_retries: int = 3
    max_backoff_seconds: float = 60.0
    base_delay: float = 1.0
    jitter_factor: float = 0.1

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        """Build retry configuration from application settings."""
        settings = get_settings()
        return cls(
            max_retries=settings.max_http_retries,
            max_backoff_seconds=settings.max_backoff_seconds,
        )

    def calculate_backoff(self, attempt: int) -> float:
        """
        Calculate backoff duration for a given retry attempt.

        Args:
            attempt: The retry attempt number (0-indexed)

        Returns:
            Backoff duration in seconds with jitter applied
        """
        delay = min(self.base_delay * (2**attempt), self.max_backoff_seconds)
        return delay + delay * self.jitter_factor * random.random()

    def is_retryable_status(self, status_code: int) -> bool:
        """429 and the transient 5xx codes are retried."""
        return status_code in {429, 500, 502, 503, 504}


class HTTPClientError(Exception):
    """Base exception for HTTP client errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class RateLimitError(HTTPClientError):
    """Raised when rate limit is hit and all retries exhausted."""

    pass


class HTTPClient:
    """
    Async HTTP client with retry logic.

    Features:
    - Exponential backoff with jitter on retryable errors
    - Automatic retry on 429, 5xx status codes
    - Automatic retry on timeout/connection errors
    - Optional bearer token sent with every request
    - Context manager for proper resource cleanup

    Example:
        async with HTTPClient(RetryConfig(max_retries=2)) as client:
            response = await client.post(
                "https://api.openai.com/v1/embeddings",
                json_body={"input": ["hello"], "model": "text-embedding-3-small"},
                bearer_token=api_key,
            )
    """

    def __init__(
        self,
        retry_config: RetryConfig | None = None,
        timeout: float = 30.0,
        follow_redirects: bool = True,
    ):
        self.retry_config = retry_config or RetryConfig()
        self.timeout = timeout
        self.follow_redirects = follow_redirects
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "HTTPClient":
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=self.follow_redirects,
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        bearer_token: str | None = None,
    ) -> httpx.Response:
        """
        Perform GET request with retry logic.

        Raises:
            HTTPClientError: On non-retryable errors or after retries exhausted
            RateLimitError: When rate limited and retries exhausted
        """
        return await self._request_with_retry(
            "GET", url, params=params, headers=headers, bearer_token=bearer_token
        )

    async def post(
        self,
        url: str,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        bearer_token: str | None = None,
    ) -> httpx.Response:
        """
        Perform POST request with retry logic.

        Raises:
            HTTPClientError: On non-retryable errors or after retries exhausted
            RateLimitError: When rate limited and retries exhausted
        """
        return await self._request_with_retry(
            "POST",
            url,
            params=params,
            headers=headers,
            json_body=json_body,
            bearer_token=bearer_token,
        )

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
        bearer_token: str | None = None,
    ) -> httpx.Response:
        if not self._client:
            raise RuntimeError("HTTPClient must be used as async context manager")

        request_headers = dict(headers) if headers else {}
        if bearer_token:
            request_headers["Authorization"] = f"Bearer {bearer_token}"

        attempts = self.retry_config.max_retries + 1
        for attempt in range(attempts):
            final = attempt == attempts - 1
            try:
                response = await self._client.request(
                    method,
                    url,
                    params=params or None,
                    headers=request_headers or None,
                    json=json_body,
                )
            except (httpx.TimeoutException, httpx.ConnectError, httpx.ReadError) as e:
                if final:
                    raise HTTPClientError(
                        f"Request failed after {attempts} attempts: {e}"
                    ) from e
                await self._backoff(attempt, url, error=type(e).__name__)
                continue

            status = response.status_code
            if not self.retry_config.is_retryable_status(status):
                if status >= 400:
                    raise HTTPClientError(
                        f"Request failed with status {status}",
                        status_code=status,
                        response_body=response.text,
                    )
                return response

            if final:
                error_class = RateLimitError if status == 429 else HTTPClientError
                reason = "Rate limit exceeded for" if status == 429 else f"Status {status} from"
                raise error_class(
                    f"{reason} {url} after {attempts} attempts",
                    status_code=status,
                    response_body=response.text,
                )
            await self._backoff(attempt, url, status=status)

        # unreachable: the final attempt always returns or raises
        raise HTTPClientError(f"Request failed after {attempts} attempts")

    async def _backoff(self, attempt: int, url: str, **reason: Any) -> None:
        delay = self.retry_config.calculate_backoff(attempt)
        logger.warning(
            "Retrying HTTP request",
            url=url,
            attempt=attempt + 1,
            backoff=round(delay, 2),
            **reason,
        )
        await asyncio.sleep(delay)
