"""
Base HTTP Client with retry logic and request logging.
"""

import asyncio
import logging
from typing import Any, Dict, Optional
from dataclasses import dataclass
from enum import Enum

import httpx

logger = logging.getLogger(__name__)


class RetryStrategy(Enum):
    """Retry strategies for HTTP requests."""
    NONE = "none"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 2
    initial_delay: float = 0.5
    max_delay: float = 5.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    retry_on_status: tuple = (502, 503, 504)


NO_RETRY = RetryConfig(max_retries=0, strategy=RetryStrategy.NONE)


class BaseClient:
    """
    Base HTTP client with retry logic, request logging, and error handling.

    Features:
    - Automatic retries with configurable backoff (reads only, callers opt out per request)
    - Request/response logging for debugging
    - Timeout configuration
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
        log_requests: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig()
        self.log_requests = log_requests
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy initialization of HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    def _get_headers(self) -> Dict[str, str]:
        """Get headers for requests. Override in subclasses for auth."""
        return {}

    def _calculate_delay(self, attempt: int, config: RetryConfig) -> float:
        """Calculate delay for retry based on strategy."""
        if config.strategy == RetryStrategy.NONE:
            return 0
        elif config.strategy == RetryStrategy.LINEAR:
            delay = config.initial_delay * attempt
        else:  # EXPONENTIAL
            delay = config.initial_delay * (2 ** (attempt - 1))

        return min(delay, config.max_delay)

    def _should_retry(self, status_code: int, attempt: int, config: RetryConfig) -> bool:
        """Determine if request should be retried."""
        if attempt > config.max_retries:
            return False
        return status_code in config.retry_on_status

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict] = None,
        json: Optional[Dict] = None,
        headers: Optional[Dict] = None,
        timeout: Optional[float] = None,
        retry_config: Optional[RetryConfig] = None,
    ) -> httpx.Response:
        """
        Make an HTTP request with retry logic.

        Args:
            method: HTTP method (GET, POST)
            path: URL path
            params: Query parameters
            json: JSON body
            headers: Additional headers
            timeout: Request timeout override
            retry_config: Retry override; pass NO_RETRY for requests that must be sent once

        Returns:
            httpx.Response object

        Raises:
            httpx.RequestError: For network/connection errors after retries
        """
        config = retry_config or self.retry_config
        request_headers = {**self._get_headers(), **(headers or {})}
        request_timeout = timeout or self.timeout

        attempt = 0
        while True:
            attempt += 1
            try:
                if self.log_requests:
                    logger.debug(f"[{method}] {path} (attempt {attempt})")

                response = await self.client.request(
                    method=method,
                    url=path,
                    params=params,
                    json=json,
                    headers=request_headers,
                    timeout=request_timeout,
                )

                if self.log_requests:
                    logger.debug(f"[{method}] {path} -> {response.status_code}")

                if self._should_retry(response.status_code, attempt, config):
                    delay = self._calculate_delay(attempt, config)
                    logger.warning(
                        f"Retrying {method} {path} after {delay}s "
                        f"(status={response.status_code}, attempt={attempt})"
                    )
                    await asyncio.sleep(delay)
                    continue

                return response

            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                if attempt <= config.max_retries:
                    delay = self._calculate_delay(attempt, config)
                    logger.warning(
                        f"Connection error on {method} {path}, "
                        f"retrying in {delay}s (attempt={attempt}): {e}"
                    )
                    await asyncio.sleep(delay)
                    continue
                raise

    async def get_json(self, path: str, params: Optional[Dict] = None, **kwargs) -> Any:
        """Make a GET request and return the decoded JSON body."""
        response = await self._request("GET", path, params=params, **kwargs)
        response.raise_for_status()
        return response.json()
