"""Outbound HTTP for the ingestion pipeline.

Every request goes through the source circuit breaker, then the rate
limiter (global bucket, then source bucket), then retry with a hard
timeout around the whole retry loop.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog

from dealflow.config import HttpSettings, RetrySettings, settings
from dealflow.ingestion.utils.circuit_breaker import CircuitBreaker, get_circuit_breaker
from dealflow.ingestion.utils.rate_limiter import RateLimiter, get_rate_limiter
from dealflow.ingestion.utils.retry import with_retry_and_timeout

logger = structlog.get_logger(__name__)

FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml, text/xml, */*"
HTML_ACCEPT = "text/html,application/xhtml+xml"


class HttpClient:
    """httpx.AsyncClient wrapper with circuit breaking, rate limiting and retries."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
        limiter: Optional[RateLimiter] = None,
        config: Optional[HttpSettings] = None,
        retry_config: Optional[RetrySettings] = None,
        retry_sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or settings.HTTP
        self.retry_config = retry_config or settings.RETRY
        self.client = client or httpx.AsyncClient(
            timeout=self.config.timeout_seconds,
            headers=self.config.default_headers(),
            follow_redirects=True,
            max_redirects=self.config.max_redirects,
        )
        self.breaker = breaker or get_circuit_breaker()
        self.limiter = limiter or get_rate_limiter()
        self._retry_sleep = retry_sleep
        self.logger = logger.bind(component="http_client")

    async def request(
        self,
        source: str,
        method: str,
        url: str,
        timeout: Optional[float] = None,
        circuit: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request under the source's breaker and rate limits.

        ``circuit=False`` skips the breaker for callers already running
        under the same source circuit.

        Raises:
            CircuitOpenError: If the source circuit is open
            RateLimitExceeded: If the global bucket is exhausted
            OperationTimeout: If retries did not finish within the timeout
            httpx.HTTPError: Last error once retries are exhausted
        """

        async def attempt() -> httpx.Response:
            started = time.monotonic()
            response = await self.client.request(method, url, **kwargs)
            self.logger.debug(
                "http_response",
                source=source,
                method=method,
                url=url[:80],
                status=response.status_code,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            response.raise_for_status()
            return response

        async def guarded() -> httpx.Response:
            await self.limiter.acquire(source)
            return await with_retry_and_timeout(
                attempt,
                timeout_seconds=timeout or self.config.timeout_seconds,
                config=self.retry_config,
                sleep=self._retry_sleep,
            )

        try:
            if not circuit:
                return await guarded()
            return await self.breaker.call(source, guarded)
        except httpx.HTTPError as e:
            self.logger.warning("http_request_failed", source=source, url=url[:80], error=str(e))
            raise

    async def get(self, source: str, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request(source, "GET", url, **kwargs)

    async def get_text(
        self,
        source: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        circuit: bool = True,
    ) -> str:
        response = await self.get(source, url, headers=headers, timeout=timeout, circuit=circuit)
        return response.text

    async def get_page(self, source: str, url: str) -> str:
        """Fetch an HTML page the way a browser would."""
        headers = {"Accept": HTML_ACCEPT, "User-Agent": self.config.browser_user_agent}
        return await self.get_text(source, url, headers=headers, timeout=self.config.page_timeout_seconds)

    async def fetch_feed(self, source: str, url: str, headers: Optional[Dict[str, str]] = None) -> str:
        """Fetch feed XML. Runs inside the ingestion job's own source circuit."""
        merged = {"Accept": FEED_ACCEPT}
        merged.update(headers or {})
        return await self.get_text(source, url, headers=merged, circuit=False)

    async def fetch_json(self, source: str, url: str, headers: Optional[Dict[str, str]] = None) -> Any:
        merged = {"Accept": "application/json"}
        merged.update(headers or {})
        response = await self.get(source, url, headers=merged)
        return response.json()

    async def get_final_url(self, source: str, url: str) -> str:
        """Follow redirects and return where they end. Falls back to ``url`` on error."""
        try:
            response = await self.get(source, url, headers={"User-Agent": self.config.browser_user_agent})
        except Exception as e:
            self.logger.debug("final_url_failed", url=url[:80], error=str(e))
            return url
        return str(response.url)

    async def close(self) -> None:
        await self.client.aclose()


_http_client: Optional[HttpClient] = None


def get_http_client() -> HttpClient:
    global _http_client

    if _http_client is None:
        _http_client = HttpClient()
    return _http_client


async def close_http_client() -> None:
    global _http_client

    if _http_client is not None:
        await _http_client.close()
        _http_client = None
