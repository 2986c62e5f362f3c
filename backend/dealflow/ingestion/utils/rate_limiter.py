"""Token bucket rate limiting, one global bucket plus one bucket per source."""

import asyncio
import math
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog

from dealflow.config import RateLimitSettings, settings
from dealflow.core.exceptions import RateLimitExceeded

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class TokenBucket:
    """Token bucket algorithm implementation for rate limiting.

    The bucket starts full and refills at a constant rate.
    Each request consumes one token. If no tokens are available,
    acquire() sleeps until the deficit has refilled.
    """

    def __init__(
        self,
        max_tokens: float,
        refill_rate: Optional[float] = None,
        requests: Optional[int] = None,
        window_ms: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize token bucket.

        Args:
            max_tokens: Maximum tokens in bucket (burst capacity)
            refill_rate: Tokens per second; derived from requests/window_ms when omitted
            requests: Requests allowed per window
            window_ms: Window length in milliseconds
            clock: Monotonic clock in seconds
            sleep: Async sleep used while waiting for tokens
        """
        if refill_rate is None:
            if not requests or not window_ms:
                raise ValueError("TokenBucket needs refill_rate or requests/window_ms")
            refill_rate = requests / (window_ms / 1000.0)

        self.max_tokens = float(max_tokens)
        self.refill_rate = float(refill_rate)  # tokens per second
        self.tokens = float(max_tokens)
        self._clock = clock
        self._sleep = sleep
        self.last_refill = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        """Refill tokens based on elapsed time since last refill."""
        now = self._clock()
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0, max_wait: Optional[float] = None) -> bool:
        """Acquire tokens from the bucket, waiting if necessary.

        Waiters are served one at a time and re-check the bucket after
        every sleep, so concurrent callers never share a refill.

        Args:
            tokens: Number of tokens to acquire (default 1.0)
            max_wait: Seconds this caller may sleep before giving up; None waits forever

        Returns:
            False if the tokens could not be taken within max_wait
        """
        async with self._lock:
            waited = 0.0
            while True:
                self._refill()
                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return True

                # Calculate wait time until we have enough tokens
                deficit = tokens - self.tokens
                wait_time = math.ceil(deficit / self.refill_rate * 1000) / 1000.0
                if max_wait is not None and waited + wait_time > max_wait:
                    return False

                logger.debug("rate_limit_wait", wait_seconds=wait_time, tokens=tokens)
                await self._sleep(wait_time)
                waited += wait_time

    def try_acquire(self, tokens: float = 1.0) -> bool:
        """Take tokens only if they are available right now."""
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def get_tokens(self) -> float:
        self._refill()
        return self.tokens

    def get_status(self) -> Dict[str, float]:
        return {
            "tokens": round(self.get_tokens(), 3),
            "max_tokens": self.max_tokens,
            "refill_rate": self.refill_rate,
        }


def _registry_limit(source: str) -> Optional[Dict[str, int]]:
    from dealflow.ingestion.sources import get_source_config

    config = get_source_config(source)
    if config is None or config.rate_limit is None:
        return None
    return {"requests": config.rate_limit.requests, "window_ms": config.rate_limit.window_ms}


class RateLimiter:
    """Two-tier limiter: every call acquires from the global bucket first,
    then from the bucket of its source.

    A global shortfall fails the whole acquisition without touching the
    source bucket, so one fast source cannot drain cross-source capacity.
    """

    def __init__(
        self,
        config: Optional[RateLimitSettings] = None,
        source_limits: Optional[Callable[[str], Optional[Dict[str, int]]]] = _registry_limit,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or settings.RATE_LIMIT
        self._source_limits = source_limits
        self._clock = clock
        self._sleep = sleep
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

        rps = self.config.global_.max_requests_per_second
        self.global_bucket = TokenBucket(
            max_tokens=rps * 10,
            refill_rate=rps,
            clock=clock,
            sleep=sleep,
        )

    def _get_bucket(self, source: str) -> TokenBucket:
        """Get or create token bucket for a source.

        Args:
            source: Source key (e.g., "slickdeals_rss")

        Returns:
            TokenBucket instance for this source
        """
        with self._lock:
            bucket = self._buckets.get(source)
            if bucket is None:
                limits = self._source_limits(source) if self._source_limits else None
                if limits is None:
                    limits = {
                        "requests": self.config.default.requests,
                        "window_ms": self.config.default.window_ms,
                    }
                bucket = TokenBucket(
                    max_tokens=limits["requests"],
                    requests=limits["requests"],
                    window_ms=limits["window_ms"],
                    clock=self._clock,
                    sleep=self._sleep,
                )
                self._buckets[source] = bucket
            return bucket

    def set_custom_limit(self, source: str, requests: int, window_ms: int) -> None:
        """Replace the bucket of a source with a new limit."""
        with self._lock:
            self._buckets[source] = TokenBucket(
                max_tokens=requests,
                requests=requests,
                window_ms=window_ms,
                clock=self._clock,
                sleep=self._sleep,
            )

    async def acquire(self, source: str, tokens: float = 1.0) -> bool:
        """Acquire a token for an outbound call to a source.

        Raises:
            RateLimitExceeded: If the global or source bucket is still short
                after waiting ``max_wait_ms``
        """
        max_wait = self.config.max_wait_ms / 1000.0

        if not await self.global_bucket.acquire(tokens, max_wait=max_wait):
            logger.warning("global_rate_limit_exceeded", source=source)
            raise RateLimitExceeded("global")

        if not await self._get_bucket(source).acquire(tokens, max_wait=max_wait):
            logger.warning("source_rate_limit_exceeded", source=source)
            raise RateLimitExceeded(source)
        return True

    def try_acquire(self, source: str, tokens: float = 1.0) -> bool:
        """Non-waiting variant, global bucket first."""
        if not self.global_bucket.try_acquire(tokens):
            return False
        return self._get_bucket(source).try_acquire(tokens)

    async def with_rate_limit(self, source: str, fn: Callable[[], Awaitable[T]]) -> T:
        await self.acquire(source)
        return await fn()

    def get_status(self, source: str) -> Dict[str, float]:
        return self._get_bucket(source).get_status()

    def get_all_statuses(self) -> Dict[str, Any]:
        with self._lock:
            buckets = dict(self._buckets)
        return {
            "global": self.global_bucket.get_status(),
            "sources": {source: bucket.get_status() for source, bucket in buckets.items()},
        }


# Global rate limiter instance
rate_limiter = RateLimiter()


def get_rate_limiter() -> RateLimiter:
    return rate_limiter


async def acquire_rate_limit(source: str) -> bool:
    return await rate_limiter.acquire(source)


def try_acquire_rate_limit(source: str) -> bool:
    return rate_limiter.try_acquire(source)


async def with_rate_limit(source: str, fn: Callable[[], Awaitable[T]]) -> T:
    return await rate_limiter.with_rate_limit(source, fn)


def get_rate_limit_status(source: str) -> Dict[str, float]:
    return rate_limiter.get_status(source)


def get_all_rate_limit_statuses() -> Dict[str, Any]:
    return rate_limiter.get_all_statuses()
