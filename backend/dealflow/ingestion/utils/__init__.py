"""Resilience and normalization utilities for ingestion."""

from .circuit_breaker import CircuitBreaker, get_circuit_breaker
from .daily_cap import DailyCapTracker, get_daily_cap_tracker
from .rate_limiter import RateLimiter, TokenBucket, get_rate_limiter
from .retry import with_retry, with_retry_and_timeout

__all__ = [
    "CircuitBreaker",
    "get_circuit_breaker",
    "DailyCapTracker",
    "get_daily_cap_tracker",
    "RateLimiter",
    "TokenBucket",
    "get_rate_limiter",
    "with_retry",
    "with_retry_and_timeout",
]
