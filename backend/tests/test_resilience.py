"""Tests for the outbound-call safeguards.

Tests cover:
- Circuit breaker state machine (CLOSED -> OPEN -> HALF_OPEN -> CLOSED)
- Token bucket and two-tier rate limiter
- Retry with backoff, retry classification and hard timeouts
- Daily cap counting and date rollover
"""

import asyncio
import errno
from datetime import date

import httpx
import pytest

from dealflow.config import GlobalRateLimitSettings, RateLimitSettings, RetrySettings
from dealflow.core.exceptions import (
    CircuitOpenError,
    OperationTimeout,
    RateLimitExceeded,
    TransientNetworkError,
)
from dealflow.ingestion.utils import daily_cap as daily_cap_module
from dealflow.ingestion.utils import rate_limiter as rate_limiter_module
from dealflow.ingestion.utils.circuit_breaker import CLOSED, HALF_OPEN, OPEN
from dealflow.ingestion.utils.rate_limiter import RateLimiter, TokenBucket
from dealflow.ingestion.utils.retry import (
    batch_with_retry,
    calculate_delay,
    is_retryable_error,
    with_retry,
    with_retry_and_timeout,
)

from conftest import FakeSleep


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://feeds.example.com/rss")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


# ============================================================================
# TESTS: CIRCUIT BREAKER
# ============================================================================

class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    def test_closed_circuit_allows_calls(self, breaker):
        assert breaker.can_execute("feed") is True
        assert breaker.get_state("feed") == CLOSED

    def test_opens_after_threshold_failures(self, breaker):
        for _ in range(3):
            breaker.record_failure("feed", RuntimeError("boom"))

        assert breaker.get_state("feed") == OPEN
        assert breaker.can_execute("feed") is False
        assert breaker.retry_in_seconds("feed") == 30

    def test_failures_outside_window_are_forgotten(self, breaker, clock):
        breaker.record_failure("feed")
        breaker.record_failure("feed")
        clock.advance(61)
        breaker.record_failure("feed")

        assert breaker.get_state("feed") == CLOSED
        assert breaker.get_circuit_status("feed")["failures"] == 1

    def test_half_open_after_reset_timeout(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure("feed")

        clock.advance(29)
        assert breaker.can_execute("feed") is False

        clock.advance(1)
        assert breaker.can_execute("feed") is True
        assert breaker.get_state("feed") == HALF_OPEN

    def test_get_state_does_not_transition(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure("feed")
        clock.advance(120)

        assert breaker.get_state("feed") == OPEN
        assert breaker.retry_in_seconds("feed") == 0

    def test_half_open_failure_reopens(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure("feed")
        clock.advance(30)
        breaker.can_execute("feed")

        breaker.record_failure("feed")

        assert breaker.get_state("feed") == OPEN
        assert breaker.retry_in_seconds("feed") == 30

    def test_half_open_successes_close_circuit(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure("feed")
        clock.advance(30)
        breaker.can_execute("feed")

        breaker.record_success("feed")
        assert breaker.get_state("feed") == HALF_OPEN

        breaker.record_success("feed")
        assert breaker.get_state("feed") == CLOSED
        assert breaker.get_circuit_status("feed")["failures"] == 0

    def test_circuits_are_independent(self, breaker):
        for _ in range(3):
            breaker.record_failure("bad_feed")

        assert breaker.can_execute("good_feed") is True
        assert breaker.open_circuits() == ["bad_feed"]

    async def test_call_rejects_without_invoking_when_open(self, breaker):
        for _ in range(3):
            breaker.record_failure("feed")
        calls = []

        async def fetch():
            calls.append(1)
            return "items"

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call("feed", fetch)

        assert calls == []
        assert exc_info.value.retry_in_seconds == 30

    async def test_call_records_failure_and_rethrows(self, breaker):
        async def fetch():
            raise ValueError("bad feed")

        with pytest.raises(ValueError):
            await breaker.call("feed", fetch)

        assert breaker.get_circuit_status("feed")["failures"] == 1

    async def test_call_returns_result(self, breaker):
        async def fetch():
            return ["a", "b"]

        assert await breaker.call("feed", fetch) == ["a", "b"]

    def test_reset_circuit(self, breaker):
        for _ in range(3):
            breaker.record_failure("feed")

        breaker.reset_circuit("feed")

        assert breaker.get_state("feed") == CLOSED
        assert breaker.can_execute("feed") is True


# ============================================================================
# TESTS: RATE LIMITING
# ============================================================================

class TestTokenBucket:
    """Tests for TokenBucket."""

    async def test_burst_then_wait_for_refill(self, clock, fake_sleep):
        bucket = TokenBucket(max_tokens=2, refill_rate=1.0, clock=clock, sleep=fake_sleep)

        assert await bucket.acquire() is True
        assert await bucket.acquire() is True
        assert fake_sleep.calls == []

        assert await bucket.acquire() is True
        assert fake_sleep.calls == [1.0]

    async def test_acquire_gives_up_after_max_wait(self, clock):
        sleep = FakeSleep()  # does not advance the clock
        bucket = TokenBucket(max_tokens=1, refill_rate=0.5, clock=clock, sleep=sleep)

        assert await bucket.acquire() is True
        assert await bucket.acquire(max_wait=3.0) is False
        assert sleep.calls == [2.0]

    async def test_concurrent_waiters_each_wait_for_their_own_token(self, clock):
        sleep = FakeSleep(clock)
        bucket = TokenBucket(max_tokens=1, requests=1, window_ms=1000, clock=clock, sleep=sleep)
        assert bucket.try_acquire() is True
        started = clock()

        results = await asyncio.gather(*(bucket.acquire() for _ in range(3)))

        assert results == [True, True, True]
        assert sleep.calls == [1.0, 1.0, 1.0]
        assert clock() - started >= 3.0

    def test_refill_is_capped_at_max(self, clock):
        bucket = TokenBucket(max_tokens=3, requests=3, window_ms=1000, clock=clock)
        bucket.try_acquire()
        clock.advance(100)

        assert bucket.get_tokens() == 3.0

    def test_requires_rate(self):
        with pytest.raises(ValueError):
            TokenBucket(max_tokens=1)


class TestRateLimiter:
    """Tests for the global + per-source RateLimiter."""

    async def test_global_exhaustion_raises(self, clock):
        limiter = RateLimiter(
            RateLimitSettings(global_=GlobalRateLimitSettings(max_requests_per_second=0.1)),
            source_limits=None,
            clock=clock,
            sleep=FakeSleep(),
        )

        assert await limiter.acquire("feed") is True
        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.acquire("feed")
        assert exc_info.value.scope == "global"

    async def test_source_bucket_uses_registered_limit(self, clock):
        limiter = RateLimiter(
            source_limits=lambda source: {"requests": 1, "window_ms": 60_000},
            clock=clock,
            sleep=FakeSleep(),
        )

        assert await limiter.acquire("slow_feed") is True
        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.acquire("slow_feed")
        assert exc_info.value.scope == "slow_feed"
        assert limiter.get_status("slow_feed")["max_tokens"] == 1.0

    async def test_with_rate_limit_does_not_call_when_source_is_short(self, clock):
        calls = []

        async def fetch():
            calls.append(1)

        limiter = RateLimiter(
            RateLimitSettings(max_wait_ms=500),
            source_limits=lambda source: {"requests": 1, "window_ms": 60_000},
            clock=clock,
            sleep=FakeSleep(clock),
        )
        await limiter.with_rate_limit("slow_feed", fetch)

        with pytest.raises(RateLimitExceeded):
            await limiter.with_rate_limit("slow_feed", fetch)
        assert calls == [1]

    def test_custom_limit_replaces_bucket(self, clock):
        limiter = RateLimiter(source_limits=None, clock=clock)

        limiter.set_custom_limit("feed", requests=2, window_ms=60_000)

        assert limiter.try_acquire("feed") is True
        assert limiter.try_acquire("feed") is True
        assert limiter.try_acquire("feed") is False

    async def test_module_helpers_use_global_limiter(self):
        calls = []

        async def fetch():
            calls.append(1)
            return "ok"

        assert await rate_limiter_module.with_rate_limit("helper_feed", fetch) == "ok"
        assert rate_limiter_module.try_acquire_rate_limit("helper_feed") is True
        assert await rate_limiter_module.acquire_rate_limit("helper_feed") is True
        assert "max_tokens" in rate_limiter_module.get_rate_limit_status("helper_feed")
        assert "helper_feed" in rate_limiter_module.get_all_rate_limit_statuses()["sources"]
        assert calls == [1]

    def test_statuses_include_global_and_sources(self, clock):
        limiter = RateLimiter(source_limits=None, clock=clock)
        limiter.try_acquire("feed")

        statuses = limiter.get_all_statuses()

        assert "global" in statuses
        assert set(statuses["sources"]) == {"feed"}


# ============================================================================
# TESTS: RETRY
# ============================================================================

class TestRetry:
    """Tests for with_retry and error classification."""

    async def test_retries_transient_errors_with_backoff(self):
        sleep = FakeSleep()
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise httpx.ConnectError("connection reset")
            return "ok"

        result = await with_retry(flaky, sleep=sleep, rand=lambda: 0.5)

        assert result == "ok"
        assert len(attempts) == 3
        assert sleep.calls == [1.0, 2.0]

    async def test_non_retryable_error_is_raised_immediately(self):
        sleep = FakeSleep()
        attempts = []

        async def broken():
            attempts.append(1)
            raise ValueError("bad payload")

        with pytest.raises(ValueError):
            await with_retry(broken, sleep=sleep)

        assert len(attempts) == 1
        assert sleep.calls == []

    async def test_last_error_raised_when_budget_spent(self):
        attempts = []
        retried = []

        async def down():
            attempts.append(1)
            raise _status_error(503)

        with pytest.raises(httpx.HTTPStatusError):
            await with_retry(
                down,
                max_attempts=2,
                sleep=FakeSleep(),
                on_retry=lambda error, attempt, delay: retried.append(attempt),
            )

        assert len(attempts) == 3
        assert retried == [1, 2]

    async def test_timeout_wins_over_retries(self):
        async def hang():
            await asyncio.sleep(5)

        with pytest.raises(OperationTimeout):
            await with_retry_and_timeout(hang, timeout_seconds=0.01)

    @pytest.mark.parametrize(
        "error, expected",
        [
            (_status_error(503), True),
            (_status_error(429), True),
            (_status_error(404), False),
            (httpx.ReadTimeout("timed out"), True),
            (TransientNetworkError("flaky"), True),
            (OSError(errno.ECONNRESET, "reset"), True),
            (RuntimeError("socket hang up"), True),
            (KeyError("title"), False),
        ],
    )
    def test_is_retryable_error(self, error, expected):
        assert is_retryable_error(error) is expected

    async def test_batch_with_retry_collects_errors(self):
        async def double(value):
            if value < 0:
                raise ValueError(f"negative: {value}")
            return value * 2

        outcome = await batch_with_retry([1, -1, 3], double, concurrency=2, sleep=FakeSleep())

        assert outcome["results"] == [2, 6]
        assert len(outcome["errors"]) == 1
        assert outcome["errors"][0]["item"] == -1

    def test_delay_is_capped(self):
        config = RetrySettings(initial_delay_ms=1000, max_delay_ms=5000, multiplier=2.0)

        assert calculate_delay(0, config, rand=lambda: 0.5) == 1.0
        assert calculate_delay(10, config, rand=lambda: 0.5) == 5.0

    def test_delay_jitter_bounds(self):
        config = RetrySettings(initial_delay_ms=1000)

        assert calculate_delay(0, config, rand=lambda: 0.0) == 0.75
        assert calculate_delay(0, config, rand=lambda: 1.0) == 1.25


# ============================================================================
# TESTS: DAILY CAP
# ============================================================================

class TestDailyCap:
    """Tests for DailyCapTracker."""

    def test_blocks_after_cap(self, daily_caps):
        for _ in range(5):
            assert daily_caps.check("capped_feed")["allowed"] is True
            daily_caps.increment("capped_feed")

        status = daily_caps.check("capped_feed")
        assert status == {"allowed": False, "current": 5, "cap": 5, "remaining": 0}

    def test_default_cap_for_unknown_source(self, daily_caps):
        assert daily_caps.check("other_feed")["cap"] == 500

    def test_counts_reset_on_new_day(self, daily_caps, today):
        for _ in range(5):
            daily_caps.increment("capped_feed")

        today.day = date(2024, 3, 2)

        assert daily_caps.check("capped_feed")["allowed"] is True
        assert daily_caps.get_counts() == {}

    def test_module_helpers_use_global_tracker(self):
        daily_cap_module.daily_cap_tracker.reset()
        try:
            assert daily_cap_module.increment_daily_count("helper_feed") == 1
            assert daily_cap_module.check_daily_cap("helper_feed")["current"] == 1
            assert daily_cap_module.get_daily_counts() == {"helper_feed": 1}
        finally:
            daily_cap_module.daily_cap_tracker.reset()
