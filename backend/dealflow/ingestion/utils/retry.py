"""Retry utilities with exponential backoff and jitter for network calls."""

import asyncio
import errno
import functools
import random
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from dealflow.config import RetrySettings, settings
from dealflow.core.exceptions import OperationTimeout, TransientNetworkError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

JITTER = 0.25

RETRYABLE_MESSAGE_FRAGMENTS = (
    "timeout",
    "econnreset",
    "socket hang up",
    "network error",
    "temporarily unavailable",
    "too many requests",
    "service unavailable",
    "bad gateway",
)


def calculate_delay(
    attempt: int,
    config: Optional[RetrySettings] = None,
    rand: Callable[[], float] = random.random,
) -> float:
    """Backoff delay in seconds before retry number ``attempt`` (0-based).

    delay = min(max_delay, initial_delay * multiplier ** attempt), then
    +/-25% symmetric jitter.
    """
    config = config or settings.RETRY
    base = min(config.max_delay_ms, config.initial_delay_ms * (config.multiplier ** attempt))
    jitter = base * JITTER * (rand() * 2 - 1)
    return max(0.0, (base + jitter) / 1000.0)


def _error_code(error: BaseException) -> Optional[str]:
    code = getattr(error, "code", None)
    if isinstance(code, str):
        return code
    err_no = getattr(error, "errno", None)
    if isinstance(err_no, int):
        return errno.errorcode.get(err_no)
    return None


def is_retryable_error(error: BaseException, config: Optional[RetrySettings] = None) -> bool:
    """Classify an exception as transient (worth retrying) or not."""
    config = config or settings.RETRY

    if isinstance(error, TransientNetworkError):
        return True

    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, asyncio.TimeoutError)):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in config.retryable_status_codes

    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int) and status_code in config.retryable_status_codes:
        return True

    code = _error_code(error)
    if code and code in config.retryable_errors:
        return True

    message = str(error).lower()
    return any(fragment in message for fragment in RETRYABLE_MESSAGE_FRAGMENTS)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_attempts: Optional[int] = None,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    on_retry: Optional[Callable[[BaseException, int, float], Any]] = None,
    config: Optional[RetrySettings] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rand: Callable[[], float] = random.random,
) -> T:
    """Await fn() with bounded exponential-backoff retries.

    Non-retryable errors are re-raised on the first attempt with no delay;
    the last error is re-raised once the budget is spent.

    Args:
        fn: Zero-argument coroutine factory
        max_attempts: Retries after the first attempt (defaults to config.max_retries)
        should_retry: Predicate deciding whether an error is transient
        on_retry: Called as on_retry(error, attempt, delay_seconds) before each sleep
        config: Retry settings (defaults to settings.RETRY)
        sleep: Async sleep, injectable for tests
        rand: Uniform [0, 1) source for jitter
    """
    config = config or settings.RETRY
    retries = config.max_retries if max_attempts is None else max_attempts
    predicate = should_retry or (lambda e: is_retryable_error(e, config))

    def wait(retry_state: RetryCallState) -> float:
        return calculate_delay(retry_state.attempt_number - 1, config, rand)

    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "retry_scheduled",
            attempt=retry_state.attempt_number,
            max_retries=retries,
            delay_seconds=round(delay, 3),
            error=str(error),
        )
        if on_retry is not None:
            on_retry(error, retry_state.attempt_number, delay)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait,
        retry=retry_if_exception(predicate),
        before_sleep=before_sleep,
        sleep=sleep,
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            return await fn()

    raise AssertionError("unreachable")  # pragma: no cover


async def with_retry_and_timeout(
    fn: Callable[[], Awaitable[T]],
    timeout_seconds: Optional[float] = None,
    **retry_kwargs: Any,
) -> T:
    """Race the whole retry loop against a hard timeout.

    Raises:
        OperationTimeout: When the timeout elapses, whatever retry budget remains
    """
    config = retry_kwargs.get("config") or settings.RETRY
    timeout = config.timeout_seconds if timeout_seconds is None else timeout_seconds
    try:
        return await asyncio.wait_for(with_retry(fn, **retry_kwargs), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise OperationTimeout(timeout) from e


def retryable(
    max_attempts: Optional[int] = None,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
):
    """Decorator form of with_retry for coroutine functions."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await with_retry(
                lambda: func(*args, **kwargs),
                max_attempts=max_attempts,
                should_retry=should_retry,
            )

        return wrapper

    return decorator


async def batch_with_retry(
    items: Iterable[Any],
    fn: Callable[[Any], Awaitable[T]],
    concurrency: int = 5,
    continue_on_error: bool = True,
    **retry_kwargs: Any,
) -> Dict[str, List[Any]]:
    """Run fn(item) with retries for every item, at most ``concurrency`` at once.

    Returns:
        {"results": [...], "errors": [{"item", "error"}]} in input order
    """
    semaphore = asyncio.Semaphore(concurrency)
    items = list(items)

    async def run(item: Any) -> T:
        async with semaphore:
            return await with_retry(lambda: fn(item), **retry_kwargs)

    outcomes = await asyncio.gather(
        *(run(item) for item in items),
        return_exceptions=continue_on_error,
    )

    results: List[Any] = []
    errors: List[Dict[str, Any]] = []
    for item, outcome in zip(items, outcomes):
        if isinstance(outcome, BaseException):
            errors.append({"item": item, "error": outcome})
        else:
            results.append(outcome)
    return {"results": results, "errors": errors}
