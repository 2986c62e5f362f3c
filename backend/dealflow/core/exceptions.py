"""Custom exception classes for the ingestion pipeline."""

from typing import Optional


class DealflowError(Exception):
    """Base exception for all Dealflow errors."""

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(self.message)


class CircuitOpenError(DealflowError):
    """Raised when a call is rejected because the source circuit is open."""

    def __init__(self, source: str, retry_in_seconds: int):
        self.source = source
        self.retry_in_seconds = retry_in_seconds
        super().__init__(f"Circuit breaker OPEN for {source}. Retry in {retry_in_seconds}s")


class RateLimitExceeded(DealflowError):
    """Raised when tokens are still short after waiting for a refill."""

    def __init__(self, scope: str):
        self.scope = scope
        super().__init__(f"Rate limit exceeded for {scope}")


class TransientNetworkError(DealflowError):
    """A network failure worth retrying (timeouts, resets, 5xx)."""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        self.code = code
        self.status_code = status_code
        super().__init__(message)


class OperationTimeout(DealflowError):
    """Raised when an operation exceeds its hard timeout, retries included."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Operation timed out after {timeout_seconds}s")


class ProcessingError(DealflowError):
    """Unexpected failure during a run, e.g. a fetch that exhausted its retries."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"Processing failed for {source}: {message}")


class FetchError(DealflowError):
    """Raised when a source fetcher cannot produce items."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"Fetch error for {source}: {message}")


class UnknownSourceError(DealflowError):
    """Raised when a source key is not registered or not enabled."""

    def __init__(self, source: str, reason: str = "not registered"):
        self.source = source
        super().__init__(f"Source {source} is {reason}")


class UniqueViolation(DealflowError):
    """Raised by the store when an insert collides with a uniqueness constraint."""

    def __init__(self, entity: str, detail: str = ""):
        self.entity = entity
        super().__init__(f"Unique constraint violated for {entity}: {detail}".rstrip(": "))
