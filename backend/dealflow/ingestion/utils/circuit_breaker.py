"""Per-source circuit breaker.

Stops calling a persistently failing source for a cooldown period instead
of burning retry budget against it. State lives in process memory and is
rebuilt lazily from fresh observations after a restart.
"""

import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import structlog

from dealflow.config import CircuitBreakerSettings, settings
from dealflow.core.exceptions import CircuitOpenError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitState:
    """Mutable breaker state for one source."""

    state: str = CLOSED
    failure_timestamps: List[float] = field(default_factory=list)
    success_count: int = 0
    last_failure: Optional[float] = None
    opened_at: Optional[float] = None


class CircuitBreaker:
    """Three-state breaker (CLOSED, OPEN, HALF_OPEN) keyed by source.

    - CLOSED: failures inside the rolling monitor window are counted; reaching
      failure_threshold opens the circuit.
    - OPEN: calls are rejected until reset_timeout has elapsed, then the next
      check moves to HALF_OPEN and lets that call through.
    - HALF_OPEN: any failure reopens; success_threshold consecutive successes
      close the circuit and clear failure history.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the breaker registry.

        Args:
            config: Thresholds (defaults to settings.CIRCUIT_BREAKER)
            clock: Monotonic clock in seconds, injectable for tests
        """
        self.config = config or settings.CIRCUIT_BREAKER
        self._clock = clock
        self._circuits: Dict[str, CircuitState] = {}
        self._lock = threading.Lock()
        self.logger = logger.bind(component="circuit_breaker")

    @property
    def reset_timeout(self) -> float:
        return self.config.reset_timeout_ms / 1000.0

    @property
    def monitor_window(self) -> float:
        return self.config.monitor_window_ms / 1000.0

    def _get_circuit(self, source: str) -> CircuitState:
        circuit = self._circuits.get(source)
        if circuit is None:
            circuit = CircuitState()
            self._circuits[source] = circuit
        return circuit

    def _prune(self, circuit: CircuitState, now: float) -> None:
        circuit.failure_timestamps = [
            ts for ts in circuit.failure_timestamps if now - ts < self.monitor_window
        ]

    def can_execute(self, source: str) -> bool:
        """Check whether a call to this source is currently allowed.

        An OPEN circuit whose reset timeout has elapsed is moved to HALF_OPEN
        and the call that triggered the check is allowed.
        """
        with self._lock:
            circuit = self._get_circuit(source)

            if circuit.state == OPEN:
                now = self._clock()
                if circuit.opened_at is not None and now - circuit.opened_at >= self.reset_timeout:
                    circuit.state = HALF_OPEN
                    circuit.success_count = 0
                    self.logger.info("circuit_half_open", source=source)
                    return True
                return False

            return True

    def record_success(self, source: str) -> None:
        with self._lock:
            circuit = self._get_circuit(source)

            if circuit.state == HALF_OPEN:
                circuit.success_count += 1
                if circuit.success_count >= self.config.success_threshold:
                    circuit.state = CLOSED
                    circuit.failure_timestamps = []
                    circuit.success_count = 0
                    circuit.opened_at = None
                    self.logger.info("circuit_closed", source=source)
            elif circuit.state == CLOSED:
                self._prune(circuit, self._clock())

    def record_failure(self, source: str, error: Optional[BaseException] = None) -> None:
        with self._lock:
            circuit = self._get_circuit(source)
            now = self._clock()

            self._prune(circuit, now)
            circuit.failure_timestamps.append(now)
            circuit.last_failure = now

            if circuit.state == HALF_OPEN:
                circuit.state = OPEN
                circuit.opened_at = now
                circuit.success_count = 0
                self.logger.warning(
                    "circuit_reopened",
                    source=source,
                    error=str(error) if error else None,
                )
            elif circuit.state == CLOSED and len(circuit.failure_timestamps) >= self.config.failure_threshold:
                circuit.state = OPEN
                circuit.opened_at = now
                self.logger.error(
                    "circuit_opened",
                    source=source,
                    failure_count=len(circuit.failure_timestamps),
                    threshold=self.config.failure_threshold,
                )

    def retry_in_seconds(self, source: str) -> int:
        """Seconds until an OPEN circuit may be probed again."""
        with self._lock:
            circuit = self._get_circuit(source)
            if circuit.state != OPEN or circuit.opened_at is None:
                return 0
            remaining = self.reset_timeout - (self._clock() - circuit.opened_at)
            return max(0, math.ceil(remaining))

    def get_state(self, source: str) -> str:
        with self._lock:
            return self._get_circuit(source).state

    async def call(self, source: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Await fn() through the breaker, recording the outcome.

        Raises:
            CircuitOpenError: If the circuit is OPEN (fn is not invoked)
            Exception: Whatever fn() raised, after recording the failure
        """
        if not self.can_execute(source):
            raise CircuitOpenError(source, self.retry_in_seconds(source))

        try:
            result = await fn()
        except Exception as e:
            self.record_failure(source, e)
            raise

        self.record_success(source)
        return result

    with_circuit_breaker = call

    def get_circuit_status(self, source: str) -> Dict[str, Any]:
        """Get circuit status for monitoring."""
        with self._lock:
            circuit = self._get_circuit(source)
            self._prune(circuit, self._clock())
            return {
                "source": source,
                "state": circuit.state,
                "failures": len(circuit.failure_timestamps),
                "last_failure": circuit.last_failure,
                "opened_at": circuit.opened_at,
            }

    def get_all_circuit_statuses(self) -> List[Dict[str, Any]]:
        with self._lock:
            sources = list(self._circuits.keys())
        return [self.get_circuit_status(source) for source in sources]

    def open_circuits(self) -> List[str]:
        return [s["source"] for s in self.get_all_circuit_statuses() if s["state"] == OPEN]

    def reset_circuit(self, source: str) -> None:
        """Reset a circuit to CLOSED (manual intervention or tests)."""
        with self._lock:
            self._circuits[source] = CircuitState()
        self.logger.info("circuit_reset", source=source)


# Global breaker instance
circuit_breaker = CircuitBreaker()


def get_circuit_breaker() -> CircuitBreaker:
    """Get the global circuit breaker instance.

    Returns:
        CircuitBreaker instance
    """
    return circuit_breaker


async def with_circuit_breaker(source: str, fn: Callable[[], Awaitable[T]]) -> T:
    return await circuit_breaker.call(source, fn)


def get_circuit_status(source: str) -> Dict[str, Any]:
    return circuit_breaker.get_circuit_status(source)


def get_all_circuit_statuses() -> List[Dict[str, Any]]:
    return circuit_breaker.get_all_circuit_statuses()


def reset_circuit(source: str) -> None:
    circuit_breaker.reset_circuit(source)
