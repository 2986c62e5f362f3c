"""Operational health and metrics for the ingestion worker.

Status rules:
- unhealthy: the store is unreachable or the job queue is not running
- degraded: dependencies are up but a circuit is OPEN or Redis is down
- healthy: everything else
"""

import threading
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog

from dealflow.ingestion.utils.circuit_breaker import OPEN, CircuitBreaker, get_circuit_breaker
from dealflow.ingestion.utils.daily_cap import DailyCapTracker, get_daily_cap_tracker
from dealflow.ingestion.utils.rate_limiter import RateLimiter, get_rate_limiter

if TYPE_CHECKING:
    from dealflow.ingestion.queue import IngestionQueue
    from dealflow.services.cache_service import CacheService
    from dealflow.services.store import IngestionStore

logger = structlog.get_logger(__name__)

VERSION = "1.0.0"

COUNTERS = (
    "deals_processed",
    "deals_updated",
    "deals_skipped",
    "coupons_processed",
    "coupons_updated",
    "coupons_skipped",
    "errors_count",
)


def compute_status(store_ok: bool, queue_ok: bool, redis_ok: bool, open_circuits: int) -> str:
    if not store_ok or not queue_ok:
        return "unhealthy"
    if open_circuits > 0 or not redis_ok:
        return "degraded"
    return "healthy"


class HealthMonitor:
    """In-process counters and per-source success tracking."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._started = clock()
        self._lock = threading.Lock()
        self.metrics: Dict[str, Any] = {key: 0 for key in COUNTERS}
        self.metrics["last_error"] = None
        self.metrics["last_successful_run"] = None
        self._sources: Dict[str, Dict[str, Any]] = {}

    @property
    def uptime_seconds(self) -> int:
        return int(self._clock() - self._started)

    def increment_metric(self, key: str, amount: int = 1) -> None:
        with self._lock:
            if isinstance(self.metrics.get(key), int):
                self.metrics[key] += amount

    def update_metrics(self, **updates: Any) -> None:
        with self._lock:
            self.metrics.update(updates)

    def record_source_result(self, source: str, success: bool, item_count: int = 0) -> None:
        """Record one run outcome; health score is successes / runs."""
        with self._lock:
            stats = self._sources.setdefault(source, {
                "successes": 0,
                "failures": 0,
                "total_items": 0,
                "last_run": None,
                "health_score": 1.0,
            })
            if success:
                stats["successes"] += 1
                stats["total_items"] += item_count
            else:
                stats["failures"] += 1
            stats["last_run"] = datetime.now(timezone.utc).isoformat()

            total = stats["successes"] + stats["failures"]
            stats["health_score"] = stats["successes"] / total if total else 1.0

    def get_source_health_scores(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {source: dict(stats) for source, stats in self._sources.items()}

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            data = dict(self.metrics)
        data["uptime_seconds"] = self.uptime_seconds
        return data

    def reset(self) -> None:
        with self._lock:
            self.metrics = {key: 0 for key in COUNTERS}
            self.metrics["last_error"] = None
            self.metrics["last_successful_run"] = None
            self._sources = {}
        self._started = self._clock()


# Global monitor instance
health_monitor = HealthMonitor()


def get_health_monitor() -> HealthMonitor:
    return health_monitor


def increment_metric(key: str, amount: int = 1) -> None:
    health_monitor.increment_metric(key, amount)


class HealthService:
    """Aggregates store, cache, queue, circuit and rate-limit state."""

    def __init__(
        self,
        store: "IngestionStore",
        queue: Optional["IngestionQueue"] = None,
        cache: Optional["CacheService"] = None,
        monitor: Optional[HealthMonitor] = None,
        breaker: Optional[CircuitBreaker] = None,
        limiter: Optional[RateLimiter] = None,
        daily_caps: Optional[DailyCapTracker] = None,
    ):
        self.store = store
        self.queue = queue
        self.cache = cache
        self.monitor = monitor or get_health_monitor()
        self.breaker = breaker or get_circuit_breaker()
        self.limiter = limiter or get_rate_limiter()
        self.daily_caps = daily_caps or get_daily_cap_tracker()
        self.logger = logger.bind(service="health")

    async def get_health_status(self) -> Dict[str, Any]:
        store_ok = await self.store.ping()
        redis_ok = await self.cache.health_check() if self.cache is not None else True
        queue_ok = self.queue.is_running if self.queue is not None else False

        circuits = self._circuit_summary()
        open_count = circuits["open"]
        status = compute_status(store_ok, queue_ok, redis_ok, open_count)

        if status != "healthy":
            self.logger.warning(
                "health_degraded",
                status=status,
                store=store_ok,
                queue=queue_ok,
                redis=redis_ok,
                open_circuits=open_count,
            )

        return {
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": self.monitor.uptime_seconds,
            "version": VERSION,
            "services": {
                "database": "healthy" if store_ok else "unhealthy",
                "redis": "healthy" if redis_ok else "unhealthy",
                "queue": "healthy" if queue_ok else "unhealthy",
            },
            "queue": self.queue.get_stats() if self.queue is not None else {},
            "circuits": circuits,
            "rate_limits": self.limiter.get_all_statuses(),
            "daily_counts": self.daily_caps.get_counts(),
            "source_health": self.monitor.get_source_health_scores(),
            "metrics": self.monitor.snapshot(),
        }

    def _circuit_summary(self) -> Dict[str, Any]:
        circuits = self.breaker.get_all_circuit_statuses()
        open_count = sum(1 for c in circuits if c["state"] == OPEN)
        return {"total": len(circuits), "open": open_count, "details": circuits}

    async def get_detailed_metrics(self) -> Dict[str, Any]:
        """Processing counters, circuit and rate-limit snapshots, and 24h store stats."""
        metrics = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "processing": self.monitor.snapshot(),
            "circuits": self._circuit_summary(),
            "rate_limits": self.limiter.get_all_statuses(),
        }
        try:
            metrics["ingestion"] = await self.store.get_ingestion_stats()
        except Exception as e:
            self.logger.error("ingestion_stats_failed", error=str(e))
            metrics["error"] = str(e)
        return metrics
