"""Health and metrics response schemas."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class CircuitStatus(BaseModel):
    source: str
    state: str
    failures: int
    last_failure: Optional[float] = None
    opened_at: Optional[float] = None


class CircuitSummary(BaseModel):
    total: int
    open: int
    details: List[CircuitStatus] = []


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


class HealthCheckResponse(BaseModel):
    """Health check response schema."""

    status: str
    timestamp: str
    uptime_seconds: int
    version: str
    services: Dict[str, str] = {}
    queue: QueueStats = QueueStats()
    circuits: CircuitSummary
    rate_limits: Dict[str, Any] = {}
    daily_counts: Dict[str, int] = {}
    source_health: Dict[str, Dict[str, Any]] = {}
    metrics: Dict[str, Any] = {}


class ReadinessResponse(BaseModel):
    ready: bool
    database: bool
    queue: bool


class MetricsResponse(BaseModel):
    """Processing counters, circuit and rate-limit snapshots, and 24h ingestion stats."""

    timestamp: str
    processing: Dict[str, Any]
    circuits: CircuitSummary
    rate_limits: Dict[str, Any] = {}
    ingestion: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class TriggerResponse(BaseModel):
    source: str
    job_id: str
