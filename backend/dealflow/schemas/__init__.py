"""Pydantic schemas for the worker's HTTP surface."""

from dealflow.schemas.health import (
    CircuitStatus,
    CircuitSummary,
    HealthCheckResponse,
    MetricsResponse,
    QueueStats,
    ReadinessResponse,
    TriggerResponse,
)
