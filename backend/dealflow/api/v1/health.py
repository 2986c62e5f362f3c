"""Health, readiness, metrics and circuit endpoints."""

from typing import List

from fastapi import APIRouter, Depends, Response, status

from dealflow.dependencies import get_breaker, get_health_service
from dealflow.ingestion.utils.circuit_breaker import CircuitBreaker
from dealflow.schemas import CircuitStatus, HealthCheckResponse, MetricsResponse, ReadinessResponse
from dealflow.services.health_service import HealthService

router = APIRouter()


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    response: Response,
    health: HealthService = Depends(get_health_service),
):
    """Return aggregated worker health.

    Responds 503 when the store is unreachable or the job queue is stopped;
    an open circuit or a Redis outage only degrades the status.
    """
    report = await health.get_health_status()
    if report["status"] == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return report


@router.get("/ready", response_model=ReadinessResponse)
async def readiness(
    response: Response,
    health: HealthService = Depends(get_health_service),
):
    database = await health.store.ping()
    queue = health.queue is not None and health.queue.is_running
    ready = database and queue
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadinessResponse(ready=ready, database=database, queue=queue)


@router.get("/metrics", response_model=MetricsResponse)
async def metrics(health: HealthService = Depends(get_health_service)):
    return await health.get_detailed_metrics()


@router.get("/circuits", response_model=List[CircuitStatus])
async def circuits(breaker: CircuitBreaker = Depends(get_breaker)):
    return breaker.get_all_circuit_statuses()


@router.post("/circuits/{source_key}/reset", response_model=CircuitStatus)
async def reset_circuit(source_key: str, breaker: CircuitBreaker = Depends(get_breaker)):
    """Force a source circuit back to CLOSED."""
    breaker.reset_circuit(source_key)
    return breaker.get_circuit_status(source_key)
