"""FastAPI dependency providers.

Runtime components are built once in the lifespan and stored on ``app.state``.
"""

from typing import Optional

from fastapi import HTTPException, Request, status

from dealflow.ingestion.scheduler import IngestionScheduler
from dealflow.ingestion.utils.circuit_breaker import CircuitBreaker, get_circuit_breaker
from dealflow.services.health_service import HealthService


def get_health_service(request: Request) -> HealthService:
    service: Optional[HealthService] = getattr(request.app.state, "health_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Health service not initialized",
        )
    return service


def get_scheduler(request: Request) -> IngestionScheduler:
    scheduler: Optional[IngestionScheduler] = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduler not running",
        )
    return scheduler


def get_breaker(request: Request) -> CircuitBreaker:
    return getattr(request.app.state, "breaker", None) or get_circuit_breaker()
