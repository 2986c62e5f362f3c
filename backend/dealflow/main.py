"""Dealflow ingestion worker -- FastAPI application entry point.

The HTTP surface is operational only (health, metrics, circuits, manual
triggers); ingestion itself runs on the queue workers started here.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from dealflow.api.v1.router import api_v1_router
from dealflow.config import settings
from dealflow.core.logging import configure_logging
from dealflow.db.session import async_session_factory, engine, init_models
from dealflow.ingestion.ingestion_service import build_ingestion_service
from dealflow.ingestion.queue import IngestionQueue
from dealflow.ingestion.scheduler import IngestionScheduler
from dealflow.ingestion.utils.circuit_breaker import get_circuit_breaker
from dealflow.ingestion.utils.http_client import close_http_client, get_http_client
from dealflow.services.cache_service import get_cache_service
from dealflow.services.health_service import VERSION, HealthService
from dealflow.services.store import SqlAlchemyStore

configure_logging(settings.LOG_LEVEL, json_logs=settings.ENVIRONMENT == "production")
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown events."""
    logger.info("worker_starting", environment=settings.ENVIRONMENT, debug=settings.DEBUG)

    try:
        await init_models(engine)
        logger.info("database_tables_verified")
    except Exception as e:
        logger.error("database_init_failed", error=str(e), exc_info=True)

    store = SqlAlchemyStore(async_session_factory)

    cache = get_cache_service()
    if await cache.health_check():
        logger.info("redis_cache_connected")
    else:
        logger.warning("redis_cache_unavailable")

    service = build_ingestion_service(store, http=get_http_client(), cache=cache)
    queue = IngestionQueue(service.process_ingestion_job)
    queue.start()

    scheduler = None
    if settings.ENVIRONMENT != "test":
        scheduler = IngestionScheduler(queue)
        try:
            jobs_count = await scheduler.start()
            logger.info("scheduler_started", jobs=jobs_count)
        except Exception as e:
            logger.error("scheduler_start_failed", error=str(e), exc_info=True)
    else:
        logger.info("scheduler_disabled", reason="test environment")

    app.state.store = store
    app.state.queue = queue
    app.state.scheduler = scheduler
    app.state.breaker = get_circuit_breaker()
    app.state.health_service = HealthService(store, queue=queue, cache=cache)

    yield

    logger.info("worker_shutting_down")

    if scheduler:
        scheduler.stop()

    await queue.shutdown()
    await close_http_client()

    try:
        await cache.close()
        logger.info("redis_cache_closed")
    except Exception as e:
        logger.warning("cache_close_failed", error=str(e))

    await engine.dispose()


app = FastAPI(
    title="Dealflow Worker",
    description="Deal and coupon ingestion worker",
    version=VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)

app.include_router(api_v1_router)


@app.get("/")
async def root():
    return {"name": "Dealflow Worker", "version": VERSION}
