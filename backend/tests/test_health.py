"""Tests for health aggregation and the worker HTTP endpoints."""

from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from dealflow.api.v1.router import api_v1_router
from dealflow.ingestion.queue import IngestionQueue
from dealflow.ingestion.scheduler import IngestionScheduler
from dealflow.ingestion.utils.rate_limiter import RateLimiter
from dealflow.services.health_service import VERSION, HealthMonitor, HealthService, compute_status


class StubQueue:
    def __init__(self, running=True):
        self.is_running = running

    def get_stats(self):
        return {"waiting": 2, "active": 1, "completed": 10, "failed": 1, "delayed": 0}


class StubCache:
    def __init__(self, healthy=True):
        self.healthy = healthy

    async def health_check(self):
        return self.healthy


@pytest.fixture
def make_health(store, breaker, clock, daily_caps, monitor):
    def _make(queue=None, cache=None, health_store=None):
        return HealthService(
            health_store or store,
            queue=queue if queue is not None else StubQueue(),
            cache=cache if cache is not None else StubCache(),
            monitor=monitor,
            breaker=breaker,
            limiter=RateLimiter(source_limits=None, clock=clock),
            daily_caps=daily_caps,
        )
    return _make


def _open(breaker, source="slickdeals_rss"):
    for _ in range(3):
        breaker.record_failure(source)


# ============================================================================
# TESTS: STATUS RULES
# ============================================================================

class TestComputeStatus:
    """Tests for compute_status."""

    @pytest.mark.parametrize(
        "store_ok, queue_ok, redis_ok, open_circuits, expected",
        [
            (True, True, True, 0, "healthy"),
            (True, True, True, 1, "degraded"),
            (True, True, False, 0, "degraded"),
            (False, True, True, 0, "unhealthy"),
            (True, False, True, 0, "unhealthy"),
            (False, False, False, 3, "unhealthy"),
        ],
    )
    def test_status_matrix(self, store_ok, queue_ok, redis_ok, open_circuits, expected):
        assert compute_status(store_ok, queue_ok, redis_ok, open_circuits) == expected


class TestHealthMonitor:
    """Tests for HealthMonitor."""

    def test_source_health_score(self, monitor):
        monitor.record_source_result("feed", True, item_count=4)
        monitor.record_source_result("feed", True, item_count=2)
        monitor.record_source_result("feed", False)
        monitor.record_source_result("feed", False)

        stats = monitor.get_source_health_scores()["feed"]
        assert stats["health_score"] == 0.5
        assert stats["total_items"] == 6
        assert stats["last_run"] is not None

    def test_counters(self, monitor):
        monitor.increment_metric("deals_processed")
        monitor.increment_metric("deals_processed", 2)
        monitor.increment_metric("not_a_counter")

        snapshot = monitor.snapshot()
        assert snapshot["deals_processed"] == 3
        assert "not_a_counter" not in snapshot
        assert "uptime_seconds" in snapshot

    def test_uptime_uses_clock(self, clock):
        monitor = HealthMonitor(clock=clock)
        clock.advance(42)

        assert monitor.uptime_seconds == 42

    def test_reset(self, monitor):
        monitor.increment_metric("errors_count")
        monitor.record_source_result("feed", True)

        monitor.reset()

        assert monitor.metrics["errors_count"] == 0
        assert monitor.get_source_health_scores() == {}


# ============================================================================
# TESTS: HEALTH SERVICE
# ============================================================================

class TestHealthService:
    """Tests for HealthService.get_health_status."""

    async def test_healthy(self, make_health, daily_caps):
        daily_caps.increment("slickdeals_rss")

        report = await make_health().get_health_status()

        assert report["status"] == "healthy"
        assert report["version"] == VERSION
        assert report["services"] == {"database": "healthy", "redis": "healthy", "queue": "healthy"}
        assert report["queue"]["completed"] == 10
        assert report["circuits"] == {"total": 0, "open": 0, "details": []}
        assert "global" in report["rate_limits"]
        assert report["daily_counts"] == {"slickdeals_rss": 1}

    async def test_open_circuit_degrades(self, make_health, breaker):
        _open(breaker)

        report = await make_health().get_health_status()

        assert report["status"] == "degraded"
        assert report["circuits"]["open"] == 1
        assert report["circuits"]["details"][0]["source"] == "slickdeals_rss"

    async def test_redis_down_degrades(self, make_health):
        report = await make_health(cache=StubCache(healthy=False)).get_health_status()

        assert report["status"] == "degraded"
        assert report["services"]["redis"] == "unhealthy"

    async def test_stopped_queue_is_unhealthy(self, make_health):
        report = await make_health(queue=StubQueue(running=False)).get_health_status()

        assert report["status"] == "unhealthy"
        assert report["services"]["queue"] == "unhealthy"

    async def test_store_down_is_unhealthy(self, make_health):
        down = AsyncMock()
        down.ping.return_value = False

        report = await make_health(health_store=down).get_health_status()

        assert report["status"] == "unhealthy"
        assert report["services"]["database"] == "unhealthy"

    async def test_detailed_metrics(self, make_health, store, monitor, breaker):
        await store.start_run("slickdeals_rss")
        monitor.increment_metric("deals_processed", 5)
        _open(breaker)
        health = make_health()
        health.limiter.try_acquire("slickdeals_rss")

        metrics = await health.get_detailed_metrics()

        assert metrics["processing"]["deals_processed"] == 5
        assert metrics["ingestion"]["deals_24h"] == 0
        assert metrics["ingestion"]["runs_24h"] == {"running": 1}
        assert metrics["circuits"]["open"] == 1
        assert metrics["circuits"]["details"][0]["source"] == "slickdeals_rss"
        assert set(metrics["rate_limits"]["sources"]) == {"slickdeals_rss"}
        assert "timestamp" in metrics

    async def test_detailed_metrics_store_failure(self, make_health):
        broken = AsyncMock()
        broken.get_ingestion_stats.side_effect = RuntimeError("connection refused")

        metrics = await make_health(health_store=broken).get_detailed_metrics()

        assert metrics["error"] == "connection refused"
        assert "processing" in metrics
        assert metrics["circuits"]["total"] == 0
        assert "global" in metrics["rate_limits"]


# ============================================================================
# TESTS: HTTP ENDPOINTS
# ============================================================================

@pytest_asyncio.fixture
async def app(make_health, breaker):
    async def handler(source_key, job_id):
        return None

    app = FastAPI()
    app.include_router(api_v1_router)
    queue = IngestionQueue(handler)
    app.state.health_service = make_health()
    app.state.breaker = breaker
    app.state.queue = queue
    app.state.scheduler = IngestionScheduler(queue)
    yield app
    await queue.shutdown(grace_seconds=0)


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestHealthEndpoints:
    """Tests for the health router."""

    async def test_health_ok(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_health_degraded_is_still_200(self, client, breaker):
        _open(breaker)

        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"

    async def test_health_unhealthy_is_503(self, app, client, make_health):
        app.state.health_service = make_health(queue=StubQueue(running=False))

        response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    async def test_ready(self, client):
        response = await client.get("/ready")

        assert response.status_code == 200
        assert response.json() == {"ready": True, "database": True, "queue": True}

    async def test_not_ready(self, app, client, make_health):
        app.state.health_service = make_health(queue=StubQueue(running=False))

        response = await client.get("/ready")

        assert response.status_code == 503
        assert response.json()["queue"] is False

    async def test_metrics(self, client):
        response = await client.get("/metrics")

        assert response.status_code == 200
        body = response.json()
        assert "processing" in body
        assert body["ingestion"]["errors_24h"] == 0
        assert body["circuits"] == {"total": 0, "open": 0, "details": []}
        assert "global" in body["rate_limits"]

    async def test_circuits_and_reset(self, client, breaker):
        _open(breaker, "dealnews_rss")

        listing = await client.get("/circuits")
        assert listing.status_code == 200
        assert listing.json()[0]["state"] == "OPEN"

        reset = await client.post("/circuits/dealnews_rss/reset")
        assert reset.status_code == 200
        assert reset.json()["state"] == "CLOSED"

    async def test_health_service_missing_is_503(self, app, client):
        del app.state.health_service

        response = await client.get("/health")

        assert response.status_code == 503


class TestIngestEndpoints:
    """Tests for the manual trigger router."""

    async def test_trigger_source(self, client, app):
        response = await client.post("/ingest/slickdeals_rss")

        assert response.status_code == 202
        body = response.json()
        assert body["source"] == "slickdeals_rss"
        assert body["job_id"].startswith("manual-slickdeals_rss-")
        assert app.state.queue.get_stats()["waiting"] == 1

    async def test_trigger_unknown_source_is_404(self, client):
        response = await client.post("/ingest/no_such_feed")

        assert response.status_code == 404
        assert "no_such_feed" in response.json()["detail"]

    async def test_trigger_all(self, client):
        response = await client.post("/ingest")

        assert response.status_code == 202
        assert {item["source"] for item in response.json()} == {"slickdeals_rss", "slickdeals_coupons"}

    async def test_scheduler_missing_is_503(self, app, client):
        app.state.scheduler = None

        response = await client.post("/ingest/slickdeals_rss")

        assert response.status_code == 503
