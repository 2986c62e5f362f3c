"""Pytest configuration and shared fixtures."""

import os

os.environ.setdefault("ENVIRONMENT", "test")

from datetime import date

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from dealflow.config import CircuitBreakerSettings, DailyCapSettings
from dealflow.db.session import init_models
from dealflow.ingestion.utils.circuit_breaker import CircuitBreaker
from dealflow.ingestion.utils.daily_cap import DailyCapTracker
from dealflow.services.health_service import HealthMonitor
from dealflow.services.store import SqlAlchemyStore


class FakeClock:
    """Manually advanced monotonic clock, in seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Async sleep that records delays and advances a FakeClock instead of waiting."""

    def __init__(self, clock: FakeClock = None):
        self.clock = clock
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


class FakeToday:
    def __init__(self, day: date):
        self.day = day

    def __call__(self) -> date:
        return self.day


@pytest.fixture
def anyio_backend():
    """Use asyncio as the async backend for tests."""
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock: FakeClock) -> FakeSleep:
    return FakeSleep(clock)


@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite database with all tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )
    await init_models(engine)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_factory) -> SqlAlchemyStore:
    return SqlAlchemyStore(session_factory)


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(
        CircuitBreakerSettings(
            failure_threshold=3,
            reset_timeout_ms=30_000,
            success_threshold=2,
            monitor_window_ms=60_000,
        ),
        clock=clock,
    )


@pytest.fixture
def today() -> FakeToday:
    return FakeToday(date(2024, 3, 1))


@pytest.fixture
def daily_caps(today: FakeToday) -> DailyCapTracker:
    return DailyCapTracker(DailyCapSettings(default=500, per_source={"capped_feed": 5}), today=today)


@pytest.fixture
def monitor() -> HealthMonitor:
    return HealthMonitor()
