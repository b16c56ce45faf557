"""
Pytest configuration and shared fixtures.

Tests run against a throwaway SQLite file by default. Point TEST_DATABASE_URL
at a PostgreSQL database to run the same suite against asyncpg.
"""

import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from delayed_jobs.config import Settings
from delayed_jobs.db import Base, close_engine, create_engine, create_session_factory
from delayed_jobs.observability.metrics import MetricsCollector
from delayed_jobs.worker.handlers import HandlerRegistry

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta | None = None, **kwargs) -> datetime:
        self._now += delta if delta is not None else timedelta(**kwargs)
        return self._now


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=database_url,
        log_level="INFO",
        log_format="console",
        worker_id="test-worker",
        worker_concurrency=4,
        dispatch_interval_seconds=0.05,
        dispatch_batch_size=10,
        shutdown_timeout_seconds=5,
        reclaim_interval_seconds=60,
        stale_lock_timeout_seconds=300,
        retry_base_delay_seconds=30,
        retry_max_delay_seconds=1800,
        default_max_attempts=5,
        metrics_enabled=False,
    )


@pytest_asyncio.fixture
async def async_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create an engine with a freshly created schema."""
    engine = create_engine(test_settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await close_engine(engine)


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to the test engine."""
    return create_session_factory(async_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> ManualClock:
    """A controllable clock shared by every component under test."""
    return ManualClock()


@pytest.fixture
def metrics_registry() -> CollectorRegistry:
    """A private Prometheus registry, isolated from the process default."""
    return CollectorRegistry()


@pytest.fixture
def metrics(metrics_registry: CollectorRegistry) -> MetricsCollector:
    """A metrics collector on the private registry."""
    return MetricsCollector(metrics_registry)


@pytest.fixture
def registry() -> HandlerRegistry:
    """An empty handler registry."""
    return HandlerRegistry()
