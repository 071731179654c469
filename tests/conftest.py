"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
import sqlalchemy as sa
from prometheus_client import CollectorRegistry
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from mailqueue.constants import EmailQueueSourceType
from mailqueue.db.connection import (
    StaticConnectionResolver,
    create_queue_engine,
    create_session_factory,
)
from mailqueue.db.models import Base, EmailQueueEntry
from mailqueue.observability.metrics import MetricsCollector
from mailqueue.queue import EmailQueueService

# Set to a PostgreSQL URL to run against a real server; SQLite otherwise
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

START_TIME = datetime(2026, 1, 15, 12, 0, 0)


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Get the test database URL."""
    if TEST_DATABASE_URL:
        return TEST_DATABASE_URL
    return f"sqlite+aiosqlite:///{tmp_path / 'mailqueue.db'}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async database engine with an empty email_queue table."""
    engine = create_queue_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        # Clean up data left by previous runs against a shared server
        await conn.execute(sa.delete(EmailQueueEntry.__table__))

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(async_engine: AsyncEngine) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    session_factory = create_session_factory(async_engine)

    async with session_factory() as session:
        yield session

        # Rollback any uncommitted changes
        await session.rollback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def metrics(registry: CollectorRegistry) -> MetricsCollector:
    """Metrics collector on a private registry."""
    return MetricsCollector(registry=registry)


@pytest.fixture
def resolver(async_engine: AsyncEngine) -> StaticConnectionResolver:
    return StaticConnectionResolver(async_engine)


@pytest.fixture
def service(
    resolver: StaticConnectionResolver,
    clock: FakeClock,
    metrics: MetricsCollector,
) -> EmailQueueService:
    return EmailQueueService(resolver, clock=clock, metrics=metrics)


@pytest.fixture
def workspace_id() -> str:
    """Generate a test workspace ID."""
    return f"ws-{uuid4().hex[:8]}"


@pytest.fixture
def sample_payload() -> dict[str, Any]:
    """Create a sample email payload."""
    return {
        "from_address": "news@example.com",
        "from_name": "Example News",
        "subject": "Hello",
        "html_content": "<p>Hello, World!</p>",
        "rate_limit_per_minute": 6000,
    }


@pytest.fixture
def make_entry(sample_payload: dict[str, Any]):
    """Factory for unsaved queue entries."""

    def _make_entry(**overrides: Any) -> EmailQueueEntry:
        values: dict[str, Any] = {
            "source_type": EmailQueueSourceType.BROADCAST,
            "source_id": "broadcast-1",
            "integration_id": "integration-1",
            "provider_kind": "log",
            "contact_email": f"{uuid4().hex[:8]}@example.com",
            "message_id": f"msg-{uuid4().hex}",
            "payload": dict(sample_payload),
        }
        values.update(overrides)
        return EmailQueueEntry(**values)

    return _make_entry
