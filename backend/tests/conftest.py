"""Shared test fixtures."""

import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("ADMIN_API_TOKEN", "test-admin-token")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import fakeredis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from chartvolt.core.database import build_session_factory, create_tables
from chartvolt.services.effects import EffectRunner
from chartvolt.services.prices import PriceSource

from factories import RecordingRedis


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis()
    yield client
    await client.aclose()


@pytest.fixture
def recorder() -> RecordingRedis:
    return RecordingRedis()


@pytest.fixture
def prices(redis) -> PriceSource:
    return PriceSource(redis, timeout=1)


@pytest.fixture
def effects(recorder) -> EffectRunner:
    return EffectRunner(recorder, timeout=1)
