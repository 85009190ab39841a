"""
Async database engine and session management.
"""

from typing import AsyncGenerator, Optional
import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def normalize_database_url(value: str) -> str:
    """
    Hosting providers hand out `postgres://` or `postgresql://` URLs.
    The async engine needs the asyncpg driver spelled out.
    """
    url = value.strip()
    if url.startswith("postgres://"):
        return "postgresql+asyncpg://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    return url


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def init_db(url: str) -> async_sessionmaker[AsyncSession]:
    """Create the shared engine and session factory. Called once during startup."""
    global _engine, _session_factory
    _engine = create_async_engine(normalize_database_url(url), pool_pre_ping=True)
    _session_factory = build_session_factory(_engine)
    return _session_factory


async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables (development and tests; production uses migrations)."""
    # Import models so they register on SQLModel.metadata
    from chartvolt.models import challenge, competition, position, wallet  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized; call init_db() first")
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request"""
    async with get_session_factory()() as session:
        yield session


async def close_db() -> None:
    """Dispose the shared engine. Called during shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
