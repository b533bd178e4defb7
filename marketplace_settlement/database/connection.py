"""
Engine and session factory for the settlement database.

PostgreSQL (asyncpg) in deployment. SQLite (aiosqlite) works for local runs,
which is also what the tests use.
"""
from typing import Any, Dict

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from marketplace_settlement.config import Settings, get_settings
from marketplace_settlement.database.models import Base

logger = structlog.get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def engine_options(settings: Settings) -> Dict[str, Any]:
    """Pool options for the configured backend."""
    url = make_url(settings.database_url)
    options: Dict[str, Any] = {"echo": settings.database_echo}
    if url.get_backend_name() == "sqlite":
        # An in-memory database lives as long as its single connection
        if url.database in (None, "", ":memory:"):
            options["poolclass"] = StaticPool
        options["connect_args"] = {"check_same_thread": False}
        return options
    options.update(
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
    )
    return options


def get_engine() -> AsyncEngine:
    """Process-wide engine, created on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **engine_options(settings))
        logger.info("database_engine_created", backend=_engine.url.get_backend_name())
    return _engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Sessions for the settlement jobs and services.

    Objects stay usable after commit because job results are built from them
    once the transaction is closed. Nothing is flushed implicitly: each
    settlement step controls exactly when its writes reach the database.
    """
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the process-wide engine."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


async def init_db() -> None:
    """Create missing tables and indexes."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose the engine; the next use creates a fresh one."""
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
