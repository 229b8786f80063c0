"""
Engine and session handling.

Sessions never expire attributes on commit: the orchestrator commits after
every saga step and keeps using the same Order instance afterwards.
"""
from collections.abc import AsyncGenerator
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from order_saga.config import Settings, get_settings
from order_saga.database.models import Base

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None

# Seconds a SQLite writer waits for the file lock before failing
SQLITE_BUSY_TIMEOUT = 30


def build_engine(settings: Settings) -> AsyncEngine:
    """
    Create an engine for ``settings.database_url``.

    PostgreSQL gets a sized, pre-pinged pool; SQLite (local runs and tests)
    gets a longer busy timeout instead, since saga steps commit often.
    """
    options: Dict[str, Any] = {"echo": settings.database_echo}
    if settings.uses_sqlite:
        options["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT}
    else:
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
    return create_async_engine(settings.database_url, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


def get_engine() -> AsyncEngine:
    """Process-wide engine, created on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Process-wide session factory bound to :func:`get_engine`."""
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory


async def get_db() -> AsyncGenerator[AsyncSession, Any]:
    """
    FastAPI dependency yielding one session per request.

    Commits whatever the handler left pending and rolls back on error.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    """Create missing tables on the process-wide engine."""
    await create_tables(get_engine())


async def close_db() -> None:
    """Dispose of the process-wide engine; the next use recreates it."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
