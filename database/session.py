"""
Async engines and session scopes for the course store and the SQL job queue.

Supported URLs (sync spellings are upgraded to their async driver):
  postgresql:// | postgres://  → postgresql+asyncpg://
  sqlite://                    → sqlite+aiosqlite://

The process-wide engine is built lazily from settings.database.url.
Anything that needs a different database (tests, the ops CLI) builds its
own with create_session_factory(url) and hands the factory in:

    queue = SqlJobQueue(session_factory=create_session_factory("sqlite:///./q.db"))
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}

# Several consumers claim from the same SQLite file; wait for the write lock
_SQLITE_BUSY_TIMEOUT = 30

_POOL_OPTIONS = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

SessionScope = Callable[[], "AsyncGenerator[AsyncSession, None]"]


def _to_async_url(db_url: str) -> str:
    """Swap a sync driver name for its async equivalent; async URLs pass through."""
    scheme, sep, rest = db_url.partition("://")
    return f"{_ASYNC_DRIVERS.get(scheme, scheme)}{sep}{rest}"


def create_engine_for(db_url: str, echo: bool = False) -> AsyncEngine:
    """Create an engine for any supported (sync or async) URL."""
    url = _to_async_url(db_url)
    if url.startswith("sqlite"):
        options = {"connect_args": {"timeout": _SQLITE_BUSY_TIMEOUT}}
    else:
        options = dict(_POOL_OPTIONS)
    engine = create_async_engine(url, echo=echo, **options)
    logger.info("database_engine_created",
                dialect=engine.dialect.name,
                url=make_url(url).render_as_string(hide_password=True))
    return engine


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it from settings on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for(settings.database.url, echo=settings.debug)
    return _engine


def create_session_factory(engine_or_url: AsyncEngine | str) -> async_sessionmaker[AsyncSession]:
    engine = create_engine_for(engine_or_url) if isinstance(engine_or_url, str) else engine_or_url
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _default_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


def session_scope(factory: async_sessionmaker[AsyncSession] | None = None) -> SessionScope:
    """
    Build a callable that opens one transaction per use:

        scope = session_scope(factory)
        async with scope() as db:
            ...                      # committed on exit, rolled back on error

    Without a factory the process-wide engine is used, resolved on first use.
    """
    @asynccontextmanager
    async def scope() -> AsyncGenerator[AsyncSession, None]:
        async with (factory or _default_factory())() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
    return scope


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction on the process-wide engine."""
    async with session_scope()() as session:
        yield session


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create the course tables and notification_jobs if they are missing."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    """Dispose the process-wide engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database_closed", dialect=_engine.dialect.name)
        _engine = None
        _session_factory = None
