"""
Async database session management — PostgreSQL, MySQL, SQLite.

Driver mapping:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  mysql://       → mysql+aiomysql://         (requires aiomysql)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

The SQL engine store runs every call inside one scope from
make_session_scope(). Without one it uses get_session(), a scope on the
global engine built from `database.url`; tests bind their own.
init_db() creates the tables (also run by scripts/migrate_db.py);
close_db() disposes the global engine on runtime shutdown.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncGenerator, Callable

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

SessionScope = Callable[[], AsyncContextManager[AsyncSession]]

_engine: AsyncEngine | None = None
_scope: SessionScope | None = None


def _to_async_url(db_url: str) -> str:
    """Convert a sync database URL to its async driver equivalent."""
    replacements = [
        ("postgresql://", "postgresql+asyncpg://"),
        ("postgres://", "postgresql+asyncpg://"),
        ("mysql://", "mysql+aiomysql://"),
        ("mysql+pymysql://", "mysql+aiomysql://"),
        ("sqlite://", "sqlite+aiosqlite://"),
    ]
    for sync_prefix, async_prefix in replacements:
        if db_url.startswith(sync_prefix):
            return db_url.replace(sync_prefix, async_prefix, 1)
    # Already has async driver or unknown — return as-is
    return db_url


def _engine_kwargs(db_url: str) -> dict:
    """Return database-specific engine configuration."""
    settings = get_settings()
    base = {"echo": settings.debug}

    if "sqlite" in db_url:
        return base

    # PostgreSQL / MySQL: connection pool tuning
    return {
        **base,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def get_engine() -> AsyncEngine:
    """Return the global engine, creating it if needed."""
    global _engine
    if _engine is None:
        settings = get_settings()
        db_url = _to_async_url(settings.database.url)
        _engine = create_async_engine(db_url, **_engine_kwargs(db_url))
        logger.info("database_engine_created",
                     dialect=_engine.dialect.name,
                     url=str(_engine.url).split("@")[-1] if "@" in str(_engine.url) else str(_engine.url))
    return _engine


def make_session_scope(engine: AsyncEngine) -> SessionScope:
    """
    Build a transactional scope bound to `engine`: commits on clean exit,
    rolls back and re-raises on any exception.
    """
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def scope() -> AsyncGenerator[AsyncSession, None]:
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return scope


def get_session() -> AsyncContextManager[AsyncSession]:
    """Open a scope on the global engine."""
    global _scope
    if _scope is None:
        _scope = make_session_scope(get_engine())
    return _scope()


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables. Call once at application startup."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=list(Base.metadata.tables.keys()))


async def close_db() -> None:
    """Dispose engine connections. Call at application shutdown."""
    global _engine, _scope
    if _engine:
        await _engine.dispose()
        _engine = None
        _scope = None
        logger.info("database_closed")
