"""
Database layer — async PostgreSQL via SQLAlchemy 2.0 + asyncpg.

Provides:
    • Lazily-created async engine and session factory
    • Base model for ORM entities
    • Table creation / disposal for the application lifespan

The engine is created on first use so importing the application does not
require a reachable database (tests wire their own session factory).

Usage:
    from hosla.app.core.database import get_session_factory

    async with get_session_factory()() as session:
        row = await session.get(AlertRow, alert_id)
"""

from __future__ import annotations

import logging
from functools import lru_cache

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from hosla.app.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──
@lru_cache()
def get_engine() -> AsyncEngine:
    """Create the process-wide async engine on first use."""
    kwargs = {"echo": settings.DATABASE_ECHO}
    if not settings.DATABASE_URL.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
        )
    return create_async_engine(settings.DATABASE_URL, **kwargs)


# ── Session Factory ──
@lru_cache()
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the process-wide engine."""
    return async_sessionmaker(
        get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Lifecycle ──
async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Register table definitions on Base.metadata
    from hosla.app.emergency import tables  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db() -> None:
    """Dispose engine connections."""
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
        logger.info("Database connections closed")
