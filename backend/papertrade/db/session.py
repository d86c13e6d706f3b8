"""
Database Session Management
PaperTrade Platform

Provides async database connection with:
- Connection pooling (PostgreSQL via asyncpg)
- Context manager support
- Health check capabilities

Engines and session factories are created explicitly and handed to the
stores by the service container.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from papertrade.core.config import Settings, get_settings


def create_engine_from_settings(
    settings: Optional[Settings] = None,
    url: Optional[str] = None,
) -> AsyncEngine:
    """Create the async engine for DATABASE_URL (or an explicit url)."""
    settings = settings or get_settings()
    url = url or settings.DATABASE_URL or settings.db.async_url

    if url.startswith("sqlite"):
        return create_async_engine(url, future=True)

    db = settings.db
    return create_async_engine(
        url,
        future=True,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
        pool_recycle=db.pool_recycle,
        pool_pre_ping=True,  # Verify connections before use
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def get_db_context(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for database sessions.

    Usage:
        async with get_db_context(session_factory) as db:
            result = await db.execute(query)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine) -> None:
    """
    Create missing tables.

    Note: In production, use migrations instead.
    """
    from papertrade.db.base import Base
    from papertrade.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")


async def health_check(session_factory: async_sessionmaker) -> bool:
    """Return True if the database answers SELECT 1."""
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        return False


async def close_db(engine: AsyncEngine) -> None:
    """Dispose the engine's connection pool."""
    await engine.dispose()
    logger.info("Database connections closed")
