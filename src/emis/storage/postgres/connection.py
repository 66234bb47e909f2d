"""SQLAlchemy async engine and session factory.

Each service process owns one engine (asyncpg) and hands the session
factory to its units of work, outbox store, and dead-letter store.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from .models import Base

logger = logging.getLogger(__name__)


def create_engine(
    url: str,
    *,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_recycle: int = 1800,
    echo: bool = False,
    use_null_pool: bool = False,
) -> AsyncEngine:
    """Create and return a new :class:`AsyncEngine`.

    Args:
        url: Database URL, ``postgresql+asyncpg://...`` in production.
        pool_size: Persistent connections kept in the pool.
        max_overflow: Extra connections allowed beyond *pool_size*.
        pool_recycle: Seconds after which a pooled connection is replaced.
        echo: Log every emitted SQL statement.
        use_null_pool: Disable pooling (one-off CLI commands, tests).
    """
    pool_kwargs: dict = {}
    if use_null_pool:
        pool_kwargs["poolclass"] = NullPool
    else:
        pool_kwargs.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_recycle=pool_recycle,
        )

    engine = create_async_engine(url, echo=echo, **pool_kwargs)
    logger.info("Created async engine for %s", url.split("@")[-1])
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def create_all(engine: AsyncEngine) -> None:
    """Create the outbox and dead-letter tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created / verified.")


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Yield a session that commits on success and rolls back on error."""
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
