"""SQLAlchemy 2.x async database setup.

This module builds the async engine and session factory from settings but
does not hard-code any connection credentials.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from jobstream.config import DatabaseSettings


def build_engine(config: DatabaseSettings) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    kwargs: dict = {"echo": config.echo, "future": True}
    if not config.url.startswith("sqlite"):
        kwargs.update(pool_size=config.pool_size, max_overflow=config.max_overflow, pool_pre_ping=True)
    return create_async_engine(config.url, **kwargs)


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)
