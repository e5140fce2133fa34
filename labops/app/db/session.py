"""
Database session configuration.

This module handles database engine creation and session management
using SQLAlchemy with async support for PostgreSQL.
"""

from functools import lru_cache
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from labops.app.core.config import settings

# Create declarative base for models
Base = declarative_base()


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    """Create the async engine on first use."""
    return create_async_engine(
        settings.database_url,
        echo=settings.db_echo,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        future=True,
    )


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker:
    """Async session factory bound to the application engine."""
    return async_sessionmaker(
        get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def get_db() -> AsyncIterator[AsyncSession]:
    """
    Yield a unit-of-work session and ensure it's properly closed.

    One session per request; sessions are never shared between tenants.
    """
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            await session.close()
