"""
Database Configuration

Async SQLAlchemy engine and session factory for the local durable store.
SQLite (via aiosqlite) is the default so the coordinator can run on a
single client device; any async SQLAlchemy URL works.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from enrollment_sync.core.config import settings


class Base(DeclarativeBase):
    """Declarative base for all local tables."""


engine = create_async_engine(settings.database_url, echo=False)

async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    """
    Create local tables if they do not exist.

    Call this on application startup.
    """
    # Import models so they register on Base.metadata
    from enrollment_sync.modules.local_state import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine's connection pool."""
    await engine.dispose()
