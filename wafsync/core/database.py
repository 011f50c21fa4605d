"""
Database configuration and session management.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from wafsync.core.config import DatabaseSettings


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


SessionFactory = async_sessionmaker[AsyncSession]


def create_engine(database: DatabaseSettings) -> AsyncEngine:
    """Create the async engine for the configured DSN."""
    kwargs = {"echo": database.echo}
    if not database.is_sqlite:
        kwargs.update(
            pool_size=database.pool_size,
            max_overflow=database.max_overflow,
            pool_pre_ping=True,
        )
    return create_async_engine(database.dsn, **kwargs)


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Create async session factory bound to an engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(factory: SessionFactory) -> AsyncGenerator[AsyncSession, None]:
    """
    Open a session wrapped in a single transaction.

    Commits on success and rolls back on any exception.

    Example:
        async with session_scope(factory) as session:
            result = await session.execute(query)
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine) -> None:
    """Initialize database (create tables if they don't exist)."""
    async with engine.begin() as conn:
        # Import all models here to ensure they are registered with Base
        from wafsync.models import cluster  # noqa: F401
        from wafsync.models import waf  # noqa: F401

        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Close database connections."""
    await engine.dispose()
