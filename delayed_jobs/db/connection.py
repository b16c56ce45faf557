"""
Database connection management.
Handles async SQLAlchemy engine and session factory creation.

Nothing here is global: the worker entry point builds one engine and one
session factory at startup and hands them to the components that need them.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from delayed_jobs.config import Settings, get_settings
from delayed_jobs.exceptions import PersistenceError

logger = logging.getLogger(__name__)


def create_engine(settings: Settings | None = None) -> AsyncEngine:
    """
    Create the async database engine.

    Args:
        settings: Application settings. Defaults to the cached settings.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    settings = settings or get_settings()
    options: dict = {
        "echo": settings.log_level.upper() == "DEBUG",
        "pool_pre_ping": True,
    }
    if not settings.database_url.startswith("sqlite"):
        options["pool_size"] = settings.database_pool_size
        options["max_overflow"] = settings.database_max_overflow
    return create_async_engine(settings.database_url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create a session factory bound to an engine.

    Objects stay readable after commit so claimed jobs can be handed from the
    dispatch tick to an executor task.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def close_engine(engine: AsyncEngine) -> None:
    """
    Dispose of the engine's connection pool.
    Should be called on process shutdown.
    """
    await engine.dispose()
    logger.info("Database connection closed")


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """
    Run a short transaction.

    Commits on success, rolls back on any error. A failed commit is reported
    as PersistenceError.

    Yields:
        AsyncSession: An async database session.
    """
    async with session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        try:
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise PersistenceError(f"Failed to commit transaction: {e}") from e
