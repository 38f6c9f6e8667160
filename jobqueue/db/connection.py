"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from jobqueue.config import get_settings
from jobqueue.db.models import Base

logger = logging.getLogger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def _configure_sqlite(engine: AsyncEngine) -> None:
    """
    Make SQLite transactions take the write lock at BEGIN.

    pysqlite's deferred BEGIN lets two transactions read the same rows and
    then deadlock on upgrade; BEGIN IMMEDIATE serializes them instead.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    Args:
        database_url: SQLAlchemy async database URL.
        **kwargs: Extra engine options.

    Returns:
        AsyncEngine: The configured engine.
    """
    if database_url.startswith("sqlite"):
        kwargs.pop("pool_size", None)
        kwargs.pop("max_overflow", None)
        kwargs.setdefault("poolclass", NullPool)
        engine = create_async_engine(database_url, **kwargs)
        _configure_sqlite(engine)
        return engine
    return create_async_engine(database_url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory used by the job server."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet (tests and local development)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            echo=settings.log_level == "DEBUG",
            pool_pre_ping=True,
        )
    return _engine


async def init_db() -> async_sessionmaker[AsyncSession]:
    """
    Initialize the database connection and session factory.
    Should be called on application startup.

    Returns:
        The global session factory.
    """
    global AsyncSessionLocal
    engine = get_engine()
    AsyncSessionLocal = create_session_factory(engine)
    logger.info("Database connection initialized")
    return AsyncSessionLocal


async def close_db() -> None:
    """
    Close the database connection.
    Should be called on application shutdown.
    """
    global _engine, AsyncSessionLocal
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        AsyncSessionLocal = None
        logger.info("Database connection closed")

