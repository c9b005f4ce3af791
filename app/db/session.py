"""
Database Session Management
===========================

Provides the async engine and session factory used by the SQL record
store.
"""

import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import settings

logger = logging.getLogger(__name__)

# Global engine instance
_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    PostgreSQL connections are pooled:
    - pool_size: 10 connections
    - max_overflow: 20 additional connections
    - pool_recycle: Recycle connections every 5 minutes
    - pool_use_lifo: Prefer the most-recently-returned connection
    """
    global _engine

    if _engine is None:
        url = settings.database_url_async
        if not url:
            raise ValueError(
                "Database URL not configured. "
                "Please set DATABASE_URL environment variable."
            )

        pool_options = {}
        if url.startswith("postgresql"):
            pool_options = {
                "pool_size": 10,
                "max_overflow": 20,
                "pool_recycle": 300,
                "pool_use_lifo": True,
                "pool_timeout": 30,
            }

        _engine = create_async_engine(
            url,
            echo=False,
            **pool_options,
        )

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory."""
    global _async_session_factory

    if _async_session_factory is None:
        engine = get_engine()
        _async_session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    return _async_session_factory


async def init_db() -> None:
    """
    Initialize the database connection.

    Called on application startup. Runs a trivial query so connection
    problems surface at boot rather than on the first webhook.
    """
    engine = get_engine()
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))

    logger.info("Database connection established")


async def close_db() -> None:
    """
    Close database connections.

    Called on application shutdown to clean up resources.
    """
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connections closed")
