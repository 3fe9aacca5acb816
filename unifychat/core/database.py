"""
Database layer — async SQLAlchemy 2.0 (asyncpg in production).

Provides:
    • Async engine and session factory builders
    • Base model for ORM entities
    • Schema creation / disposal helpers

Nothing is created at import time; the application lifespan builds one
engine and hands the session factory to the message store.

Usage:
    from unifychat.core.database import create_engine, create_session_factory

    engine = create_engine(settings.DATABASE_URL)
    session_factory = create_session_factory(engine)
    await init_db(engine)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from unifychat.core.config import Settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


def create_engine(url: str, settings: Optional[Settings] = None) -> AsyncEngine:
    """
    Build an async engine.

    Pool sizing only applies to server databases; SQLite (tests) uses
    SQLAlchemy's default static pool arguments.
    """
    kwargs: Dict[str, Any] = {"future": True}
    if settings is not None:
        kwargs["echo"] = settings.DATABASE_ECHO
        if not url.startswith("sqlite"):
            kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
            kwargs["max_overflow"] = settings.DATABASE_MAX_OVERFLOW
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create any missing tables; existing tables are left untouched."""
    # Registers MessageRecord on Base.metadata
    from unifychat.messaging import store  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db(engine: AsyncEngine) -> None:
    """Dispose engine connections."""
    await engine.dispose()
    logger.info("Database connections closed")
