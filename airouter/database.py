"""
Database engine and session management (SQLAlchemy 2.0 async).

The decision ledger is the only durable consumer. All access goes through
the async session factory returned by get_session_factory().
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from airouter.config import Settings, get_settings

log = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all ORM models.

    Centralizing the metadata here ensures Alembic can discover all tables
    by importing this module.
    """

    type_annotation_map: dict[Any, Any] = {}


def build_engine(settings: Settings, *, for_test: bool = False) -> AsyncEngine:
    """Create an async SQLAlchemy engine from settings.

    Uses NullPool in test mode and for SQLite, neither of which benefits
    from a shared connection pool.
    """
    kwargs: dict[str, Any] = {"echo": settings.db_echo_sql}
    if for_test or settings.database_url.startswith("sqlite"):
        kwargs["poolclass"] = NullPool
    else:
        kwargs.update(
            {
                "pool_size": 5,
                "max_overflow": 10,
                "pool_pre_ping": True,
                "pool_recycle": 300,  # Recycle connections every 5 minutes
            }
        )
    return create_async_engine(settings.database_url, **kwargs)


# Module-level singletons, initialized at startup
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_db(settings: Settings | None = None, *, for_test: bool = False) -> None:
    """Initialize the database engine and session factory."""
    global _engine, _session_factory
    cfg = settings or get_settings()
    _engine = build_engine(cfg, for_test=for_test)
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Avoid lazy-load issues after commit
    )
    log.info("database.initialized", url=cfg.database_url.split("@")[-1])


async def create_tables() -> None:
    """Create all ledger tables (dev/test only; production uses Alembic)."""
    # Import for side effect: registers models on Base.metadata
    import airouter.models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose the engine and release all connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        log.info("database.closed")
        _engine = None
        _session_factory = None


def get_engine() -> AsyncEngine:
    """Return the initialized engine (raises if not initialized)."""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the initialized session factory (raises if not initialized)."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
