"""
Database connection and session management.

Uses SQLAlchemy async. PostgreSQL (asyncpg) in every deployed environment;
SQLite (aiosqlite) is accepted so tests can run against an in-memory database.

Connection Pool Strategy:
- Pooler in transaction mode (port 6543): NullPool (external pooler manages connections)
- Anything else on PostgreSQL: local connection pool keeps connections open
- SQLite in-memory: StaticPool so every session sees the same database
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional
from urllib.parse import urlparse

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, AsyncEngine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool, StaticPool

from config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Global singletons - created once, reused forever
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None
_db_url: str = settings.DATABASE_URL


def _normalize_url(url: str) -> str:
    """Ensure PostgreSQL URLs use the asyncpg driver."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _create_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        engine = create_async_engine(
            url,
            echo=False,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        logger.info("Database engine created for SQLite (%s)", url)
        return engine

    parsed = urlparse(url)
    port: int = parsed.port or 5432
    # Disable prepared statement cache for pgbouncer compatibility
    connect_args: dict[str, Any] = {
        "statement_cache_size": 0,
        "prepared_statement_cache_size": 0,
    }
    if port == 6543:
        engine = create_async_engine(
            url,
            echo=False,
            poolclass=NullPool,
            connect_args=connect_args,
        )
        logger.info("Database engine created with NullPool (transaction mode, port %d)", port)
        return engine

    engine = create_async_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_recycle=300,
        pool_pre_ping=True,
        connect_args=connect_args,
    )
    logger.info(
        "Database engine created with connection pool (port %d, pool_size=5, max_overflow=10)",
        port,
    )
    return engine


def get_engine() -> AsyncEngine:
    """Get the database engine (singleton - created once, reused)."""
    global _engine
    if _engine is None:
        _engine = _create_engine(_normalize_url(_db_url))
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the async session factory (singleton - created once, reused)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,  # Don't auto-flush, we control when to commit
        )
    return _session_factory


def configure_database(url: str) -> None:
    """Point the engine singletons at a different database URL.

    Used by tests (``sqlite+aiosqlite:///:memory:``) and by Alembic.
    """
    global _db_url, _engine, _session_factory
    _db_url = url
    _engine = None
    _session_factory = None


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield an async database session.

    Usage:
        async with get_session() as session:
            result = await session.execute(query)
            await session.commit()  # Explicit commit if needed

    Any uncommitted changes are rolled back on error.
    """
    factory = get_session_factory()
    session: AsyncSession = factory()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_db() -> None:
    """Create all tables."""
    # Import models so their tables are registered on Base.metadata
    import models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """
    Close the database engine and release all pooled connections.
    Call this on application shutdown.
    """
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database engine disposed, all connections closed")


def dispose_engine() -> None:
    """Drop the engine singletons without awaiting.

    Celery tasks run each coroutine on a fresh event loop; pooled asyncpg
    connections are bound to the loop that opened them and cannot be reused.
    """
    global _engine, _session_factory
    if _engine is not None:
        _engine.sync_engine.dispose(close=False)
    _engine = None
    _session_factory = None


def get_pool_status() -> dict[str, int | str]:
    """Get current connection pool status for monitoring."""
    if _engine is None:
        return {"pool_type": "not_initialized", "pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}

    pool = _engine.pool
    if isinstance(pool, (NullPool, StaticPool)):
        return {"pool_type": type(pool).__name__, "pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}

    return {
        "pool_type": type(pool).__name__,
        "pool_size": pool.size(),
        "checked_in": pool.checkedin(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow(),
    }
