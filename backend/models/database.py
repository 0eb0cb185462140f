"""
Database connection and session management.

Uses SQLAlchemy async with a connection pool sized for the API process and
Celery workers.

Connection Pool Strategy:
- PostgreSQL session mode (port 5432): local connection pool keeps connections open
- PostgreSQL behind a transaction pooler (port 6543): NullPool
- SQLite (tests, local tooling): NullPool, one connection per session
- Sessions are lightweight wrappers that checkout connections from the pool
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional
from urllib.parse import urlparse

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB, insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, AsyncEngine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

# JSONB on Postgres, plain JSON everywhere else
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Global singletons - created lazily, reset by close_db()/dispose_engine()
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _normalize_url(url: str) -> str:
    """Ensure Postgres URLs use the asyncpg driver."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def get_engine() -> AsyncEngine:
    """Get the database engine (singleton - created once, reused)."""
    global _engine
    if _engine is None:
        db_url = _normalize_url(settings.DATABASE_URL)
        if db_url.startswith("sqlite"):
            _engine = create_async_engine(db_url, echo=False, poolclass=NullPool)
            logger.info("Database engine created for SQLite with NullPool")
            return _engine

        # Port 6543 = transaction pooler; prepared statements and local pooling don't survive it
        parsed = urlparse(db_url)
        db_port: int = parsed.port or 5432
        connect_args: dict[str, Any] = {
            "statement_cache_size": 0,
            "prepared_statement_cache_size": 0,
        }

        if db_port == 6543:
            _engine = create_async_engine(
                db_url,
                echo=False,
                poolclass=NullPool,
                connect_args=connect_args,
            )
            logger.info("Database engine created with NullPool (transaction mode, port %d)", db_port)
        else:
            _engine = create_async_engine(
                db_url,
                echo=False,
                pool_size=5,
                max_overflow=10,
                pool_recycle=300,
                pool_pre_ping=True,
                connect_args=connect_args,
            )
            logger.info(
                "Database engine created with connection pool (port %d, pool_size=5, max_overflow=10)",
                db_port,
            )
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


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield an async database session.

    Usage:
        async with get_session() as session:
            result = await session.execute(query)
            await session.commit()  # Explicit commit if needed

    The session is automatically closed when the context exits.
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


def dialect_insert(session: AsyncSession) -> Any:
    """Dialect-specific insert construct; both expose on_conflict_do_update()."""
    bind = session.bind if session.bind is not None else get_engine()
    if bind.dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


async def init_db() -> None:
    """Create all tables."""
    # Import models so they register on Base.metadata
    import models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db() -> None:
    """Drop all tables. Only used by the test suite."""
    import models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


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
    """
    Drop the engine without awaiting pool shutdown.

    Celery tasks run each coroutine in a fresh event loop; pooled asyncpg
    connections are bound to the loop that created them, so the next task
    must build its own engine.
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
    if isinstance(pool, NullPool):
        return {"pool_type": "NullPool", "pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}

    return {
        "pool_type": type(pool).__name__,
        "pool_size": pool.size(),
        "checked_in": pool.checkedin(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow(),
    }
