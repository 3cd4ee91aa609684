"""
Database connection and session management.

SQLite Notes:
-------------
The default deployment stores staging, version history, vault records and
the audit log in one SQLite file next to the managed Postfix instance.

1. WAL Mode (Write-Ahead Logging):
   - Readers (diff, history) are not blocked while an apply commits

2. NullPool:
   - Creates new connection for each operation (required for async SQLite)

3. Busy Timeout (5 seconds):
   - Prevents "database is locked" errors when a read overlaps a commit

Any other async SQLAlchemy URL (e.g. PostgreSQL via asyncpg) works as well;
the pragmas are only issued on SQLite connections.
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from relayconf.constants import SQLITE_BUSY_TIMEOUT_MS

# Base class for models
Base = declarative_base()


def set_sqlite_pragma(dbapi_conn, connection_record):
    """
    Enable SQLite-specific settings on every new connection.
    - PRAGMA foreign_keys=ON: Enable foreign key constraints (disabled by default in SQLite)
    - PRAGMA journal_mode=WAL: Use Write-Ahead Logging for better concurrency
    - PRAGMA busy_timeout=5000: Wait up to 5s for locks to release
    - PRAGMA synchronous=NORMAL: Balance between safety and performance for WAL mode
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine for a database URL."""
    engine = create_async_engine(
        database_url,
        echo=echo,
        poolclass=NullPool,
        future=True
    )
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", set_sqlite_pragma)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create a session factory bound to an engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False
    )


async def init_db(engine: AsyncEngine):
    """Initialize database tables."""
    # Register every model on Base.metadata
    import relayconf.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def checkpoint_wal(engine: AsyncEngine):
    """
    Run a WAL checkpoint to consolidate the write-ahead log.
    Called from the retention cleanup loop to prevent WAL file growth.
    """
    from loguru import logger
    if engine.dialect.name != "sqlite":
        return
    try:
        async with engine.begin() as conn:
            await conn.execute(text("PRAGMA wal_checkpoint(TRUNCATE)"))
            logger.debug("WAL checkpoint completed")
    except Exception as e:
        logger.warning(f"WAL checkpoint failed: {e}")


async def close_db(engine: Optional[AsyncEngine]):
    """Close database connections."""
    if engine is None:
        return
    await checkpoint_wal(engine)
    await engine.dispose()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
