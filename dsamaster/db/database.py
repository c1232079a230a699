from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from loguru import logger
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from dsamaster.db.models import Base


def get_async_url(url: str) -> str:
    """Convert a sync SQLite URL to the aiosqlite driver URL when needed."""
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def _ensure_sqlite_dir(url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    prefix = "sqlite+aiosqlite:///"
    if not url.startswith(prefix):
        return
    path = url[len(prefix):]
    if path and path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)


# Seconds a writer waits for another connection's transaction to finish
SQLITE_BUSY_TIMEOUT = 30.0


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    """
    Start every SQLite transaction with BEGIN IMMEDIATE.

    The driver's own deferred BEGIN only takes the write lock at the first
    INSERT/UPDATE, so reads made earlier in the transaction could be stale
    by the time it writes. BEGIN IMMEDIATE takes the lock up front; other
    connections wait for it (up to SQLITE_BUSY_TIMEOUT).
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for a store URL."""
    async_url = get_async_url(database_url)
    if not async_url.startswith("sqlite"):
        return create_async_engine(async_url, echo=echo, pool_pre_ping=True)

    _ensure_sqlite_dir(async_url)
    engine = create_async_engine(
        async_url,
        echo=echo,
        pool_pre_ping=True,
        connect_args={"timeout": SQLITE_BUSY_TIMEOUT},
    )
    _use_immediate_transactions(engine)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Initialize database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@asynccontextmanager
async def async_session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Provide an async transactional scope around a series of operations."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:  # Intentionally broad - rollback on any error before re-raising
            await session.rollback()
            raise
