"""
Database engine and session management.

A settlement takes capacity and an order number inside one transaction, so
the store has to serialize conflicting writers. PostgreSQL does that with
row locks. On SQLite every transaction is opened with ``BEGIN IMMEDIATE``,
which takes the write lock up front and lets SAVEPOINTs nest properly.
"""
from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from booking_settlement.config import get_settings
from booking_settlement.database.models import Base

_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def is_sqlite_url(url: str) -> bool:
    return url.startswith("sqlite")


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_settlement_engine(url: str, echo: bool = False, **options: Any) -> AsyncEngine:
    """
    Create an async engine for the settlement store.

    Args:
        url: SQLAlchemy database URL
        echo: Log every statement
        **options: Extra ``create_async_engine`` options (e.g. ``poolclass``)

    Returns:
        AsyncEngine: Engine with writer serialization in place
    """
    if is_sqlite_url(url):
        options.setdefault("connect_args", {"timeout": SQLITE_BUSY_TIMEOUT_SECONDS})
        engine = create_async_engine(url, echo=echo, **options)
        _use_immediate_transactions(engine)
        return engine

    settings = get_settings()
    options.setdefault("pool_size", settings.database_pool_size)
    options.setdefault("max_overflow", settings.database_max_overflow)
    options.setdefault("pool_pre_ping", True)
    options.setdefault("pool_recycle", 3600)
    return create_async_engine(url, echo=echo, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory for an engine.

    The settlement engine opens its own sessions from it and commits or rolls
    back explicitly, so nothing is flushed or expired behind its back.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Process-wide engine, created on first use from settings."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_settlement_engine(settings.database_url, echo=settings.database_echo)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = create_session_factory(get_engine())
    return _async_session_factory


async def get_db() -> AsyncGenerator[AsyncSession, Any]:
    """
    FastAPI dependency for read-only lookups. Never commits.

    Example:
        @app.get("/orders/{session_id}")
        async def get_order(session_id: str, db: AsyncSession = Depends(get_db)):
            ...
    """
    async with get_session_factory()() as session:
        yield session


async def create_tables(engine: AsyncEngine) -> None:
    """Create every table that does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    await create_tables(get_engine())


async def close_db() -> None:
    """Dispose of the engine; the next use creates a fresh one."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
