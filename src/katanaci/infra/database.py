"""Database engine and session management (SQLite via aiosqlite)."""

import logging

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

# Register tables on SQLModel.metadata
from katanaci.infra import models  # noqa: F401

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _install_sqlite_pragmas(engine: AsyncEngine, busy_timeout_ms: int) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _set_pragmas(dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


async def init_db(
    database_url: str,
    echo: bool = False,
    busy_timeout_ms: int = 5000,
    create_tables: bool = True,
) -> None:
    """Initialize the engine and session factory.

    Args:
        database_url: SQLAlchemy URL, e.g. sqlite+aiosqlite:///./data.db
        echo: Log SQL statements
        busy_timeout_ms: How long a writer waits on a locked database
        create_tables: Create missing tables (idempotent)
    """
    global _engine, _session_factory

    _engine = create_async_engine(database_url, echo=echo)
    if _engine.dialect.name == "sqlite":
        _install_sqlite_pragmas(_engine, busy_timeout_ms)

    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    try:
        async with _engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            if create_tables:
                await conn.run_sync(SQLModel.metadata.create_all)
        logger.info(
            "Database connected",
            extra={"event": "db_connected", "dialect": _engine.dialect.name},
        )
    except Exception as e:
        logger.error(
            "Database connection failed",
            extra={
                "event": "db_error",
                "error_type": type(e).__name__,
                "error": str(e),
            },
        )
        raise


async def close_db() -> None:
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database not initialized")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get session factory for creating new sessions."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized")
    return _session_factory


async def check_db() -> None:
    """Round-trip a trivial query; raises if the datastore is unusable."""
    async with get_engine().connect() as conn:
        await conn.execute(text("SELECT 1"))
