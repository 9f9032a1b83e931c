"""
SQLite engine and transaction scope for the local recording store.

The store is the durability anchor for recordings, so every connection is
opened in WAL mode with ``synchronous=FULL``: a committed ``save()`` must
survive a crash or power loss. Access goes through ``get_session()``,
which commits on clean exit and rolls back on error.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from sessionvault.core.config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for the local store tables."""


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=FULL",
    "PRAGMA busy_timeout=5000",
)

# Columns added after the first release: (table, column, DDL type)
_COLUMN_MIGRATIONS = [
    ("local_recordings", "remote_recording_id", "VARCHAR(64)"),
    ("local_recordings", "size_bytes", "INTEGER DEFAULT 0"),
    ("local_recordings", "uploaded_at", "DATETIME"),
]


def _apply_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    for pragma in _SQLITE_PRAGMAS:
        cursor.execute(pragma)
    cursor.close()


def build_engine(db_url: str) -> AsyncEngine:
    """Create an async engine for *db_url* with the store's SQLite settings.

    The parent directory of a file database is created on demand.
    """
    url = make_url(db_url)
    is_sqlite = url.get_backend_name() == "sqlite"
    if is_sqlite and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(db_url, echo=False)
    if is_sqlite:
        event.listen(engine.sync_engine, "connect", _apply_pragmas)
    return engine


def get_engine() -> AsyncEngine:
    """Process-wide engine for ``settings.database_url``."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings().database_url)
    return _engine


def get_session_factory(engine: AsyncEngine | None = None) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to *engine*, or the process-wide one when None."""
    global _session_factory
    if engine is not None:
        return async_sessionmaker(engine, expire_on_commit=False)
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def get_session(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """One transaction: commit when the block exits cleanly, roll back otherwise."""
    async with (factory or get_session_factory())() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def _existing_columns(conn: AsyncConnection, table: str) -> set[str]:
    result = await conn.execute(text(f"PRAGMA table_info({table})"))
    return {row[1] for row in result}


async def _apply_migrations(conn: AsyncConnection) -> None:
    """Add any column from ``_COLUMN_MIGRATIONS`` the table is still missing."""
    columns: dict[str, set[str]] = {}
    for table, column, col_type in _COLUMN_MIGRATIONS:
        if table not in columns:
            columns[table] = await _existing_columns(conn, table)
        if column in columns[table]:
            continue
        await conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
        columns[table].add(column)
        logger.info("Added column %s.%s", table, column)


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create the store tables and bring older databases up to date."""
    # Registers LocalRecording on Base.metadata
    from sessionvault.services.storage import models_db  # noqa: F401

    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await _apply_migrations(conn)


async def close_db() -> None:
    """Dispose the process-wide engine; the next ``get_engine()`` starts fresh."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("Local store closed")
    _engine = None
    _session_factory = None
