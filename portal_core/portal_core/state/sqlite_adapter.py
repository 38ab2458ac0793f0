"""SQLite adapter for local development.

Provides an async SQLAlchemy engine backed by ``aiosqlite`` that uses the
same ORM table definitions as the production PostgreSQL backend, so the
API can run without external services.

Differences from the PostgreSQL backend:

* No connection pooling (SQLite is single-writer).
* Advisory locks are no-ops.
* Tables are created on startup instead of by Alembic.
* JSONB columns fall back to SQLite's TEXT (JSON stored as strings).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)


def get_local_engine(
    db_path: Path | str = ".clientportal/state.db",
) -> AsyncEngine:
    """Create an async SQLAlchemy engine backed by SQLite via aiosqlite.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Parent directories are
        created automatically.  Use ``:memory:`` for ephemeral
        in-memory databases.
    """
    db_path = Path(db_path) if db_path != ":memory:" else db_path

    if isinstance(db_path, Path):
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{db_path}"
    else:
        url = "sqlite+aiosqlite:///:memory:"

    engine = create_async_engine(
        url,
        echo=False,
        connect_args={"check_same_thread": False},
    )

    # Foreign keys are off by default in SQLite; cascades depend on them.
    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    enable_savepoints(engine)
    logger.info("Created SQLite engine: %s", url)
    return engine


def enable_savepoints(engine: AsyncEngine) -> None:
    """Let SQLAlchemy own ``BEGIN`` so ``SAVEPOINT`` nests correctly.

    The sqlite3 driver defers ``BEGIN`` until the first write, which makes a
    savepoint opened after a read act as the outermost transaction.
    Disabling the driver's own transaction handling and emitting ``BEGIN``
    from SQLAlchemy's ``begin`` event fixes that.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_conn: Any, _: object) -> None:
        dbapi_conn.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create all ORM tables.  Idempotent; safe to call on every startup."""
    from portal_core.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("SQLite tables created/verified")
