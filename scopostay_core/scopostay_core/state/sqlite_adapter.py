"""SQLite backend for local development and tests.

The ORM tables and the repositories' ``ON CONFLICT`` upserts behave the
same on SQLite as on PostgreSQL; only row-level security is missing.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from scopostay_core.state.tables import Base

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_DB = Path(".scopostay") / "billing.db"


def get_local_engine(target: str | Path = DEFAULT_LOCAL_DB) -> AsyncEngine:
    """Async SQLite engine for *target*.

    *target* is either a ``sqlite+aiosqlite://`` URL or a filesystem path.
    An empty database name, or ``:memory:``, gives an in-memory database
    held on a single shared connection for the life of the engine.
    """
    raw = str(target)
    database = make_url(raw).database if raw.startswith("sqlite") else raw
    in_memory = database in (None, "", ":memory:")

    if in_memory:
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        path = Path(database)
        path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_async_engine(f"sqlite+aiosqlite:///{path}", connect_args={"check_same_thread": False})

    @event.listens_for(engine.sync_engine, "connect")
    def _pragmas(dbapi_conn: object, _record: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    logger.info("SQLite billing store: %s", "in-memory" if in_memory else database)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create any missing billing tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
