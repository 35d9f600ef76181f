"""Async engine construction and transactional session scopes.

PostgreSQL (``postgresql+asyncpg://``) is the production store and carries
the row-level security policies; SQLite (``sqlite+aiosqlite://``) backs
local development and the test suite.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from scopostay_core.state.sqlite_adapter import get_local_engine

logger = logging.getLogger(__name__)

# Identity-provider tenant ids: UUIDs or slugs.
_TENANT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")

# Per-connection limits applied by PostgreSQL, in milliseconds.
_PG_SERVER_SETTINGS = {"statement_timeout": "30000", "lock_timeout": "10000"}


def get_engine(database_url: str, *, pool_size: int = 10, max_overflow: int = 20) -> AsyncEngine:
    """Create the async engine for *database_url*.

    SQLite URLs are delegated to :func:`get_local_engine`; the pool
    arguments only apply to PostgreSQL.
    """
    if database_url.startswith("sqlite"):
        return get_local_engine(database_url)

    logger.info("Creating PostgreSQL engine (pool_size=%d, max_overflow=%d)", pool_size, max_overflow)
    return create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={"server_settings": _PG_SERVER_SETTINGS},
    )


async def set_tenant_context(session: AsyncSession, tenant_id: str) -> None:
    """Bind ``app.tenant_id`` for the current transaction.

    The RLS policies read it; SQLite has none, so there this does nothing.

    Raises
    ------
    ValueError
        If *tenant_id* is not a plausible tenant identifier.
    """
    if session.get_bind().dialect.name != "postgresql":
        return
    if not _TENANT_ID_RE.fullmatch(tenant_id):
        raise ValueError(f"Invalid tenant_id {tenant_id!r}")
    await session.execute(text("SELECT set_config('app.tenant_id', :tid, true)"), {"tid": tenant_id})


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
    tenant_id: str | None = None,
) -> AsyncIterator[AsyncSession]:
    """One unit of work: commit on clean exit, roll back on any exception.

    With *tenant_id* the session is bound to that tenant before use.
    Without it the session is unrestricted, which only the webhook
    processor and the probes should need.
    """
    async with factory() as session:
        try:
            if tenant_id is not None:
                await set_tenant_context(session, tenant_id)
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise
