"""FastAPI dependencies: settings, database sessions and caller identity."""

from __future__ import annotations

from collections.abc import AsyncIterator
from functools import lru_cache
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request
from scopostay_core.billing.tiers import PriceTierMap
from scopostay_core.state.database import get_engine, session_scope
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from scopostay_api.config import APISettings, load_api_settings
from scopostay_api.middleware.rbac import Role, get_user_role

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def get_settings() -> APISettings:
    """Process-wide settings, loaded from the environment on first use."""
    return load_api_settings()


SettingsDep = Annotated[APISettings, Depends(get_settings)]


def get_price_tier_map(settings: SettingsDep) -> PriceTierMap:
    return settings.price_tier_map()


PriceTierMapDep = Annotated[PriceTierMap, Depends(get_price_tier_map)]

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class _Database:
    engine: AsyncEngine | None = None
    sessions: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create the process-wide engine and session factory."""
    _Database.engine = get_engine(settings.database_url)
    _Database.sessions = async_sessionmaker(_Database.engine, expire_on_commit=False)
    return _Database.engine


async def dispose_engine() -> None:
    engine, _Database.engine, _Database.sessions = _Database.engine, None, None
    if engine is not None:
        await engine.dispose()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _Database.sessions is None:
        raise RuntimeError("init_engine() has not been called; the database is not configured")
    return _Database.sessions


async def get_db_session() -> AsyncIterator[AsyncSession]:
    """Unscoped session for the webhook endpoint and readiness probe.

    A handler that raises leaves nothing committed.
    """
    async with session_scope(get_session_factory()) as session:
        yield session


async def get_tenant_session(request: Request) -> AsyncIterator[AsyncSession]:
    """Session bound to the authenticated caller's tenant."""
    tenant_id = _authenticated(request, "tenant_id")
    async with session_scope(get_session_factory(), tenant_id) as session:
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_tenant_session)]
PublicSessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Caller identity, as placed on request.state by AuthenticationMiddleware
# ---------------------------------------------------------------------------


def _authenticated(request: Request, attr: str) -> Any:
    value = getattr(request.state, attr, None)
    if value is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return value


def get_tenant_id(request: Request) -> str:
    return _authenticated(request, "tenant_id")


def get_user_identity(request: Request) -> str:
    return _authenticated(request, "sub")


def get_user_email(request: Request) -> str | None:
    return getattr(request.state, "email", None)


TenantDep = Annotated[str, Depends(get_tenant_id)]
UserDep = Annotated[str, Depends(get_user_identity)]
EmailDep = Annotated[str | None, Depends(get_user_email)]
RoleDep = Annotated[Role, Depends(get_user_role)]
