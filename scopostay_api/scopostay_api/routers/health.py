"""Liveness and readiness probes.

``GET /api/v1/health`` always answers 200 and reports database reachability
as a field.  ``GET /ready`` sits outside the versioned prefix and answers
503 while the billing store is unreachable, so orchestrators hold traffic.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from scopostay_api import __version__
from scopostay_api.dependencies import PublicSessionDep, SettingsDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])
readiness_router = APIRouter(tags=["infrastructure"])


async def _database_reachable(session: AsyncSession) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Billing store unreachable: %s", exc)
        return False
    return True


@router.get("/health")
async def health(session: PublicSessionDep, settings: SettingsDep) -> dict[str, Any]:
    reachable = await _database_reachable(session)
    return {
        "status": "healthy",
        "version": __version__,
        "db": "ok" if reachable else "degraded",
        "billing_enabled": settings.billing_enabled,
    }


@readiness_router.get("/ready")
async def ready(session: PublicSessionDep) -> JSONResponse:
    reachable = await _database_reachable(session)
    return JSONResponse(
        status_code=200 if reachable else 503,
        content={
            "status": "ready" if reachable else "not_ready",
            "version": __version__,
            "checks": {"db": "ok" if reachable else "unavailable"},
        },
    )
