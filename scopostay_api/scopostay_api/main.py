"""FastAPI application for the Scopostay billing service.

Run with ``uvicorn scopostay_api.main:app``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from scopostay_core.billing.errors import BillingError
from scopostay_core.state.sqlite_adapter import create_local_tables
from sqlalchemy.exc import SQLAlchemyError

from scopostay_api import __version__
from scopostay_api.config import APISettings, PlatformEnv
from scopostay_api.dependencies import dispose_engine, get_settings, init_engine
from scopostay_api.middleware.auth import AuthenticationMiddleware
from scopostay_api.middleware.json_formatter import JSONFormatter
from scopostay_api.middleware.logging import RequestLoggingMiddleware
from scopostay_api.middleware.prometheus import PrometheusMiddleware
from scopostay_api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter
from scopostay_api.routers import access, billing, health, metrics

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


def _use_json_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    handler.addFilter(TraceLoggingFilter())
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the database on startup and release its pool on shutdown.

    Missing tables are created for SQLite and for PostgreSQL in ``dev``;
    other environments are expected to have run ``alembic upgrade head``.
    """
    settings: APISettings = app.state.settings
    if settings.structured_logging:
        _use_json_logging()

    if settings.billing_enabled and not settings.stripe_webhook_secret.get_secret_value():
        logger.warning("STRIPE_WEBHOOK_SECRET is not set; every webhook delivery will be rejected")

    engine = init_engine(settings)
    if engine.dialect.name == "sqlite" or settings.platform_env is PlatformEnv.DEV:
        await create_local_tables(engine)
    logger.info("Billing store ready (%s, env=%s)", engine.dialect.name, settings.platform_env.value)

    try:
        yield
    finally:
        await dispose_engine()


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


async def _billing_error(request: Request, exc: BillingError) -> JSONResponse:
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(level, "%s on %s: %s", exc.error_code, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.error_code})


async def _value_error(request: Request, exc: ValueError) -> JSONResponse:
    logger.warning("Rejected %s: %s", request.url.path, exc)
    return JSONResponse(status_code=400, content={"detail": "Invalid request"})


async def _database_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("Database error on %s", request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal database error"})


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: APISettings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(
        title="Scopostay Billing API",
        description="Subscription billing reconciliation for Scopostay tenants.",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Last added runs first: logging wraps tracing wraps auth.
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", "X-Correlation-ID"],
    )
    app.add_middleware(AuthenticationMiddleware, settings=settings)
    app.add_middleware(TraceContextMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    for router in (health.router, billing.router, access.router):
        app.include_router(router, prefix=API_PREFIX)
    app.include_router(health.readiness_router)
    app.include_router(metrics.router)

    app.add_exception_handler(BillingError, _billing_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _value_error)  # type: ignore[arg-type]
    app.add_exception_handler(SQLAlchemyError, _database_error)  # type: ignore[arg-type]
    return app


app = create_app()
