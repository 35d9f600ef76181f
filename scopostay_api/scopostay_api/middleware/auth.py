"""Bearer-token authentication for the tenant-facing endpoints.

Each non-public request must carry ``Authorization: Bearer <token>``.  A
valid token places ``tenant_id``, ``sub``, ``role`` and ``email`` on
``request.state``; anything else is answered 401 with ``"error":
"auth_error"``, which the web client takes as its cue to sign the user out.

The webhook endpoint is public here because it authenticates deliveries by
signature instead.
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from scopostay_api.config import APISettings
from scopostay_api.security import TokenConfig, TokenManager

logger = logging.getLogger(__name__)

PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/api/v1/billing/webhooks",
        "/ready",
        "/metrics",
        "/openapi.json",
        "/favicon.ico",
    }
)
_DOC_PREFIXES = ("/docs", "/redoc")


def build_token_manager(settings: APISettings) -> TokenManager:
    config = TokenConfig(
        jwt_secret=settings.auth_jwt_secret,
        jwt_algorithm=settings.auth_jwt_algorithm,
        audience=settings.auth_jwt_audience,
    )
    return TokenManager(config)


class _Unauthenticated(Exception):
    pass


def _bearer_token(header: str | None) -> str:
    if not header:
        raise _Unauthenticated("Missing Authorization header")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _Unauthenticated("Authorization header must use Bearer scheme")
    return token.strip()


class AuthenticationMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: Any, settings: APISettings) -> None:
        super().__init__(app)
        self._tokens = build_token_manager(settings)

    @staticmethod
    def _is_public(request: Request) -> bool:
        path = request.url.path
        return request.method == "OPTIONS" or path in PUBLIC_PATHS or path.startswith(_DOC_PREFIXES)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if self._is_public(request):
            return await call_next(request)

        try:
            claims = self._tokens.validate_token(_bearer_token(request.headers.get("authorization")))
        except _Unauthenticated as exc:
            return JSONResponse(status_code=401, content={"detail": str(exc), "error": "auth_error"})
        except PermissionError as exc:
            logger.info("Rejected session token on %s: %s", request.url.path, exc)
            return JSONResponse(status_code=401, content={"detail": f"Invalid token: {exc}", "error": "auth_error"})

        state = request.state
        state.tenant_id, state.sub, state.role, state.email = claims.tenant_id, claims.sub, claims.role, claims.email
        return await call_next(request)
