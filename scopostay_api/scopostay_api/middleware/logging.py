"""Structured request-logging middleware.

One record per request on the ``scopostay_api.access`` logger, carried in
``extra={"request": {...}}`` so :class:`JSONFormatter` can emit it as
fields.  Probe traffic is logged at DEBUG; client errors at WARNING and
server errors at ERROR.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("scopostay_api.access")

_CORRELATION_HEADER = "X-Correlation-ID"

# Credentials and the webhook signature never reach the log.
_SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "stripe-signature"})
_MASK = "***"

_PROBE_PATHS = frozenset({"/api/v1/health", "/ready", "/metrics"})
_WEBHOOK_PATH = "/api/v1/billing/webhooks"


def _masked_headers(request: Request) -> dict[str, str]:
    return {name: _MASK if name.lower() in _SENSITIVE_HEADERS else value for name, value in request.headers.items()}


def _level_for(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    if path in _PROBE_PATHS:
        return logging.DEBUG
    return logging.INFO


def _request_record(
    request: Request,
    *,
    status_code: int,
    duration_ms: float,
    correlation_id: str,
) -> dict[str, Any]:
    state = request.state
    record: dict[str, Any] = {
        "method": request.method,
        "path": request.url.path,
        "query": str(request.url.query) or None,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "client": request.client.host if request.client else None,
        "correlation_id": correlation_id,
        "tenant_id": getattr(state, "tenant_id", None),
        "user_id": getattr(state, "sub", None),
        "role": getattr(state, "role", None),
        "trace_id": getattr(state, "trace_id", ""),
        "span_id": getattr(state, "span_id", ""),
        "headers": _masked_headers(request),
    }
    if request.url.path == _WEBHOOK_PATH:
        # Webhooks are unauthenticated; note whether the delivery was signed at all.
        record["signed"] = "stripe-signature" in request.headers
    return record


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and duration of every request.

    The correlation id is taken from ``X-Correlation-ID`` (a UUID-4 is
    generated when absent) and echoed on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(_CORRELATION_HEADER) or str(uuid.uuid4())
        start = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[_CORRELATION_HEADER] = correlation_id
            return response
        finally:
            record = _request_record(
                request,
                status_code=status_code,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
                correlation_id=correlation_id,
            )
            logger.log(_level_for(request.url.path, status_code), "request completed", extra={"request": record})
