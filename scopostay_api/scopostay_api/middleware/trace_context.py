"""W3C Trace Context propagation.

An incoming ``traceparent`` header (``00-<trace>-<span>-<flags>``) is
continued with a fresh span; otherwise a new trace is started.  The ids
live in ``contextvars`` so any log record emitted while the request is
being served carries them, and ``X-Trace-ID`` is set on every response.
"""

from __future__ import annotations

import contextvars
import logging
import os
import re
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

TRACE_HEADER = "X-Trace-ID"

_TRACEPARENT = re.compile(r"^(?P<version>[0-9a-f]{2})-(?P<trace>[0-9a-f]{32})-(?P<span>[0-9a-f]{16})-[0-9a-f]{2}$")


@dataclass(frozen=True)
class TraceContext:
    trace_id: str = ""
    span_id: str = ""
    parent_span_id: str = ""

    @classmethod
    def continue_from(cls, traceparent: str | None) -> TraceContext:
        """Child context of *traceparent*, or a new root when it is unusable."""
        trace_id, parent = parse_traceparent(traceparent or "")
        return cls(trace_id=trace_id or os.urandom(16).hex(), span_id=os.urandom(8).hex(), parent_span_id=parent)


_current: contextvars.ContextVar[TraceContext] = contextvars.ContextVar("trace_context", default=TraceContext())


def parse_traceparent(header: str) -> tuple[str, str]:
    """Return ``(trace_id, parent_span_id)``, or empty strings if invalid."""
    match = _TRACEPARENT.match(header.strip().lower())
    if match is None:
        return ("", "")
    trace_id, span_id = match["trace"], match["span"]
    if match["version"] == "ff" or not trace_id.strip("0") or not span_id.strip("0"):
        logger.debug("Ignoring unusable traceparent %r", header)
        return ("", "")
    return (trace_id, span_id)


class TraceContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        ctx = TraceContext.continue_from(request.headers.get("traceparent"))
        _current.set(ctx)
        request.state.trace_id = ctx.trace_id
        request.state.span_id = ctx.span_id
        request.state.parent_span_id = ctx.parent_span_id

        response = await call_next(request)
        response.headers[TRACE_HEADER] = ctx.trace_id
        return response


class TraceLoggingFilter(logging.Filter):
    """Copy the current ``trace_id`` and ``span_id`` onto each log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = _current.get()
        record.trace_id = ctx.trace_id  # type: ignore[attr-defined]
        record.span_id = ctx.span_id  # type: ignore[attr-defined]
        return True
