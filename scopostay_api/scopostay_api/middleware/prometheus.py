"""Prometheus instruments for the billing API.

HTTP rate and latency are recorded by :class:`PrometheusMiddleware`,
labelled with the matched route template (``/api/v1/billing/orders``)
rather than the raw path.  The billing counters are incremented by the
webhook processor, the checkout initiator and the route-gate endpoint.
"""

from __future__ import annotations

import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "scopostay_http_requests_total",
    "HTTP requests by method, route and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "scopostay_http_request_duration_seconds",
    "HTTP request latency by method and route",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------

BILLING_WEBHOOK_EVENTS_TOTAL = Counter(
    "scopostay_billing_webhook_events_total",
    "Processor webhook events by event type and outcome",
    ["event_type", "outcome"],
)

CHECKOUT_SESSIONS_TOTAL = Counter(
    "scopostay_checkout_sessions_total",
    "Checkout session initiations by outcome",
    ["outcome"],
)

ROUTE_GATE_DECISIONS_TOTAL = Counter(
    "scopostay_route_gate_decisions_total",
    "Server-side route gate decisions by reason",
    ["reason"],
)

_UNMATCHED_ID_SEGMENT = re.compile(r"/(?:(?:cus|sub|cs|evt|in|pi|price)_[A-Za-z0-9]+|[0-9a-f-]{32,36}|\d+)(?=/|$)")

_UNINSTRUMENTED: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


def route_label(request: Request) -> str:
    """Route template the request matched, or its path with ids collapsed."""
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    if template:
        return template
    return _UNMATCHED_ID_SEGMENT.sub("/{id}", request.url.path)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in _UNINSTRUMENTED:
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        label = route_label(request)
        HTTP_REQUESTS_TOTAL.labels(request.method, label, str(response.status_code)).inc()
        HTTP_REQUEST_DURATION.labels(request.method, label).observe(elapsed)
        return response
