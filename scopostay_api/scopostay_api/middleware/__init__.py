"""Middleware components for the Scopostay API."""

from __future__ import annotations

from scopostay_api.middleware.auth import AuthenticationMiddleware
from scopostay_api.middleware.logging import RequestLoggingMiddleware
from scopostay_api.middleware.prometheus import PrometheusMiddleware
from scopostay_api.middleware.trace_context import TraceContextMiddleware

__all__ = [
    "AuthenticationMiddleware",
    "PrometheusMiddleware",
    "RequestLoggingMiddleware",
    "TraceContextMiddleware",
]
