"""API router modules for the Scopostay billing service."""

from __future__ import annotations

from scopostay_api.routers import access, billing, health, metrics

__all__ = [
    "access",
    "billing",
    "health",
    "metrics",
]
