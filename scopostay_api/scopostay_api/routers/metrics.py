"""``GET /metrics`` scrape endpoint, mounted outside ``/api/v1`` and unauthenticated."""

from __future__ import annotations

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

router = APIRouter(tags=["metrics"], include_in_schema=False)


@router.get("/metrics")
async def scrape() -> Response:
    return Response(generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
