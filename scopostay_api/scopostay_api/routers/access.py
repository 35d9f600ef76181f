"""Access decision and route gate evaluated against the persisted billing record.

Clients normally evaluate these themselves from ``/billing/state``; the
server-side endpoints exist so both sides can be checked against one clock.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Query
from scopostay_core.billing.access import evaluate_access
from scopostay_core.billing.route_gate import gate_route
from scopostay_core.state.repository import TenantBillingRepository

from scopostay_api.dependencies import RoleDep, SessionDep, TenantDep
from scopostay_api.middleware.prometheus import ROUTE_GATE_DECISIONS_TOTAL
from scopostay_api.schemas import AccessResponse, RouteDecisionResponse

router = APIRouter(prefix="/access", tags=["access"])


@router.get("", response_model=AccessResponse)
async def get_access(session: SessionDep, tenant_id: TenantDep, _role: RoleDep) -> dict[str, Any]:
    """Return the access decision for the caller's tenant at server time."""
    now = datetime.now(UTC)
    snapshot = await TenantBillingRepository(session, tenant_id).snapshot()
    result: dict[str, Any] = evaluate_access(snapshot, now).to_dict()
    result["evaluated_at"] = now
    return result


@router.get("/route", response_model=RouteDecisionResponse)
async def get_route_decision(
    session: SessionDep,
    tenant_id: TenantDep,
    role: RoleDep,
    path: str = Query(..., min_length=1, description="Location the caller wants to navigate to."),
) -> dict[str, Any]:
    """Return where a navigation to *path* would land for the caller."""
    snapshot = await TenantBillingRepository(session, tenant_id).snapshot()
    decision = evaluate_access(snapshot, datetime.now(UTC))
    result = gate_route(path, authenticated=True, role=role.as_gate_role(), decision=decision)
    ROUTE_GATE_DECISIONS_TOTAL.labels(result.reason.value).inc()
    return {
        "path": path,
        "destination": result.destination,
        "reason": result.reason.value,
        "redirected": result.redirected,
    }
