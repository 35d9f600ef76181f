"""Billing endpoints: checkout, Stripe portal, webhooks, state, orders, plans."""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from scopostay_core.billing.tiers import PLAN_CATALOG

from scopostay_api.config import APISettings
from scopostay_api.dependencies import (
    EmailDep,
    PriceTierMapDep,
    PublicSessionDep,
    SessionDep,
    SettingsDep,
    TenantDep,
    UserDep,
)
from scopostay_api.middleware.rbac import Permission, Role, require_permission
from scopostay_api.schemas import (
    BillingStateResponse,
    CheckoutRequest,
    CheckoutSessionResponse,
    OrderListResponse,
    PlanListResponse,
    PortalRequest,
    PortalSessionResponse,
    SubscriptionResponse,
    WebhookResponse,
)
from scopostay_api.services.billing_service import BillingService
from scopostay_api.services.webhook_service import WebhookEventProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


def _billing_enabled(settings: SettingsDep) -> APISettings:
    if not settings.billing_enabled:
        raise HTTPException(status_code=404, detail="Billing is disabled for this deployment")
    return settings


EnabledSettingsDep = Annotated[APISettings, Depends(_billing_enabled)]


# ---------------------------------------------------------------------------
# Plan catalogue
# ---------------------------------------------------------------------------


@router.get("/plans", response_model=PlanListResponse)
async def get_billing_plans(tier_map: PriceTierMapDep) -> dict[str, Any]:
    """Plan catalogue with the price id configured for each tier.

    Tiers without a configured price come back with ``price_id: null``.
    """
    prices = {tier: price_id for price_id, tier in tier_map.items()}
    return {
        "plans": [
            {
                "tier": plan.tier.value,
                "name": plan.name,
                "description": plan.description,
                "monthly_price_usd": plan.monthly_price_usd,
                "features": list(plan.features),
                "popular": plan.popular,
                "price_id": prices.get(plan.tier),
            }
            for plan in PLAN_CATALOG
        ]
    }


# ---------------------------------------------------------------------------
# Checkout / portal
# ---------------------------------------------------------------------------


@router.post("/checkout", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    session: SessionDep,
    settings: EnabledSettingsDep,
    tier_map: PriceTierMapDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    email: EmailDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_BILLING)),
) -> dict[str, str]:
    """Open a hosted checkout for *price_id* and return its redirect URL.

    The tenant's processor customer is created on first use.  The
    subscription itself only takes effect once the resulting
    ``checkout.session.completed`` webhook has been processed.
    """
    service = BillingService(session, settings, tenant_id=tenant_id, tier_map=tier_map)
    return await service.create_checkout_session(
        price_id=body.price_id,
        mode=body.mode,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        skip_trial=body.skip_trial,
        user_id=user_id,
        customer_email=email,
    )


@router.post("/portal", response_model=PortalSessionResponse)
async def create_portal_session(
    body: PortalRequest,
    session: SessionDep,
    settings: EnabledSettingsDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_BILLING)),
) -> dict[str, str]:
    """Customer-portal URL for managing payment methods and cancelling."""
    service = BillingService(session, settings, tenant_id=tenant_id)
    return await service.create_portal_session(return_url=body.return_url)


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


@router.post("/webhooks", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    session: PublicSessionDep,
    settings: SettingsDep,
    tier_map: PriceTierMapDep,
) -> dict[str, str]:
    """Reconcile one processor event delivery.

    Authenticated by the ``Stripe-Signature`` header, not a session token.  The tenant is resolved from the
    event's customer id.  Any error rolls back the whole event, including
    its idempotency-ledger entry, and answers non-2xx so Stripe redelivers.
    """
    if not settings.billing_enabled:
        return {"status": "billing_disabled"}

    body = await request.body()
    processor = WebhookEventProcessor(session, settings, tier_map=tier_map)
    return await processor.process(body, request.headers.get("stripe-signature"))


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


@router.get("/state", response_model=BillingStateResponse)
async def get_billing_state(
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.READ_BILLING)),
) -> dict[str, Any]:
    """Return the tenant's billing record for client-side access evaluation."""
    service = BillingService(session, settings, tenant_id=tenant_id)
    snapshot = await service.get_billing_state()
    state = snapshot.to_dict()
    state["billing_enabled"] = settings.billing_enabled
    return state


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.READ_BILLING)),
) -> dict[str, Any]:
    """Return the current subscription info for the authenticated tenant."""
    service = BillingService(session, settings, tenant_id=tenant_id)
    if not settings.billing_enabled:
        snapshot = await service.get_billing_state()
        return {
            "subscription_status": snapshot.subscription_status.value,
            "tier": snapshot.tier.value,
            "billing_enabled": False,
        }

    info = await service.get_subscription_info()
    info["billing_enabled"] = True
    return info


@router.get("/orders", response_model=OrderListResponse)
async def list_orders(
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.READ_BILLING)),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> dict[str, Any]:
    """Return this tenant's completed checkouts, newest first."""
    service = BillingService(session, settings, tenant_id=tenant_id)
    rows, total = await service.list_orders(limit=limit, offset=offset)
    return {
        "orders": [
            {
                "checkout_session_id": row.checkout_session_id,
                "payment_intent_ref": row.payment_intent_ref,
                "amount_subtotal": row.amount_subtotal,
                "amount_total": row.amount_total,
                "currency": row.currency,
                "payment_status": row.payment_status,
                "status": row.status,
                "created_at": row.created_at,
            }
            for row in rows
        ],
        "total": total,
        "limit": limit,
        "offset": offset,
    }
