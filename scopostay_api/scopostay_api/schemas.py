"""Shared Pydantic request and response models for API endpoints.

These schemas ensure that endpoint payloads are validated and documented
in the OpenAPI schema.  Routers import from here to avoid duplication.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Checkout / portal
# ---------------------------------------------------------------------------


class CheckoutRequest(BaseModel):
    """Request body for ``POST /billing/checkout``."""

    price_id: str = Field(..., description="Stripe price ID for the chosen plan tier.")
    mode: Literal["subscription", "payment"] = Field(
        "subscription",
        description="Stripe checkout mode.",
    )
    skip_trial: bool = Field(False, description="Start the subscription without a trial period.")
    success_url: str = Field(..., description="URL to redirect to after successful checkout.")
    cancel_url: str = Field(..., description="URL to redirect to if the customer cancels.")


class CheckoutSessionResponse(BaseModel):
    """Stripe checkout session response."""

    session_url: str


class PortalRequest(BaseModel):
    """Request body for ``POST /billing/portal``."""

    return_url: str = Field(
        ...,
        description="URL to redirect the user to after leaving the Stripe portal.",
    )


class PortalSessionResponse(BaseModel):
    """Stripe portal session response."""

    url: str


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the processor."""

    status: str


# ---------------------------------------------------------------------------
# Billing state
# ---------------------------------------------------------------------------


class PaymentMethodResponse(BaseModel):
    brand: str
    last4: str


class BillingStateResponse(BaseModel):
    """The tenant billing record exactly as persisted."""

    tenant_id: str
    owner_user_id: str | None = None
    customer_ref: str | None = None
    subscription_status: str
    tier: str
    trial_started_at: datetime | None = None
    trial_ends_at: datetime | None = None
    active_subscription_ref: str | None = None
    payment_method: PaymentMethodResponse | None = None
    current_period_end: datetime | None = None
    billing_enabled: bool = True


class SubscriptionResponse(BaseModel):
    """Subscription information response."""

    subscription_status: str
    tier: str
    subscription_id: str | None = None
    price_id: str | None = None
    trial_ends_at: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    payment_method: PaymentMethodResponse | None = None
    live_status: str | None = None
    billing_enabled: bool = True


class OrderResponse(BaseModel):
    """One completed checkout."""

    checkout_session_id: str
    payment_intent_ref: str | None = None
    amount_subtotal: int
    amount_total: int
    currency: str
    payment_status: str
    status: str
    created_at: datetime


class OrderListResponse(BaseModel):
    """Paginated order history."""

    orders: list[OrderResponse]
    total: int
    limit: int
    offset: int


class PlanResponse(BaseModel):
    """A plan tier returned by ``GET /billing/plans``."""

    tier: str
    name: str
    description: str
    monthly_price_usd: int
    features: list[str]
    popular: bool = False
    price_id: str | None = None


class PlanListResponse(BaseModel):
    plans: list[PlanResponse]


# ---------------------------------------------------------------------------
# Access
# ---------------------------------------------------------------------------


class AccessResponse(BaseModel):
    """Access decision evaluated at server time."""

    is_trial_active: bool
    is_trial_expired: bool
    has_active_subscription: bool
    needs_payment_setup: bool
    requires_payment: bool
    evaluated_at: datetime


class RouteDecisionResponse(BaseModel):
    """Route gate outcome for the caller."""

    path: str
    destination: str
    reason: str
    redirected: bool
