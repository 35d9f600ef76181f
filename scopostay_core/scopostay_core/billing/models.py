"""Billing domain value objects.

A :class:`TenantBillingSnapshot` is the read-only view of one tenant's
billing record that the access evaluator and route gate consume.  It is
built either from a persisted ``tenant_billing`` row or from the JSON
payload served by ``GET /api/v1/billing/state``, so every access decision
is re-derivable from persisted state alone.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class SubscriptionStatus(str, Enum):
    """Tenant subscription status as mirrored from the processor."""

    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"


class Tier(str, Enum):
    """Purchased plan level, ordered from lowest to highest."""

    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


# Processor statuses outside our enum, folded onto the closest local state.
_PROCESSOR_STATUS_ALIASES: dict[str, SubscriptionStatus] = {
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.CANCELED,
}


def normalize_processor_status(raw: str) -> SubscriptionStatus:
    """Map a processor subscription status string onto :class:`SubscriptionStatus`.

    Raises :class:`ValueError` for statuses with no local meaning.
    """
    value = raw.strip().lower()
    alias = _PROCESSOR_STATUS_ALIASES.get(value)
    if alias is not None:
        return alias
    status = SubscriptionStatus(value)
    if status is SubscriptionStatus.NONE:
        raise ValueError("'none' is a local status and cannot be reported by the processor")
    return status


@dataclass(frozen=True, slots=True)
class PaymentMethodSummary:
    """Informational card snapshot; never consulted for access decisions."""

    brand: str
    last4: str


@dataclass(frozen=True, slots=True)
class TenantBillingSnapshot:
    """Immutable copy of a tenant's billing record at one point in time."""

    tenant_id: str
    owner_user_id: str | None = None
    customer_ref: str | None = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    tier: Tier = Tier.STARTER
    trial_started_at: datetime | None = None
    trial_ends_at: datetime | None = None
    active_subscription_ref: str | None = None
    payment_method: PaymentMethodSummary | None = None
    current_period_end: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> TenantBillingSnapshot:
        """Build a snapshot from a ``TenantBillingTable`` row."""
        payment_method = None
        if row.payment_method_brand and row.payment_method_last4:
            payment_method = PaymentMethodSummary(
                brand=row.payment_method_brand,
                last4=row.payment_method_last4,
            )
        return cls(
            tenant_id=row.tenant_id,
            owner_user_id=row.owner_user_id,
            customer_ref=row.customer_ref,
            subscription_status=SubscriptionStatus(row.subscription_status),
            tier=Tier(row.tier),
            trial_started_at=row.trial_started_at,
            trial_ends_at=row.trial_ends_at,
            active_subscription_ref=row.active_subscription_ref,
            payment_method=payment_method,
            current_period_end=row.current_period_end,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TenantBillingSnapshot:
        """Build a snapshot from the ``/billing/state`` JSON representation."""
        pm = data.get("payment_method")
        return cls(
            tenant_id=data["tenant_id"],
            owner_user_id=data.get("owner_user_id"),
            customer_ref=data.get("customer_ref"),
            subscription_status=SubscriptionStatus(data.get("subscription_status", "none")),
            tier=Tier(data.get("tier", "starter")),
            trial_started_at=_parse_ts(data.get("trial_started_at")),
            trial_ends_at=_parse_ts(data.get("trial_ends_at")),
            active_subscription_ref=data.get("active_subscription_ref"),
            payment_method=PaymentMethodSummary(brand=pm["brand"], last4=pm["last4"]) if pm else None,
            current_period_end=_parse_ts(data.get("current_period_end")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise to the JSON shape accepted by :meth:`from_dict`."""
        return {
            "tenant_id": self.tenant_id,
            "owner_user_id": self.owner_user_id,
            "customer_ref": self.customer_ref,
            "subscription_status": self.subscription_status.value,
            "tier": self.tier.value,
            "trial_started_at": _format_ts(self.trial_started_at),
            "trial_ends_at": _format_ts(self.trial_ends_at),
            "active_subscription_ref": self.active_subscription_ref,
            "payment_method": (
                {"brand": self.payment_method.brand, "last4": self.payment_method.last4}
                if self.payment_method
                else None
            ),
            "current_period_end": _format_ts(self.current_period_end),
        }


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as a timezone-aware UTC datetime (naive input is assumed UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _parse_ts(raw: str | None) -> datetime | None:
    if not raw:
        return None
    return ensure_utc(datetime.fromisoformat(raw))


def _format_ts(value: datetime | None) -> str | None:
    return ensure_utc(value).isoformat() if value is not None else None
