"""SQLAlchemy 2.0 ORM table definitions for the billing state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for the repository layer and for
``create_all`` in local mode and tests.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that round-trips as UTC on every backend.

    PostgreSQL stores ``timestamptz`` natively.  SQLite has no timezone
    support, so values are normalised to UTC on the way in and tagged as UTC
    on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


SUBSCRIPTION_STATUSES = ("none", "trialing", "active", "past_due", "canceled", "incomplete")
TIERS = ("starter", "professional", "enterprise")


def _in_list(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing tables."""


# ---------------------------------------------------------------------------
# Tenant billing record
# ---------------------------------------------------------------------------


class TenantBillingTable(Base):
    """One billing record per tenant.

    Written only by the webhook processor (status fields) and the checkout
    initiator (``customer_ref``).  ``status_event_at`` holds the creation
    time of the processor event that last wrote ``subscription_status`` so
    older redeliveries cannot regress it.
    """

    __tablename__ = "tenant_billing"

    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    owner_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    customer_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    subscription_status: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    tier: Mapped[str] = mapped_column(String(32), nullable=False, default="starter")
    trial_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    active_subscription_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    payment_method_brand: Mapped[str | None] = mapped_column(String(32), nullable=True)
    payment_method_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    status_event_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(_in_list("subscription_status", SUBSCRIPTION_STATUSES), name="ck_tenant_billing_status"),
        CheckConstraint(_in_list("tier", TIERS), name="ck_tenant_billing_tier"),
        CheckConstraint(
            "subscription_status = 'none' OR customer_ref IS NOT NULL",
            name="ck_tenant_billing_customer_before_status",
        ),
        CheckConstraint(
            "subscription_status != 'trialing' OR ("
            "trial_started_at IS NOT NULL AND trial_ends_at IS NOT NULL "
            "AND trial_ends_at > trial_started_at)",
            name="ck_tenant_billing_trial_window",
        ),
        Index("ix_tenant_billing_customer_ref", "customer_ref"),
    )


# ---------------------------------------------------------------------------
# Processor mirrors
# ---------------------------------------------------------------------------


class BillingCustomerTable(Base):
    """Mapping between tenants and their payment-processor customer.

    ``tenant_id`` is the de-duplication key for customer creation and
    ``customer_id`` the attribution key for inbound webhooks.
    """

    __tablename__ = "billing_customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    customer_id: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    owner_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)


class BillingSubscriptionTable(Base):
    """Last known state of the processor subscription for each customer."""

    __tablename__ = "billing_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    price_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="not_started")
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payment_method_brand: Mapped[str | None] = mapped_column(String(32), nullable=True)
    payment_method_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    # Creation time of the processor event that last wrote this row.
    event_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (Index("ix_billing_subscriptions_tenant", "tenant_id"),)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


class BillingOrderTable(Base):
    """One row per completed checkout session; never mutated after creation
    except by redelivery of the same event."""

    __tablename__ = "billing_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    checkout_session_id: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    customer_ref: Mapped[str] = mapped_column(String(256), nullable=False)
    payment_intent_ref: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    amount_subtotal: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    payment_status: Mapped[str] = mapped_column(String(32), nullable=False, default="unpaid")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="completed")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_billing_orders_tenant_created", "tenant_id", "created_at"),)


# ---------------------------------------------------------------------------
# Processed event ledger
# ---------------------------------------------------------------------------


class BillingEventTable(Base):
    """Processor event ids already applied, for replay short-circuiting."""

    __tablename__ = "billing_events"

    event_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    tenant_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    event_created_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False, default="processing")
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_billing_events_tenant", "tenant_id"),)
