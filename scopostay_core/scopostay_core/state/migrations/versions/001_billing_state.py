"""Create the billing state tables.

Creates ``tenant_billing``, ``billing_customers``,
``billing_subscriptions``, ``billing_orders`` and ``billing_events``.

Revision ID: 001
Revises:
Create Date: 2025-01-06 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_STATUSES = "'none', 'trialing', 'active', 'past_due', 'canceled', 'incomplete'"
_TIERS = "'starter', 'professional', 'enterprise'"


def upgrade() -> None:
    op.create_table(
        "tenant_billing",
        sa.Column("tenant_id", sa.String(128), primary_key=True),
        sa.Column("owner_user_id", sa.String(128), nullable=True),
        sa.Column("customer_ref", sa.String(256), nullable=True),
        sa.Column("subscription_status", sa.String(32), nullable=False, server_default="none"),
        sa.Column("tier", sa.String(32), nullable=False, server_default="starter"),
        sa.Column("trial_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active_subscription_ref", sa.String(256), nullable=True),
        sa.Column("payment_method_brand", sa.String(32), nullable=True),
        sa.Column("payment_method_last4", sa.String(4), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(f"subscription_status IN ({_STATUSES})", name="ck_tenant_billing_status"),
        sa.CheckConstraint(f"tier IN ({_TIERS})", name="ck_tenant_billing_tier"),
        sa.CheckConstraint(
            "subscription_status = 'none' OR customer_ref IS NOT NULL",
            name="ck_tenant_billing_customer_before_status",
        ),
        sa.CheckConstraint(
            "subscription_status != 'trialing' OR ("
            "trial_started_at IS NOT NULL AND trial_ends_at IS NOT NULL "
            "AND trial_ends_at > trial_started_at)",
            name="ck_tenant_billing_trial_window",
        ),
    )
    op.create_index("ix_tenant_billing_customer_ref", "tenant_billing", ["customer_ref"])

    op.create_table(
        "billing_customers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(128), nullable=False, unique=True),
        sa.Column("customer_id", sa.String(256), nullable=False, unique=True),
        sa.Column("owner_user_id", sa.String(128), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "billing_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("customer_id", sa.String(256), nullable=False, unique=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("subscription_id", sa.String(256), nullable=True),
        sa.Column("price_id", sa.String(256), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="not_started"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payment_method_brand", sa.String(32), nullable=True),
        sa.Column("payment_method_last4", sa.String(4), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_billing_subscriptions_tenant", "billing_subscriptions", ["tenant_id"])

    op.create_table(
        "billing_orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("checkout_session_id", sa.String(256), nullable=False, unique=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("customer_ref", sa.String(256), nullable=False),
        sa.Column("payment_intent_ref", sa.String(256), nullable=False, server_default=""),
        sa.Column("amount_subtotal", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_total", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("payment_status", sa.String(32), nullable=False, server_default="unpaid"),
        sa.Column("status", sa.String(32), nullable=False, server_default="completed"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_billing_orders_tenant_created", "billing_orders", ["tenant_id", "created_at"])

    op.create_table(
        "billing_events",
        sa.Column("event_id", sa.String(256), primary_key=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("tenant_id", sa.String(128), nullable=True),
        sa.Column("event_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome", sa.String(32), nullable=False, server_default="processing"),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_billing_events_tenant", "billing_events", ["tenant_id"])


def downgrade() -> None:
    op.drop_index("ix_billing_events_tenant", table_name="billing_events")
    op.drop_table("billing_events")
    op.drop_index("ix_billing_orders_tenant_created", table_name="billing_orders")
    op.drop_table("billing_orders")
    op.drop_index("ix_billing_subscriptions_tenant", table_name="billing_subscriptions")
    op.drop_table("billing_subscriptions")
    op.drop_table("billing_customers")
    op.drop_index("ix_tenant_billing_customer_ref", table_name="tenant_billing")
    op.drop_table("tenant_billing")
