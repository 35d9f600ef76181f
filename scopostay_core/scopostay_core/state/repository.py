"""Repository classes providing access to the billing state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on ``session_scope``).

Every write keyed on a natural external identifier (tenant id, customer id,
checkout session id, event id) goes through :func:`_dialect_upsert` or
:func:`_dialect_upsert_nothing`, so concurrent and repeated writers converge
on one row without a read-then-write window.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from scopostay_core.billing.models import (
    PaymentMethodSummary,
    SubscriptionStatus,
    TenantBillingSnapshot,
    Tier,
    ensure_utc,
)
from scopostay_core.state.tables import (
    BillingCustomerTable,
    BillingEventTable,
    BillingOrderTable,
    BillingSubscriptionTable,
    TenantBillingTable,
)

logger = logging.getLogger(__name__)

# Marks a keyword argument as "leave the stored value unchanged", as
# distinct from an explicit ``None`` which clears it.
_UNSET: Any = ...


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
    where: Any = None,
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.
    where:
        Optional condition on the existing row; when it is false the
        conflicting row is left untouched.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
            where=where,
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
            where=where,
        )
    return await session.execute(stmt)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    The returned result's ``rowcount`` is 1 when a row was inserted and 0
    when an existing row won the conflict.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# TenantBillingRepository
# ---------------------------------------------------------------------------


class TenantBillingRepository:
    """Reads and writes the ``tenant_billing`` record of a single tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    async def get(self) -> TenantBillingTable | None:
        # Conditional UPDATEs below bypass the identity map; always reload.
        stmt = (
            select(TenantBillingTable)
            .where(TenantBillingTable.tenant_id == self._tenant_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure(self, owner_user_id: str | None = None) -> TenantBillingTable:
        """Provision the record as ``none`` if the tenant has none yet.

        An existing record is returned untouched.
        """
        now = datetime.now(UTC)
        await _dialect_upsert_nothing(
            self._session,
            TenantBillingTable,
            values={
                "tenant_id": self._tenant_id,
                "owner_user_id": owner_user_id,
                "subscription_status": SubscriptionStatus.NONE.value,
                "tier": Tier.STARTER.value,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["tenant_id"],
        )
        await self._session.flush()
        row = await self.get()
        assert row is not None
        return row

    async def snapshot(self) -> TenantBillingSnapshot:
        """Return the tenant's billing snapshot; unprovisioned tenants read as ``none``."""
        row = await self.get()
        if row is None:
            return TenantBillingSnapshot(tenant_id=self._tenant_id)
        return TenantBillingSnapshot.from_row(row)

    async def attach_customer(self, customer_ref: str, owner_user_id: str | None = None) -> None:
        """Record the processor customer for this tenant.

        Never overwrites a different customer already on the record.
        """
        values: dict[str, Any] = {"customer_ref": customer_ref, "updated_at": datetime.now(UTC)}
        if owner_user_id is not None:
            values["owner_user_id"] = owner_user_id
        stmt = (
            update(TenantBillingTable)
            .where(
                TenantBillingTable.tenant_id == self._tenant_id,
                or_(
                    TenantBillingTable.customer_ref.is_(None),
                    TenantBillingTable.customer_ref == customer_ref,
                ),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            logger.warning(
                "Tenant %s already bound to a different customer; not attaching %s",
                self._tenant_id,
                customer_ref,
            )
        await self._session.flush()

    async def apply_status(
        self,
        status: SubscriptionStatus,
        *,
        event_at: datetime,
        customer_ref: str,
        tier: Tier | None = None,
        trial_started_at: datetime | None = _UNSET,
        trial_ends_at: datetime | None = _UNSET,
        active_subscription_ref: str | None = _UNSET,
        current_period_end: datetime | None = _UNSET,
    ) -> bool:
        """Write a status transition carried by a processor event.

        The write is a single conditional ``UPDATE``: it applies only when
        no newer event has already written the status.  Keyword arguments
        left at their default keep the stored value.  A stale event skips
        the whole write, tier, period end, subscription ref and trial
        window included; only :meth:`set_payment_method` ignores ordering.

        Parameters
        ----------
        status:
            New subscription status.
        event_at:
            Creation time of the processor event carrying the transition.
        customer_ref:
            Processor customer the event was attributed through.

        Returns
        -------
        bool
            ``True`` if the transition was written, ``False`` if it was
            older than the stored ``status_event_at`` and skipped.
        """
        event_at = ensure_utc(event_at)
        values: dict[str, Any] = {
            "subscription_status": status.value,
            "customer_ref": customer_ref,
            "status_event_at": event_at,
            "updated_at": datetime.now(UTC),
        }
        if tier is not None:
            values["tier"] = tier.value
        if trial_started_at is not _UNSET:
            values["trial_started_at"] = trial_started_at
        if trial_ends_at is not _UNSET:
            values["trial_ends_at"] = trial_ends_at
        if active_subscription_ref is not _UNSET:
            values["active_subscription_ref"] = active_subscription_ref
        if current_period_end is not _UNSET:
            values["current_period_end"] = current_period_end

        stmt = (
            update(TenantBillingTable)
            .where(
                TenantBillingTable.tenant_id == self._tenant_id,
                or_(
                    TenantBillingTable.status_event_at.is_(None),
                    TenantBillingTable.status_event_at <= event_at,
                ),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        applied = result.rowcount > 0
        if not applied:
            logger.info(
                "Skipped stale %s transition for tenant %s (event at %s)",
                status.value,
                self._tenant_id,
                event_at.isoformat(),
            )
        return applied

    async def set_payment_method(self, summary: PaymentMethodSummary) -> None:
        """Refresh the informational card snapshot; not subject to ordering."""
        stmt = (
            update(TenantBillingTable)
            .where(TenantBillingTable.tenant_id == self._tenant_id)
            .values(
                payment_method_brand=summary.brand,
                payment_method_last4=summary.last4,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# BillingCustomerRepository
# ---------------------------------------------------------------------------


class BillingCustomerRepository:
    """Tenant to processor customer mapping."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_tenant(self, tenant_id: str) -> BillingCustomerTable | None:
        stmt = (
            select(BillingCustomerTable)
            .where(BillingCustomerTable.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_customer(self, customer_id: str) -> BillingCustomerTable | None:
        stmt = select(BillingCustomerTable).where(BillingCustomerTable.customer_id == customer_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def claim(
        self,
        *,
        tenant_id: str,
        customer_id: str,
        owner_user_id: str | None = None,
        email: str | None = None,
    ) -> BillingCustomerTable:
        """Bind *customer_id* to *tenant_id* unless the tenant already has one.

        Returns the row that owns the tenant afterwards, which is the
        pre-existing row when another writer got there first.
        """
        await _dialect_upsert_nothing(
            self._session,
            BillingCustomerTable,
            values={
                "tenant_id": tenant_id,
                "customer_id": customer_id,
                "owner_user_id": owner_user_id,
                "email": email,
                "created_at": datetime.now(UTC),
            },
            index_elements=["tenant_id"],
        )
        await self._session.flush()
        row = await self.get_by_tenant(tenant_id)
        assert row is not None
        if row.customer_id != customer_id:
            logger.warning(
                "Tenant %s already mapped to customer %s; discarded %s",
                tenant_id,
                row.customer_id,
                customer_id,
            )
        return row


# ---------------------------------------------------------------------------
# BillingSubscriptionRepository
# ---------------------------------------------------------------------------


class BillingSubscriptionRepository:
    """Mirror of the processor subscription, one row per customer."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_customer(self, customer_id: str) -> BillingSubscriptionTable | None:
        stmt = (
            select(BillingSubscriptionTable)
            .where(BillingSubscriptionTable.customer_id == customer_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_tenant(self, tenant_id: str) -> BillingSubscriptionTable | None:
        stmt = (
            select(BillingSubscriptionTable)
            .where(BillingSubscriptionTable.tenant_id == tenant_id)
            .order_by(BillingSubscriptionTable.updated_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(
        self,
        *,
        customer_id: str,
        tenant_id: str,
        subscription_id: str,
        status: str,
        price_id: str | None = None,
        current_period_start: datetime | None = None,
        current_period_end: datetime | None = None,
        cancel_at_period_end: bool = False,
        payment_method: PaymentMethodSummary | None = None,
        deleted_at: datetime | None = None,
        event_at: datetime | None = None,
    ) -> None:
        """Insert or refresh the mirror row for *customer_id*.

        When *event_at* is given the refresh only lands if no newer event
        has written the row, so a late delivery cannot roll the mirror back.
        """
        values: dict[str, Any] = {
            "customer_id": customer_id,
            "tenant_id": tenant_id,
            "subscription_id": subscription_id,
            "status": status,
            "price_id": price_id,
            "current_period_start": current_period_start,
            "current_period_end": current_period_end,
            "cancel_at_period_end": cancel_at_period_end,
            "deleted_at": deleted_at,
            "updated_at": datetime.now(UTC),
        }
        update_cols = [col for col in values if col != "customer_id"]
        if payment_method is not None:
            values["payment_method_brand"] = payment_method.brand
            values["payment_method_last4"] = payment_method.last4
            update_cols += ["payment_method_brand", "payment_method_last4"]

        where = None
        if event_at is not None:
            event_at = ensure_utc(event_at)
            values["event_at"] = event_at
            update_cols.append("event_at")
            where = or_(
                BillingSubscriptionTable.event_at.is_(None),
                BillingSubscriptionTable.event_at <= event_at,
            )

        await _dialect_upsert(
            self._session,
            BillingSubscriptionTable,
            values=values,
            index_elements=["customer_id"],
            update_columns=update_cols,
            where=where,
        )
        await self._session.flush()


# ---------------------------------------------------------------------------
# BillingOrderRepository
# ---------------------------------------------------------------------------

_MAX_ORDER_PAGE_SIZE = 100


class BillingOrderRepository:
    """Append-only order history keyed by checkout session id."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def upsert(
        self,
        *,
        checkout_session_id: str,
        tenant_id: str,
        customer_ref: str,
        payment_intent_ref: str | None,
        amount_subtotal: int,
        amount_total: int,
        currency: str,
        payment_status: str,
    ) -> None:
        """Record a completed checkout; redelivery refreshes the same row."""
        values: dict[str, Any] = {
            "checkout_session_id": checkout_session_id,
            "tenant_id": tenant_id,
            "customer_ref": customer_ref,
            "payment_intent_ref": payment_intent_ref or "",
            "amount_subtotal": amount_subtotal,
            "amount_total": amount_total,
            "currency": currency,
            "payment_status": payment_status,
            "status": "completed",
            "created_at": datetime.now(UTC),
        }
        await _dialect_upsert(
            self._session,
            BillingOrderTable,
            values=values,
            index_elements=["checkout_session_id"],
            update_columns=["payment_intent_ref", "amount_subtotal", "amount_total", "currency", "payment_status"],
        )
        await self._session.flush()

    async def get(self, checkout_session_id: str) -> BillingOrderTable | None:
        stmt = (
            select(BillingOrderTable)
            .where(BillingOrderTable.checkout_session_id == checkout_session_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_tenant(
        self,
        tenant_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[BillingOrderTable], int]:
        """List orders for a tenant, newest first.

        Returns
        -------
        tuple
            ``(rows, total_count)`` for pagination support.
        """
        limit = max(1, min(limit, _MAX_ORDER_PAGE_SIZE))
        count_r = await self._session.execute(
            select(func.count()).select_from(BillingOrderTable).where(BillingOrderTable.tenant_id == tenant_id)
        )
        total = count_r.scalar_one()

        stmt = (
            select(BillingOrderTable)
            .where(BillingOrderTable.tenant_id == tenant_id)
            .order_by(BillingOrderTable.created_at.desc(), BillingOrderTable.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total


# ---------------------------------------------------------------------------
# BillingEventRepository
# ---------------------------------------------------------------------------


class BillingEventRepository:
    """Ledger of processor event ids that have been applied."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def claim(self, *, event_id: str, event_type: str, event_created_at: datetime | None) -> bool:
        """Insert the event id into the ledger.

        Returns ``False`` when the id is already present, meaning the event
        was applied by an earlier (committed) delivery.
        """
        result = await _dialect_upsert_nothing(
            self._session,
            BillingEventTable,
            values={
                "event_id": event_id,
                "event_type": event_type,
                "event_created_at": event_created_at,
                "outcome": "processing",
                "processed_at": datetime.now(UTC),
            },
            index_elements=["event_id"],
        )
        await self._session.flush()
        return result.rowcount > 0

    async def complete(self, event_id: str, *, outcome: str, tenant_id: str | None = None) -> None:
        stmt = (
            update(BillingEventTable)
            .where(BillingEventTable.event_id == event_id)
            .values(outcome=outcome, tenant_id=tenant_id, processed_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def get(self, event_id: str) -> BillingEventTable | None:
        stmt = (
            select(BillingEventTable)
            .where(BillingEventTable.event_id == event_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def count(self) -> int:
        result = await self._session.execute(select(func.count()).select_from(BillingEventTable))
        return result.scalar_one()
