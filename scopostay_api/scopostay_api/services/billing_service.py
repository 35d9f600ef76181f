"""Stripe billing operations initiated by a signed-in tenant user.

Covers checkout initiation (including lazy processor-customer creation),
the customer portal, and the read side: billing state, subscription
details and order history.  Inbound webhook events are handled by
:mod:`scopostay_api.services.webhook_service`.
"""

from __future__ import annotations

import logging
from typing import Any

import stripe
from scopostay_core.billing.errors import (
    BillingError,
    ConfigError,
    ProcessorUnavailableError,
    StaleCustomerError,
)
from scopostay_core.billing.models import TenantBillingSnapshot
from scopostay_core.billing.tiers import PriceTierMap
from scopostay_core.state.repository import (
    BillingCustomerRepository,
    BillingOrderRepository,
    BillingSubscriptionRepository,
    TenantBillingRepository,
)
from scopostay_core.state.tables import BillingOrderTable
from sqlalchemy.ext.asyncio import AsyncSession

from scopostay_api.config import APISettings
from scopostay_api.middleware.prometheus import CHECKOUT_SESSIONS_TOTAL

logger = logging.getLogger(__name__)


class BillingService:
    """Stripe billing operations for a single tenant.

    Parameters
    ----------
    session:
        Active database session.
    settings:
        API settings containing Stripe configuration.
    tenant_id:
        The tenant performing billing operations.
    tier_map:
        Price→tier table; defaults to the one described by *settings*.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        tenant_id: str,
        tier_map: PriceTierMap | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._tenant_id = tenant_id
        self._tier_map = tier_map or settings.price_tier_map()
        self._billing = TenantBillingRepository(session, tenant_id)
        self._customers = BillingCustomerRepository(session)

    def _get_stripe(self) -> Any:
        """Return the Stripe module configured with this deployment's key."""
        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def create_checkout_session(
        self,
        *,
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
        skip_trial: bool = False,
        user_id: str,
        customer_email: str | None = None,
    ) -> dict[str, str]:
        """Open a hosted checkout session for *price_id*.

        Ensures exactly one processor customer exists for the tenant,
        verifies a previously recorded customer still exists upstream, and
        tags the session with the tenant, admin and tier so the webhook
        processor can attribute the resulting events.

        Returns
        -------
        dict
            Contains ``session_url`` to redirect the user to.

        Raises
        ------
        ConfigError
            If *price_id* is not mapped to a tier.
        StaleCustomerError
            If the recorded processor customer was deleted upstream.
        ProcessorUnavailableError
            On processor API failures.
        """
        try:
            result = await self._create_checkout_session(
                price_id=price_id,
                mode=mode,
                success_url=success_url,
                cancel_url=cancel_url,
                skip_trial=skip_trial,
                user_id=user_id,
                customer_email=customer_email,
            )
        except BillingError as exc:
            CHECKOUT_SESSIONS_TOTAL.labels(outcome=exc.error_code).inc()
            raise
        CHECKOUT_SESSIONS_TOTAL.labels(outcome="created").inc()
        return result

    async def _create_checkout_session(
        self,
        *,
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
        skip_trial: bool,
        user_id: str,
        customer_email: str | None,
    ) -> dict[str, str]:
        tier = self._tier_map.require_tier(price_id)
        client = self._get_stripe()

        await self._billing.ensure(owner_user_id=user_id)
        customer_id = await self._ensure_customer(client, user_id=user_id, customer_email=customer_email)

        trial_days = 0 if skip_trial else self._settings.trial_period_days
        metadata = {
            "tenant_id": self._tenant_id,
            "admin_id": user_id,
            "tier": tier.value,
            "skip_trial": "true" if skip_trial else "false",
        }
        params: dict[str, Any] = {
            "customer": customer_id,
            "mode": mode,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "allow_promotion_codes": True,
            "billing_address_collection": "auto",
            "metadata": metadata,
        }
        if mode == "subscription":
            params["payment_method_collection"] = "always"
            subscription_data: dict[str, Any] = {"metadata": metadata}
            if trial_days > 0:
                subscription_data["trial_period_days"] = trial_days
            params["subscription_data"] = subscription_data

        try:
            checkout_session = client.checkout.Session.create(**params)
        except stripe.StripeError as exc:
            logger.error("Checkout session creation failed for tenant %s", self._tenant_id, exc_info=True)
            raise ProcessorUnavailableError(f"Failed to create checkout session: {exc}") from exc

        logger.info(
            "Checkout session %s created for tenant %s (tier=%s, trial_days=%d)",
            checkout_session["id"],
            self._tenant_id,
            tier.value,
            trial_days,
        )
        return {"session_url": checkout_session["url"]}

    async def _ensure_customer(self, client: Any, *, user_id: str, customer_email: str | None) -> str:
        """Return the tenant's processor customer id, creating it if absent.

        Creation is keyed on the tenant twice over: the processor call
        carries a tenant-scoped idempotency key, and the local mapping is an
        insert-if-absent on ``tenant_id``.  Concurrent initiations therefore
        converge on a single customer.
        """
        existing = await self._customers.get_by_tenant(self._tenant_id)
        if existing is not None:
            self._verify_customer(client, existing.customer_id)
            await self._billing.attach_customer(existing.customer_id)
            return existing.customer_id

        create_params: dict[str, Any] = {
            "metadata": {"tenant_id": self._tenant_id, "user_id": user_id},
            "idempotency_key": f"scopostay-customer-{self._tenant_id}",
        }
        if customer_email:
            create_params["email"] = customer_email
        try:
            customer = client.Customer.create(**create_params)
        except stripe.StripeError as exc:
            logger.error("Customer creation failed for tenant %s", self._tenant_id, exc_info=True)
            raise ProcessorUnavailableError(f"Failed to create billing customer: {exc}") from exc

        row = await self._customers.claim(
            tenant_id=self._tenant_id,
            customer_id=customer["id"],
            owner_user_id=user_id,
            email=customer_email,
        )
        await self._billing.attach_customer(row.customer_id, owner_user_id=user_id)
        logger.info("Billing customer %s bound to tenant %s", row.customer_id, self._tenant_id)
        return row.customer_id

    def _verify_customer(self, client: Any, customer_id: str) -> None:
        try:
            customer = client.Customer.retrieve(customer_id)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                raise StaleCustomerError(
                    f"Billing customer {customer_id} no longer exists at the processor; contact support"
                ) from exc
            raise ProcessorUnavailableError(f"Failed to verify billing customer: {exc}") from exc
        except stripe.StripeError as exc:
            raise ProcessorUnavailableError(f"Failed to verify billing customer: {exc}") from exc

        if customer.get("deleted"):
            logger.error("Billing customer %s for tenant %s was deleted upstream", customer_id, self._tenant_id)
            raise StaleCustomerError(
                f"Billing customer {customer_id} was deleted at the processor; contact support"
            )

    # ------------------------------------------------------------------
    # Customer portal
    # ------------------------------------------------------------------

    async def create_portal_session(self, return_url: str) -> dict[str, str]:
        """Create a Stripe Customer Portal session.

        Returns
        -------
        dict
            Contains ``url`` for the portal session.
        """
        row = await self._customers.get_by_tenant(self._tenant_id)
        if row is None:
            raise ConfigError("No billing customer exists for this tenant; start a subscription first")

        client = self._get_stripe()
        try:
            portal = client.billing_portal.Session.create(customer=row.customer_id, return_url=return_url)
        except stripe.StripeError as exc:
            logger.error("Portal session creation failed for tenant %s", self._tenant_id, exc_info=True)
            raise ProcessorUnavailableError(f"Failed to create portal session: {exc}") from exc
        return {"url": portal["url"]}

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get_billing_state(self) -> TenantBillingSnapshot:
        """Return the tenant's billing record as persisted."""
        return await self._billing.snapshot()

    async def get_subscription_info(self) -> dict[str, Any]:
        """Return the local billing record merged with the subscription mirror.

        The processor's live status is added under ``live_status`` when it
        can be fetched; failures leave it ``None``.
        """
        snapshot = await self._billing.snapshot()
        mirror = await BillingSubscriptionRepository(self._session).get_by_tenant(self._tenant_id)

        info: dict[str, Any] = {
            "subscription_status": snapshot.subscription_status.value,
            "tier": snapshot.tier.value,
            "subscription_id": snapshot.active_subscription_ref,
            "price_id": mirror.price_id if mirror else None,
            "trial_ends_at": snapshot.trial_ends_at,
            "current_period_end": snapshot.current_period_end,
            "cancel_at_period_end": mirror.cancel_at_period_end if mirror else False,
            "payment_method": (
                {"brand": snapshot.payment_method.brand, "last4": snapshot.payment_method.last4}
                if snapshot.payment_method
                else None
            ),
            "live_status": None,
        }

        if snapshot.active_subscription_ref:
            try:
                client = self._get_stripe()
                sub = client.Subscription.retrieve(snapshot.active_subscription_ref)
                info["live_status"] = sub.get("status")
                info["cancel_at_period_end"] = sub.get("cancel_at_period_end", info["cancel_at_period_end"])
            except Exception:
                logger.warning(
                    "Failed to fetch Stripe subscription %s",
                    snapshot.active_subscription_ref,
                    exc_info=True,
                )
        return info

    async def list_orders(self, limit: int = 20, offset: int = 0) -> tuple[list[BillingOrderTable], int]:
        """Return ``(orders, total)`` for the tenant, newest first."""
        return await BillingOrderRepository(self._session).list_for_tenant(self._tenant_id, limit=limit, offset=offset)
