"""Stripe webhook event processor.

Verifies the ``Stripe-Signature`` header, decodes the event into its typed
variant and applies it to the tenant billing record.  Every handler is
idempotent:

* the event id is claimed in the ``billing_events`` ledger first, so an
  already-applied redelivery is acknowledged without touching state;
* all writes are upserts keyed on processor identifiers (checkout session
  id, customer id);
* trial windows are anchored to the event's own ``created`` timestamp, so
  replays compute identical values.

Status writes are additionally guarded by event time: an event older than
the one that last set the tenant's status does not overwrite it.

Any :class:`~scopostay_core.billing.errors.BillingError` propagates to the
router, which rolls the transaction back (including the ledger claim) and
answers non-2xx so the processor redelivers.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

import stripe
from scopostay_core.billing.errors import (
    AttributionError,
    BillingError,
    ConfigError,
    EventDecodeError,
    InvalidSignatureError,
)
from scopostay_core.billing.events import (
    CheckoutCompletedEvent,
    CheckoutSession,
    EventKind,
    Invoice,
    InvoiceEvent,
    Subscription,
    SubscriptionEvent,
    UnhandledEvent,
    decode_event,
)
from scopostay_core.billing.models import (
    PaymentMethodSummary,
    SubscriptionStatus,
    Tier,
    normalize_processor_status,
)
from scopostay_core.billing.tiers import PriceTierMap
from scopostay_core.state.repository import (
    BillingCustomerRepository,
    BillingEventRepository,
    BillingOrderRepository,
    BillingSubscriptionRepository,
    TenantBillingRepository,
)
from scopostay_core.state.tables import BillingCustomerTable
from sqlalchemy.ext.asyncio import AsyncSession

from scopostay_api.config import APISettings
from scopostay_api.middleware.prometheus import BILLING_WEBHOOK_EVENTS_TOTAL

logger = logging.getLogger(__name__)

AnyEvent = CheckoutCompletedEvent | SubscriptionEvent | InvoiceEvent | UnhandledEvent

# Statuses under which the processor subscription is still the tenant's live one.
_LIVE_SUBSCRIPTION_STATUSES = frozenset(
    {
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.INCOMPLETE,
    }
)


def _card_summary(payment_method: Any) -> PaymentMethodSummary | None:
    """Extract ``{brand, last4}`` from a processor payment method object."""
    if not payment_method or isinstance(payment_method, str):
        return None
    card = payment_method.get("card") or {}
    brand, last4 = card.get("brand"), card.get("last4")
    if not brand or not last4:
        return None
    return PaymentMethodSummary(brand=str(brand), last4=str(last4))


class WebhookEventProcessor:
    """Applies verified processor events to the billing state store.

    Parameters
    ----------
    session:
        Database session without tenant scoping; the tenant is resolved
        from each event's customer id.
    settings:
        API settings containing the webhook secret and trial length.
    tier_map:
        Price→tier table; defaults to the one described by *settings*.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        tier_map: PriceTierMap | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._tier_map = tier_map or settings.price_tier_map()
        self._customers = BillingCustomerRepository(session)
        self._subscriptions = BillingSubscriptionRepository(session)
        self._orders = BillingOrderRepository(session)
        self._ledger = BillingEventRepository(session)

    def _get_stripe(self) -> Any:
        """Return the Stripe module configured with this deployment's key."""
        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def verify(self, payload: bytes, signature_header: str | None) -> None:
        """Check the ``Stripe-Signature`` header against the shared secret.

        Raises
        ------
        InvalidSignatureError
            If the header is missing, malformed, stale, or does not match.
        ConfigError
            If no webhook secret is configured.
        """
        secret = self._settings.stripe_webhook_secret.get_secret_value()
        if not secret:
            raise ConfigError("Webhook signing secret is not configured")
        if not signature_header:
            raise InvalidSignatureError("Missing Stripe-Signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature_header,
                secret,
                tolerance=self._settings.stripe_webhook_tolerance_seconds,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            raise InvalidSignatureError(f"Invalid webhook signature: {exc}") from exc

    async def process(self, payload: bytes, signature_header: str | None) -> dict[str, str]:
        """Verify, decode and apply a raw webhook delivery.

        Returns
        -------
        dict
            ``{"status": ...}``: ``processed``, ``duplicate`` or ``ignored``.
        """
        try:
            self.verify(payload, signature_header)
            event = decode_event(payload)
        except BillingError as exc:
            BILLING_WEBHOOK_EVENTS_TOTAL.labels(event_type="unknown", outcome=exc.error_code).inc()
            raise
        return await self.apply(event)

    async def apply(self, event: AnyEvent) -> dict[str, str]:
        """Apply an already verified and decoded event."""
        if isinstance(event, UnhandledEvent):
            logger.debug("Ignoring unhandled Stripe event %s (%s)", event.id, event.type)
            BILLING_WEBHOOK_EVENTS_TOTAL.labels(event_type="unhandled", outcome="ignored").inc()
            return {"status": "ignored"}

        if not await self._ledger.claim(event_id=event.id, event_type=event.type, event_created_at=event.created):
            logger.info("Duplicate delivery of Stripe event %s (%s); already applied", event.id, event.type)
            BILLING_WEBHOOK_EVENTS_TOTAL.labels(event_type=event.type, outcome="duplicate").inc()
            return {"status": "duplicate"}

        try:
            tenant_id, outcome = await self._dispatch(event)
        except BillingError as exc:
            logger.warning("Stripe event %s (%s) rejected: %s", event.id, event.type, exc.message)
            BILLING_WEBHOOK_EVENTS_TOTAL.labels(event_type=event.type, outcome=exc.error_code).inc()
            raise

        await self._ledger.complete(event.id, outcome=outcome, tenant_id=tenant_id)
        BILLING_WEBHOOK_EVENTS_TOTAL.labels(event_type=event.type, outcome=outcome).inc()
        logger.info(
            "Stripe event %s (%s) %s",
            event.id,
            event.type,
            outcome,
            extra={"billing": {"event_id": event.id, "event_type": event.type, "tenant_id": tenant_id}},
        )
        return {"status": "processed"}

    async def _dispatch(self, event: CheckoutCompletedEvent | SubscriptionEvent | InvoiceEvent) -> tuple[str | None, str]:
        kind = EventKind(event.type)
        if isinstance(event, CheckoutCompletedEvent):
            return await self._handle_checkout_completed(event)
        if isinstance(event, SubscriptionEvent):
            if kind is EventKind.SUBSCRIPTION_DELETED:
                return await self._handle_subscription_deleted(event)
            if kind is EventKind.SUBSCRIPTION_TRIAL_WILL_END:
                return self._handle_trial_will_end(event)
            return await self._handle_subscription_changed(event)
        if kind is EventKind.INVOICE_PAYMENT_FAILED:
            return self._handle_invoice_payment_failed(event)
        return await self._handle_invoice_payment_succeeded(event)

    # ------------------------------------------------------------------
    # Attribution
    # ------------------------------------------------------------------

    async def _attribute(self, customer_id: str, event_id: str) -> BillingCustomerTable:
        row = await self._customers.get_by_customer(customer_id)
        if row is None:
            raise AttributionError(f"Event {event_id} references unknown customer {customer_id}")
        return row

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_checkout_completed(self, event: CheckoutCompletedEvent) -> tuple[str, str]:
        checkout: CheckoutSession = event.object
        mapping = await self._attribute(checkout.customer, event.id)
        tenant_id = mapping.tenant_id
        if checkout.tenant_id and checkout.tenant_id != tenant_id:
            logger.warning(
                "Checkout %s metadata names tenant %s but customer %s belongs to %s; using the customer mapping",
                checkout.id,
                checkout.tenant_id,
                checkout.customer,
                tenant_id,
            )

        billing = TenantBillingRepository(self._session, tenant_id)
        await billing.ensure(owner_user_id=mapping.owner_user_id)

        changes: dict[str, Any] = {"tier": self._tier_from_hint(checkout.tier_hint)}
        if checkout.subscription:
            changes["active_subscription_ref"] = checkout.subscription
        if checkout.skip_trial:
            status = SubscriptionStatus.ACTIVE
            changes.update(trial_started_at=None, trial_ends_at=None)
        else:
            status = SubscriptionStatus.TRIALING
            changes.update(
                trial_started_at=event.created,
                trial_ends_at=event.created + timedelta(days=self._settings.trial_period_days),
            )
        await billing.apply_status(status, event_at=event.created, customer_ref=checkout.customer, **changes)

        await self._orders.upsert(
            checkout_session_id=checkout.id,
            tenant_id=tenant_id,
            customer_ref=checkout.customer,
            payment_intent_ref=checkout.payment_intent,
            amount_subtotal=checkout.amount_subtotal,
            amount_total=checkout.amount_total,
            currency=checkout.currency,
            payment_status=checkout.payment_status,
        )
        return tenant_id, "processed"

    async def _handle_subscription_changed(self, event: SubscriptionEvent) -> tuple[str, str]:
        sub: Subscription = event.object
        mapping = await self._attribute(sub.customer, event.id)
        tenant_id = mapping.tenant_id
        status = self._normalize_status(sub.status, event.id)
        tier = self._tier_map.tier_for_price(sub.price_id)
        billing = TenantBillingRepository(self._session, tenant_id)
        await billing.ensure(owner_user_id=mapping.owner_user_id)

        payment_method = self._payment_method_for_subscription(sub)
        if payment_method is not None:
            await billing.set_payment_method(payment_method)

        await self._subscriptions.upsert(
            customer_id=sub.customer,
            tenant_id=tenant_id,
            subscription_id=sub.id,
            status=sub.status,
            price_id=sub.price_id,
            current_period_start=sub.current_period_start,
            current_period_end=sub.current_period_end,
            cancel_at_period_end=sub.cancel_at_period_end,
            payment_method=payment_method,
            event_at=event.created,
        )

        trial_kwargs: dict[str, Any] = {}
        if status is SubscriptionStatus.TRIALING:
            trial_kwargs = await self._trial_window(billing, sub, event.created)

        await billing.apply_status(
            status,
            event_at=event.created,
            customer_ref=sub.customer,
            tier=tier,
            active_subscription_ref=sub.id if status in _LIVE_SUBSCRIPTION_STATUSES else None,
            current_period_end=sub.current_period_end,
            **trial_kwargs,
        )
        return tenant_id, "processed"

    async def _handle_subscription_deleted(self, event: SubscriptionEvent) -> tuple[str, str]:
        sub: Subscription = event.object
        mapping = await self._attribute(sub.customer, event.id)
        tenant_id = mapping.tenant_id
        billing = TenantBillingRepository(self._session, tenant_id)
        await billing.ensure(owner_user_id=mapping.owner_user_id)

        await self._subscriptions.upsert(
            customer_id=sub.customer,
            tenant_id=tenant_id,
            subscription_id=sub.id,
            status="canceled",
            price_id=sub.price_id,
            current_period_start=sub.current_period_start,
            current_period_end=sub.current_period_end,
            cancel_at_period_end=sub.cancel_at_period_end,
            deleted_at=event.created,
            event_at=event.created,
        )
        await billing.apply_status(
            SubscriptionStatus.CANCELED,
            event_at=event.created,
            customer_ref=sub.customer,
            active_subscription_ref=None,
            current_period_end=sub.current_period_end,
        )
        return tenant_id, "processed"

    def _handle_trial_will_end(self, event: SubscriptionEvent) -> tuple[None, str]:
        sub: Subscription = event.object
        logger.info(
            "Trial for subscription %s (customer %s) ends at %s",
            sub.id,
            sub.customer,
            sub.trial_end.isoformat() if sub.trial_end else "unknown",
        )
        return None, "acknowledged"

    def _handle_invoice_payment_failed(self, event: InvoiceEvent) -> tuple[None, str]:
        invoice: Invoice = event.object
        logger.warning(
            "Payment failed for customer %s (invoice %s, subscription %s)",
            invoice.customer,
            invoice.id,
            invoice.subscription_id,
        )
        return None, "acknowledged"

    async def _handle_invoice_payment_succeeded(self, event: InvoiceEvent) -> tuple[str | None, str]:
        invoice: Invoice = event.object
        subscription_id = invoice.subscription_id
        if not subscription_id:
            logger.info("Invoice %s is not a subscription invoice; nothing to apply", invoice.id)
            return None, "ignored"

        mapping = await self._attribute(invoice.customer, event.id)
        tenant_id = mapping.tenant_id
        billing = TenantBillingRepository(self._session, tenant_id)
        await billing.ensure(owner_user_id=mapping.owner_user_id)

        price_id = invoice.price_id or self._price_for_subscription(subscription_id)
        tier: Tier | None = None
        if price_id is not None:
            tier = self._tier_map.tier_for_price(price_id)
        else:
            logger.warning("Could not determine price for invoice %s; keeping current tier", invoice.id)

        payment_method = self._payment_method_for_invoice(invoice)
        if payment_method is not None:
            await billing.set_payment_method(payment_method)

        await billing.apply_status(
            SubscriptionStatus.ACTIVE,
            event_at=event.created,
            customer_ref=invoice.customer,
            tier=tier,
            active_subscription_ref=subscription_id,
        )
        return tenant_id, "processed"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _normalize_status(raw: str, event_id: str) -> SubscriptionStatus:
        try:
            return normalize_processor_status(raw)
        except ValueError as exc:
            raise EventDecodeError(f"Event {event_id} carries unknown subscription status {raw!r}") from exc

    def _tier_from_hint(self, hint: str | None) -> Tier:
        try:
            return Tier(hint) if hint else Tier.STARTER
        except ValueError:
            logger.warning("Unknown tier %r in checkout metadata; defaulting to %s", hint, Tier.STARTER.value)
            return Tier.STARTER

    async def _trial_window(
        self,
        billing: TenantBillingRepository,
        sub: Subscription,
        event_at: datetime,
    ) -> dict[str, datetime]:
        """Trial bounds for a trialing subscription.

        Prefers the processor's own bounds, then the stored ones, then a
        window of the configured length starting at *event_at*.
        """
        current = await billing.get()
        started = sub.trial_start or (current.trial_started_at if current else None) or event_at
        ends = sub.trial_end or (current.trial_ends_at if current else None)
        if ends is None or ends <= started:
            ends = started + timedelta(days=self._settings.trial_period_days)
        return {"trial_started_at": started, "trial_ends_at": ends}

    def _price_for_subscription(self, subscription_id: str) -> str | None:
        """Best-effort lookup of a subscription's price id at the processor."""
        try:
            sub = self._get_stripe().Subscription.retrieve(subscription_id)
            items = (sub.get("items") or {}).get("data") or []
            return items[0]["price"]["id"] if items else None
        except Exception:
            logger.warning("Failed to fetch subscription %s for tier refresh", subscription_id, exc_info=True)
            return None

    def _payment_method_for_subscription(self, sub: Subscription) -> PaymentMethodSummary | None:
        """Card on the subscription, else the customer's invoice default. Best-effort."""
        try:
            client = self._get_stripe()
            summary = _card_summary(sub.default_payment_method)
            if summary is not None:
                return summary
            if sub.default_payment_method_id:
                return _card_summary(client.PaymentMethod.retrieve(sub.default_payment_method_id))
            customer = client.Customer.retrieve(sub.customer, expand=["invoice_settings.default_payment_method"])
            invoice_settings = customer.get("invoice_settings") or {}
            return _card_summary(invoice_settings.get("default_payment_method"))
        except Exception:
            logger.warning(
                "Failed to fetch payment method for subscription %s; continuing without it",
                sub.id,
                exc_info=True,
            )
            return None

    def _payment_method_for_invoice(self, invoice: Invoice) -> PaymentMethodSummary | None:
        """Card used by the invoice's payment intent. Best-effort."""
        payment_intent_id = invoice.payment_intent_id
        if not payment_intent_id:
            return None
        try:
            client = self._get_stripe()
            intent = client.PaymentIntent.retrieve(payment_intent_id, expand=["payment_method"])
            payment_method = intent.get("payment_method")
            if isinstance(payment_method, str):
                payment_method = client.PaymentMethod.retrieve(payment_method)
            return _card_summary(payment_method)
        except Exception:
            logger.warning(
                "Failed to fetch payment method for invoice %s; continuing without it",
                invoice.id,
                exc_info=True,
            )
            return None
