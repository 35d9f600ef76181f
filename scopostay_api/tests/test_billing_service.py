"""Unit tests for BillingService.

All Stripe calls are served by the ``mock_stripe`` fixture; the real Stripe
exception classes are raised from it where failure paths are exercised.
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest
import stripe
from scopostay_core.billing.errors import ConfigError, ProcessorUnavailableError, StaleCustomerError
from scopostay_core.billing.models import PaymentMethodSummary, SubscriptionStatus, Tier
from scopostay_core.state.repository import (
    BillingCustomerRepository,
    BillingOrderRepository,
    BillingSubscriptionRepository,
    TenantBillingRepository,
)

from scopostay_api.services.billing_service import BillingService

TENANT = "tenant-a"
CUSTOMER = "cus_tenant_a"
ADMIN = "user-admin"


@pytest.fixture()
def service(db_session, test_settings, mock_stripe):
    svc = BillingService(db_session, test_settings, tenant_id=TENANT)
    with patch.object(svc, "_get_stripe", return_value=mock_stripe):
        yield svc


async def _checkout(service: BillingService, *, price_id: str = "price_pro_test", skip_trial: bool = False) -> dict:
    return await service.create_checkout_session(
        price_id=price_id,
        mode="subscription",
        success_url="https://app.example.com/billing/success",
        cancel_url="https://app.example.com/billing",
        skip_trial=skip_trial,
        user_id=ADMIN,
        customer_email="owner@example.com",
    )


# ---------------------------------------------------------------------------
# create_checkout_session
# ---------------------------------------------------------------------------


class TestCreateCheckoutSession:
    """Verify customer provisioning and checkout parameters."""

    @pytest.mark.asyncio
    async def test_first_checkout_creates_customer(self, service, db_session, mock_stripe) -> None:
        result = await _checkout(service)

        assert result == {"session_url": "https://checkout.stripe.com/c/pay/cs_test_1"}
        mock_stripe.Customer.create.assert_called_once()
        create_kwargs = mock_stripe.Customer.create.call_args.kwargs
        assert create_kwargs["idempotency_key"] == "scopostay-customer-tenant-a"
        assert create_kwargs["metadata"] == {"tenant_id": TENANT, "user_id": ADMIN}
        assert create_kwargs["email"] == "owner@example.com"

        mapping = await BillingCustomerRepository(db_session).get_by_tenant(TENANT)
        assert mapping.customer_id == CUSTOMER
        snapshot = await TenantBillingRepository(db_session, TENANT).snapshot()
        assert snapshot.customer_ref == CUSTOMER
        assert snapshot.owner_user_id == ADMIN
        assert snapshot.subscription_status is SubscriptionStatus.NONE

    @pytest.mark.asyncio
    async def test_session_carries_trial_and_metadata(self, service, mock_stripe) -> None:
        await _checkout(service)

        params = mock_stripe.checkout.Session.create.call_args.kwargs
        assert params["customer"] == CUSTOMER
        assert params["line_items"] == [{"price": "price_pro_test", "quantity": 1}]
        assert params["payment_method_collection"] == "always"
        assert params["subscription_data"]["trial_period_days"] == 14
        assert params["metadata"] == {
            "tenant_id": TENANT,
            "admin_id": ADMIN,
            "tier": "professional",
            "skip_trial": "false",
        }

    @pytest.mark.asyncio
    async def test_skip_trial_omits_trial_period(self, service, mock_stripe) -> None:
        await _checkout(service, skip_trial=True)

        params = mock_stripe.checkout.Session.create.call_args.kwargs
        assert "trial_period_days" not in params["subscription_data"]
        assert params["metadata"]["skip_trial"] == "true"

    @pytest.mark.asyncio
    async def test_unknown_price_is_rejected_before_any_processor_call(self, service, mock_stripe) -> None:
        with pytest.raises(ConfigError):
            await _checkout(service, price_id="price_unknown")
        mock_stripe.Customer.create.assert_not_called()
        mock_stripe.checkout.Session.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_existing_customer_is_verified_and_reused(
        self, service, db_session, seed_customer, mock_stripe
    ) -> None:
        await seed_customer(db_session)

        await _checkout(service)

        mock_stripe.Customer.create.assert_not_called()
        mock_stripe.Customer.retrieve.assert_called_once_with(CUSTOMER)
        assert mock_stripe.checkout.Session.create.call_args.kwargs["customer"] == CUSTOMER

    @pytest.mark.asyncio
    async def test_deleted_customer_is_stale(self, service, db_session, seed_customer, mock_stripe) -> None:
        await seed_customer(db_session)
        mock_stripe.Customer.retrieve.return_value = {"id": CUSTOMER, "deleted": True}

        with pytest.raises(StaleCustomerError):
            await _checkout(service)
        mock_stripe.checkout.Session.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_customer_is_stale(self, service, db_session, seed_customer, mock_stripe) -> None:
        await seed_customer(db_session)
        mock_stripe.Customer.retrieve.side_effect = stripe.InvalidRequestError(
            "No such customer", None, code="resource_missing"
        )

        with pytest.raises(StaleCustomerError) as exc_info:
            await _checkout(service)
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_processor_outage_is_unavailable(self, service, mock_stripe) -> None:
        mock_stripe.checkout.Session.create.side_effect = stripe.APIConnectionError("connection reset")

        with pytest.raises(ProcessorUnavailableError) as exc_info:
            await _checkout(service)
        assert exc_info.value.status_code == 502
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_concurrent_initiation_converges_on_first_customer(
        self, service, db_session, mock_stripe
    ) -> None:
        """A customer claimed by a parallel request wins over the one created here."""
        customers = BillingCustomerRepository(db_session)
        await TenantBillingRepository(db_session, TENANT).ensure(owner_user_id=ADMIN)
        first = await customers.claim(tenant_id=TENANT, customer_id="cus_first", owner_user_id=ADMIN)

        # The lookup misses as if the parallel claim had not committed yet.
        with patch.object(service._customers, "get_by_tenant", AsyncMock(side_effect=[None, first])):
            await _checkout(service)

        mock_stripe.Customer.create.assert_called_once()
        assert mock_stripe.checkout.Session.create.call_args.kwargs["customer"] == "cus_first"
        snapshot = await TenantBillingRepository(db_session, TENANT).snapshot()
        assert snapshot.customer_ref == "cus_first"


# ---------------------------------------------------------------------------
# create_portal_session
# ---------------------------------------------------------------------------


class TestCreatePortalSession:
    @pytest.mark.asyncio
    async def test_requires_customer(self, service) -> None:
        with pytest.raises(ConfigError, match="No billing customer"):
            await service.create_portal_session("https://app.example.com/billing")

    @pytest.mark.asyncio
    async def test_returns_portal_url(self, service, db_session, seed_customer, mock_stripe) -> None:
        await seed_customer(db_session)

        result = await service.create_portal_session("https://app.example.com/billing")

        assert result == {"url": "https://billing.stripe.com/p/session/test"}
        mock_stripe.billing_portal.Session.create.assert_called_once_with(
            customer=CUSTOMER, return_url="https://app.example.com/billing"
        )


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


class TestReadSide:
    @pytest.mark.asyncio
    async def test_subscription_info_merges_mirror_and_live_status(
        self, service, db_session, seed_customer, mock_stripe
    ) -> None:
        await seed_customer(db_session)
        billing = TenantBillingRepository(db_session, TENANT)
        await billing.apply_status(
            SubscriptionStatus.ACTIVE,
            event_at=datetime(2025, 1, 1, tzinfo=UTC),
            customer_ref=CUSTOMER,
            tier=Tier.PROFESSIONAL,
            active_subscription_ref="sub_1",
        )
        await billing.set_payment_method(PaymentMethodSummary(brand="visa", last4="4242"))
        await BillingSubscriptionRepository(db_session).upsert(
            customer_id=CUSTOMER,
            tenant_id=TENANT,
            subscription_id="sub_1",
            status="active",
            price_id="price_pro_test",
        )

        info = await service.get_subscription_info()

        assert info["subscription_status"] == "active"
        assert info["tier"] == "professional"
        assert info["subscription_id"] == "sub_1"
        assert info["price_id"] == "price_pro_test"
        assert info["payment_method"] == {"brand": "visa", "last4": "4242"}
        assert info["live_status"] == "active"

    @pytest.mark.asyncio
    async def test_subscription_info_survives_processor_failure(
        self, service, db_session, seed_customer, mock_stripe
    ) -> None:
        await seed_customer(db_session)
        await TenantBillingRepository(db_session, TENANT).apply_status(
            SubscriptionStatus.ACTIVE,
            event_at=datetime(2025, 1, 1, tzinfo=UTC),
            customer_ref=CUSTOMER,
            active_subscription_ref="sub_1",
        )
        mock_stripe.Subscription.retrieve.side_effect = stripe.APIConnectionError("timeout")

        info = await service.get_subscription_info()
        assert info["subscription_status"] == "active"
        assert info["live_status"] is None

    @pytest.mark.asyncio
    async def test_subscription_info_without_subscription_skips_processor(self, service, mock_stripe) -> None:
        info = await service.get_subscription_info()
        assert info["subscription_status"] == "none"
        assert info["price_id"] is None
        mock_stripe.Subscription.retrieve.assert_not_called()

    @pytest.mark.asyncio
    async def test_list_orders_is_tenant_scoped(self, service, db_session) -> None:
        orders = BillingOrderRepository(db_session)
        for tenant_id, session_id in [(TENANT, "cs_1"), (TENANT, "cs_2"), ("tenant-b", "cs_3")]:
            await orders.upsert(
                checkout_session_id=session_id,
                tenant_id=tenant_id,
                customer_ref="cus_x",
                payment_intent_ref=None,
                amount_subtotal=2900,
                amount_total=2900,
                currency="usd",
                payment_status="paid",
            )

        rows, total = await service.list_orders(limit=10)
        assert total == 2
        assert {r.checkout_session_id for r in rows} == {"cs_1", "cs_2"}

    @pytest.mark.asyncio
    async def test_billing_state_of_new_tenant(self, service) -> None:
        snapshot = await service.get_billing_state()
        assert snapshot.tenant_id == TENANT
        assert snapshot.subscription_status is SubscriptionStatus.NONE
