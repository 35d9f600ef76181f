"""Integration tests for the billing router.

Requests go through the full middleware stack (authentication, tracing,
metrics) against the in-memory database.  Stripe is mocked at the service
classes; webhook payloads are signed with the test secret.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from scopostay_core.state.repository import BillingEventRepository

from scopostay_api.dependencies import get_settings
from scopostay_api.services.billing_service import BillingService
from scopostay_api.services.webhook_service import WebhookEventProcessor

TENANT = "tenant-a"
CUSTOMER = "cus_tenant_a"


@pytest.fixture()
def stripe_patched(mock_stripe):
    with (
        patch.object(BillingService, "_get_stripe", return_value=mock_stripe),
        patch.object(WebhookEventProcessor, "_get_stripe", return_value=mock_stripe),
    ):
        yield mock_stripe


@pytest_asyncio.fixture()
async def seeded(session_factory, seed_customer) -> None:
    """Commit a tenant with a processor customer before any request runs."""
    async with session_factory() as session:
        await seed_customer(session)
        await session.commit()


@pytest_asyncio.fixture()
async def anon_client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def _checkout_body(price_id: str = "price_pro_test") -> dict:
    return {
        "price_id": price_id,
        "success_url": "https://app.example.com/billing/success",
        "cancel_url": "https://app.example.com/billing",
    }


def _checkout_completed(make_event, **metadata: str) -> dict:
    return make_event(
        "checkout.session.completed",
        {
            "id": "cs_test_1",
            "customer": CUSTOMER,
            "subscription": "sub_1",
            "payment_status": "no_payment_required",
            "metadata": {"tenant_id": TENANT, "tier": "professional", **metadata},
        },
    )


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class TestPlans:
    @pytest.mark.asyncio
    async def test_plans_carry_configured_price_ids(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/billing/plans")
        assert resp.status_code == 200
        plans = {p["tier"]: p for p in resp.json()["plans"]}
        assert set(plans) == {"starter", "professional", "enterprise"}
        assert plans["professional"]["price_id"] == "price_pro_test"
        assert plans["enterprise"]["price_id"] == "price_ent_test"


# ---------------------------------------------------------------------------
# Checkout / portal
# ---------------------------------------------------------------------------


class TestCheckout:
    @pytest.mark.asyncio
    async def test_admin_gets_session_url(self, client: AsyncClient, stripe_patched) -> None:
        resp = await client.post("/api/v1/billing/checkout", json=_checkout_body())
        assert resp.status_code == 200
        assert resp.json() == {"session_url": "https://checkout.stripe.com/c/pay/cs_test_1"}

        params = stripe_patched.checkout.Session.create.call_args.kwargs
        assert params["metadata"]["admin_id"] == "user-admin"
        assert params["metadata"]["tenant_id"] == TENANT
        assert stripe_patched.Customer.create.call_args.kwargs["email"] == "owner@example.com"

    @pytest.mark.asyncio
    async def test_member_is_forbidden(self, app, make_token, stripe_patched) -> None:
        headers = {"Authorization": f"Bearer {make_token(role='member', sub='user-member')}"}
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test", headers=headers) as ac:
            resp = await ac.post("/api/v1/billing/checkout", json=_checkout_body())
        assert resp.status_code == 403
        stripe_patched.checkout.Session.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_price_is_config_error(self, client: AsyncClient, stripe_patched) -> None:
        resp = await client.post("/api/v1/billing/checkout", json=_checkout_body("price_bogus"))
        assert resp.status_code == 400
        assert resp.json()["error"] == "config_error"

    @pytest.mark.asyncio
    async def test_deleted_customer_is_conflict(self, client: AsyncClient, seeded, stripe_patched) -> None:
        stripe_patched.Customer.retrieve.return_value = {"id": CUSTOMER, "deleted": True}
        resp = await client.post("/api/v1/billing/checkout", json=_checkout_body())
        assert resp.status_code == 409
        assert resp.json()["error"] == "stale_customer"

    @pytest.mark.asyncio
    async def test_disabled_billing_is_not_found(self, app, client: AsyncClient, test_settings) -> None:
        disabled = test_settings.model_copy(update={"billing_enabled": False})
        app.dependency_overrides[get_settings] = lambda: disabled
        resp = await client.post("/api/v1/billing/checkout", json=_checkout_body())
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_mode_is_rejected(self, client: AsyncClient) -> None:
        body = {**_checkout_body(), "mode": "setup"}
        resp = await client.post("/api/v1/billing/checkout", json=body)
        assert resp.status_code == 422


class TestPortal:
    @pytest.mark.asyncio
    async def test_portal_without_customer_is_config_error(self, client: AsyncClient, stripe_patched) -> None:
        resp = await client.post("/api/v1/billing/portal", json={"return_url": "https://app.example.com/billing"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "config_error"

    @pytest.mark.asyncio
    async def test_portal_url(self, client: AsyncClient, seeded, stripe_patched) -> None:
        resp = await client.post("/api/v1/billing/portal", json={"return_url": "https://app.example.com/billing"})
        assert resp.status_code == 200
        assert resp.json()["url"] == "https://billing.stripe.com/p/session/test"


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_token_is_auth_error(self, anon_client: AsyncClient) -> None:
        resp = await anon_client.get("/api/v1/billing/state")
        assert resp.status_code == 401
        assert resp.json()["error"] == "auth_error"

    @pytest.mark.asyncio
    async def test_expired_token_is_auth_error(self, app, make_token) -> None:
        headers = {"Authorization": f"Bearer {make_token(ttl_seconds=-60)}"}
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test", headers=headers) as ac:
            resp = await ac.get("/api/v1/billing/state")
        assert resp.status_code == 401
        assert resp.json()["error"] == "auth_error"

    @pytest.mark.asyncio
    async def test_non_bearer_scheme_is_rejected(self, anon_client: AsyncClient) -> None:
        resp = await anon_client.get("/api/v1/billing/state", headers={"Authorization": "Basic abc"})
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class TestWebhooks:
    @pytest.mark.asyncio
    async def test_signed_checkout_completion_starts_trial(
        self,
        client: AsyncClient,
        anon_client: AsyncClient,
        seeded,
        stripe_patched,
        make_event,
        encode_event,
        sign_payload,
    ) -> None:
        payload = encode_event(_checkout_completed(make_event))
        resp = await anon_client.post(
            "/api/v1/billing/webhooks",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload), "Content-Type": "application/json"},
        )
        assert resp.status_code == 200
        assert resp.json() == {"status": "processed"}

        state = (await client.get("/api/v1/billing/state")).json()
        assert state["subscription_status"] == "trialing"
        assert state["tier"] == "professional"
        assert state["trial_ends_at"].startswith("2025-01-15")
        assert state["billing_enabled"] is True

        orders = (await client.get("/api/v1/billing/orders")).json()
        assert orders["total"] == 1
        assert orders["orders"][0]["checkout_session_id"] == "cs_test_1"

    @pytest.mark.asyncio
    async def test_redelivery_is_acknowledged_as_duplicate(
        self, anon_client: AsyncClient, seeded, stripe_patched, make_event, encode_event, sign_payload
    ) -> None:
        payload = encode_event(_checkout_completed(make_event))
        headers = {"Stripe-Signature": sign_payload(payload)}

        first = await anon_client.post("/api/v1/billing/webhooks", content=payload, headers=headers)
        second = await anon_client.post("/api/v1/billing/webhooks", content=payload, headers=headers)
        assert first.json()["status"] == "processed"
        assert second.status_code == 200
        assert second.json()["status"] == "duplicate"

    @pytest.mark.asyncio
    async def test_unsigned_delivery_is_rejected(
        self, anon_client: AsyncClient, seeded, make_event, encode_event
    ) -> None:
        payload = encode_event(_checkout_completed(make_event))
        resp = await anon_client.post("/api/v1/billing/webhooks", content=payload)
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_signature"

    @pytest.mark.asyncio
    async def test_unattributable_event_is_rolled_back(
        self, anon_client: AsyncClient, session_factory, stripe_patched, make_event, encode_event, sign_payload
    ) -> None:
        """An event for an unknown customer fails and leaves no ledger entry, so redelivery can succeed."""
        payload = encode_event(_checkout_completed(make_event))
        resp = await anon_client.post(
            "/api/v1/billing/webhooks", content=payload, headers={"Stripe-Signature": sign_payload(payload)}
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "attribution_error"

        async with session_factory() as session:
            assert await BillingEventRepository(session).count() == 0

    @pytest.mark.asyncio
    async def test_disabled_billing_acknowledges_without_processing(
        self, app, anon_client: AsyncClient, test_settings, make_event, encode_event
    ) -> None:
        disabled = test_settings.model_copy(update={"billing_enabled": False})
        app.dependency_overrides[get_settings] = lambda: disabled
        payload = encode_event(_checkout_completed(make_event))
        resp = await anon_client.post("/api/v1/billing/webhooks", content=payload)
        assert resp.status_code == 200
        assert resp.json() == {"status": "billing_disabled"}


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


class TestReadSide:
    @pytest.mark.asyncio
    async def test_state_of_new_tenant(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/billing/state")
        assert resp.status_code == 200
        body = resp.json()
        assert body["tenant_id"] == TENANT
        assert body["subscription_status"] == "none"
        assert body["payment_method"] is None

    @pytest.mark.asyncio
    async def test_member_may_read_state(self, app, make_token) -> None:
        headers = {"Authorization": f"Bearer {make_token(role='member', sub='user-member')}"}
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test", headers=headers) as ac:
            resp = await ac.get("/api/v1/billing/state")
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_subscription_when_billing_disabled(self, app, client: AsyncClient, test_settings) -> None:
        disabled = test_settings.model_copy(update={"billing_enabled": False})
        app.dependency_overrides[get_settings] = lambda: disabled
        resp = await client.get("/api/v1/billing/subscription")
        assert resp.status_code == 200
        assert resp.json()["billing_enabled"] is False
        assert resp.json()["subscription_status"] == "none"

    @pytest.mark.asyncio
    async def test_orders_limit_is_bounded(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/billing/orders", params={"limit": 500})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_orders_empty(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/billing/orders")
        assert resp.status_code == 200
        assert resp.json() == {"orders": [], "total": 0, "limit": 20, "offset": 0}
