"""Shared fixtures for Scopostay API tests.

Provides settings, an in-memory SQLite database wired through the real
session dependencies, a mocked Stripe module, signed webhook payloads and
an async httpx client bound to the FastAPI app.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from scopostay_core.billing.models import Tier
from scopostay_core.state.repository import BillingCustomerRepository, TenantBillingRepository
from scopostay_core.state.sqlite_adapter import create_local_tables
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scopostay_api.config import APISettings
from scopostay_api.dependencies import dispose_engine, get_session_factory, get_settings, init_engine
from scopostay_api.main import create_app
from scopostay_api.middleware.auth import build_token_manager

TEST_JWT_SECRET = "test-secret-key-for-scopostay-tests"
WEBHOOK_SECRET = "whsec_test_secret"

PRICE_STARTER = "price_starter_test"
PRICE_PRO = "price_pro_test"
PRICE_ENT = "price_ent_test"

TENANT = "tenant-a"
CUSTOMER = "cus_tenant_a"
ADMIN_USER = "user-admin"

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        debug=True,
        database_url="sqlite+aiosqlite://",
        platform_env="dev",
        cors_origins=["http://localhost:5173"],
        auth_jwt_secret=TEST_JWT_SECRET,
        billing_enabled=True,
        stripe_secret_key="sk_test_xxx",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_id_starter=PRICE_STARTER,
        stripe_price_id_professional=PRICE_PRO,
        stripe_price_id_enterprise=PRICE_ENT,
        trial_period_days=14,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def session_factory(test_settings: APISettings) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Initialise the app's global engine on an in-memory SQLite database.

    The request dependencies draw sessions from the same factory, so data
    committed by a test is visible to the endpoints and vice versa.
    """
    engine = init_engine(test_settings)
    await create_local_tables(engine)
    yield get_session_factory()
    await dispose_engine()


@pytest_asyncio.fixture()
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


async def _seed_customer(
    session: AsyncSession,
    *,
    tenant_id: str = TENANT,
    customer_id: str = CUSTOMER,
    owner_user_id: str = ADMIN_USER,
) -> None:
    """Create the tenant record and customer mapping a checkout would leave behind."""
    await TenantBillingRepository(session, tenant_id).ensure(owner_user_id=owner_user_id)
    await BillingCustomerRepository(session).claim(
        tenant_id=tenant_id,
        customer_id=customer_id,
        owner_user_id=owner_user_id,
    )
    await TenantBillingRepository(session, tenant_id).attach_customer(customer_id)


@pytest.fixture()
def seed_customer():
    """Return a coroutine function seeding a tenant with a processor customer."""
    return _seed_customer


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


def _card(brand: str = "visa", last4: str = "4242", pm_id: str = "pm_1") -> dict[str, Any]:
    return {"id": pm_id, "object": "payment_method", "card": {"brand": brand, "last4": last4}}


@pytest.fixture()
def mock_stripe() -> MagicMock:
    """A stand-in for the ``stripe`` module with plausible return values."""
    client = MagicMock()
    client.Customer.create.return_value = {"id": CUSTOMER}
    client.Customer.retrieve.return_value = {
        "id": CUSTOMER,
        "invoice_settings": {"default_payment_method": _card()},
    }
    client.checkout.Session.create.return_value = {
        "id": "cs_test_1",
        "url": "https://checkout.stripe.com/c/pay/cs_test_1",
    }
    client.billing_portal.Session.create.return_value = {"url": "https://billing.stripe.com/p/session/test"}
    client.Subscription.retrieve.return_value = {
        "id": "sub_1",
        "status": "active",
        "cancel_at_period_end": False,
        "items": {"data": [{"price": {"id": PRICE_PRO}}]},
    }
    client.PaymentIntent.retrieve.return_value = {"id": "pi_1", "payment_method": _card("mastercard", "5555")}
    client.PaymentMethod.retrieve.return_value = _card()
    return client


# ---------------------------------------------------------------------------
# Webhook payloads
# ---------------------------------------------------------------------------


def _make_event(
    event_type: str,
    obj: dict[str, Any],
    *,
    event_id: str = "evt_1",
    created: int = 1_735_689_600,
) -> dict[str, Any]:
    """Build a processor event envelope."""
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "livemode": False,
        "data": {"object": obj},
    }


def _sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Return a ``Stripe-Signature`` header value for *payload*."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.{payload.decode('utf-8')}".encode()
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def _encode(event: dict[str, Any]) -> bytes:
    return json.dumps(event).encode("utf-8")


@pytest.fixture()
def make_event():
    return _make_event


@pytest.fixture()
def sign_payload():
    return _sign_payload


@pytest.fixture()
def encode_event():
    return _encode


@pytest.fixture()
def card():
    return _card


# ---------------------------------------------------------------------------
# FastAPI client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(test_settings: APISettings, session_factory: async_sessionmaker[AsyncSession]):
    """Create a FastAPI app with the test settings injected."""
    application = create_app(test_settings)
    application.dependency_overrides[get_settings] = lambda: test_settings
    return application


@pytest.fixture()
def make_token(test_settings: APISettings):
    """Return a factory minting real HS256 session tokens for the test secret."""
    manager = build_token_manager(test_settings)

    def _make(
        *,
        tenant_id: str = TENANT,
        sub: str = ADMIN_USER,
        role: str = "admin",
        email: str | None = "owner@example.com",
        ttl_seconds: int | None = None,
    ) -> str:
        return manager.generate_token(sub, tenant_id, role=role, email=email, ttl_seconds=ttl_seconds)

    return _make


@pytest_asyncio.fixture()
async def client(app, make_token) -> AsyncGenerator[AsyncClient, None]:
    """Yield an async httpx client bound to the test app, authenticated as a tenant admin."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"Authorization": f"Bearer {make_token()}"},
    ) as ac:
        yield ac


@pytest.fixture()
def tier_prices() -> dict[Tier, str]:
    return {Tier.STARTER: PRICE_STARTER, Tier.PROFESSIONAL: PRICE_PRO, Tier.ENTERPRISE: PRICE_ENT}
