"""Tests for scopostay_core.billing.models."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest
from scopostay_core.billing.models import (
    PaymentMethodSummary,
    SubscriptionStatus,
    TenantBillingSnapshot,
    Tier,
    ensure_utc,
    normalize_processor_status,
)


class TestNormalizeProcessorStatus:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("trialing", SubscriptionStatus.TRIALING),
            ("active", SubscriptionStatus.ACTIVE),
            ("past_due", SubscriptionStatus.PAST_DUE),
            ("canceled", SubscriptionStatus.CANCELED),
            ("incomplete", SubscriptionStatus.INCOMPLETE),
            ("unpaid", SubscriptionStatus.PAST_DUE),
            ("incomplete_expired", SubscriptionStatus.CANCELED),
            ("paused", SubscriptionStatus.CANCELED),
            (" Active ", SubscriptionStatus.ACTIVE),
        ],
    )
    def test_mapping(self, raw: str, expected: SubscriptionStatus) -> None:
        assert normalize_processor_status(raw) is expected

    def test_none_is_not_a_processor_status(self) -> None:
        with pytest.raises(ValueError):
            normalize_processor_status("none")

    def test_unknown_status_raises(self) -> None:
        with pytest.raises(ValueError):
            normalize_processor_status("frozen")


class TestSnapshotSerialisation:
    def test_dict_round_trip(self) -> None:
        started = datetime(2025, 1, 1, tzinfo=UTC)
        snapshot = TenantBillingSnapshot(
            tenant_id="tenant-a",
            owner_user_id="user-1",
            customer_ref="cus_123",
            subscription_status=SubscriptionStatus.TRIALING,
            tier=Tier.PROFESSIONAL,
            trial_started_at=started,
            trial_ends_at=started + timedelta(days=14),
            active_subscription_ref="sub_1",
            payment_method=PaymentMethodSummary(brand="visa", last4="4242"),
        )
        assert TenantBillingSnapshot.from_dict(snapshot.to_dict()) == snapshot

    def test_from_dict_defaults(self) -> None:
        snapshot = TenantBillingSnapshot.from_dict({"tenant_id": "tenant-a"})
        assert snapshot.subscription_status is SubscriptionStatus.NONE
        assert snapshot.tier is Tier.STARTER
        assert snapshot.payment_method is None


class TestEnsureUtc:
    def test_naive_is_assumed_utc(self) -> None:
        assert ensure_utc(datetime(2025, 1, 1)).tzinfo is UTC

    def test_offset_is_converted(self) -> None:
        value = datetime(2025, 1, 1, 2, 0, tzinfo=timezone(timedelta(hours=2)))
        assert ensure_utc(value) == datetime(2025, 1, 1, 0, 0, tzinfo=UTC)
