"""Access decision evaluator.

Pure derivation of what a tenant may do from a billing snapshot and the
current time.  It performs no I/O; callers fetch the snapshot first and
re-run the evaluation on every navigation.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from scopostay_core.billing.models import SubscriptionStatus, TenantBillingSnapshot, ensure_utc

_BLOCKING_STATUSES = frozenset(
    {
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
        SubscriptionStatus.INCOMPLETE,
    }
)

_ACCESS_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


@dataclass(frozen=True, slots=True)
class AccessDecision:
    """Evaluator output for one snapshot at one instant."""

    is_trial_active: bool
    is_trial_expired: bool
    has_active_subscription: bool
    needs_payment_setup: bool
    requires_payment: bool

    def to_dict(self) -> dict[str, bool]:
        return {
            "is_trial_active": self.is_trial_active,
            "is_trial_expired": self.is_trial_expired,
            "has_active_subscription": self.has_active_subscription,
            "needs_payment_setup": self.needs_payment_setup,
            "requires_payment": self.requires_payment,
        }


def evaluate_access(snapshot: TenantBillingSnapshot, now: datetime) -> AccessDecision:
    """Derive the access decision for *snapshot* at *now*.

    A trialing record whose ``trial_ends_at`` is missing is treated as an
    expired trial: the trial window cannot be shown to be open.

    Parameters
    ----------
    snapshot:
        The tenant's billing record as persisted.
    now:
        Evaluation instant.  Naive datetimes are interpreted as UTC.
    """
    now = ensure_utc(now)
    status = snapshot.subscription_status
    trialing = status is SubscriptionStatus.TRIALING

    trial_open = False
    if trialing and snapshot.trial_ends_at is not None:
        trial_open = ensure_utc(snapshot.trial_ends_at) > now

    is_trial_active = trialing and trial_open
    is_trial_expired = trialing and not trial_open

    return AccessDecision(
        is_trial_active=is_trial_active,
        is_trial_expired=is_trial_expired,
        has_active_subscription=status in _ACCESS_STATUSES,
        needs_payment_setup=(
            trialing and snapshot.customer_ref is not None and snapshot.payment_method is None
        ),
        requires_payment=is_trial_expired or status in _BLOCKING_STATUSES,
    )
