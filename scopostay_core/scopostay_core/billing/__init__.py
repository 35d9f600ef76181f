"""Billing reconciliation domain: status model, access evaluation, routing."""

from scopostay_core.billing.access import AccessDecision, evaluate_access
from scopostay_core.billing.errors import (
    AttributionError,
    AuthError,
    BillingError,
    ConfigError,
    EventDecodeError,
    InvalidSignatureError,
    ProcessorUnavailableError,
    StaleCustomerError,
)
from scopostay_core.billing.models import (
    PaymentMethodSummary,
    SubscriptionStatus,
    TenantBillingSnapshot,
    Tier,
)
from scopostay_core.billing.route_gate import GateResult, GateRole, gate_route
from scopostay_core.billing.tiers import PriceTierMap

__all__ = [
    "AccessDecision",
    "AttributionError",
    "AuthError",
    "BillingError",
    "ConfigError",
    "EventDecodeError",
    "GateResult",
    "GateRole",
    "InvalidSignatureError",
    "PaymentMethodSummary",
    "PriceTierMap",
    "ProcessorUnavailableError",
    "StaleCustomerError",
    "SubscriptionStatus",
    "TenantBillingSnapshot",
    "Tier",
    "evaluate_access",
    "gate_route",
]
