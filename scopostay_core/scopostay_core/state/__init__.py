"""Billing state persistence layer."""

from scopostay_core.state.database import get_engine, session_scope, set_tenant_context
from scopostay_core.state.repository import (
    BillingCustomerRepository,
    BillingEventRepository,
    BillingOrderRepository,
    BillingSubscriptionRepository,
    TenantBillingRepository,
)

__all__ = [
    "BillingCustomerRepository",
    "BillingEventRepository",
    "BillingOrderRepository",
    "BillingSubscriptionRepository",
    "TenantBillingRepository",
    "get_engine",
    "session_scope",
    "set_tenant_context",
]
