"""Processor price identifier to plan tier mapping.

A single :class:`PriceTierMap` instance is built from settings and handed
to both the checkout initiator and the webhook processor, so the two can
never disagree about which price belongs to which tier.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from scopostay_core.billing.errors import ConfigError
from scopostay_core.billing.models import Tier

logger = logging.getLogger(__name__)

# Live price ids of the hosted product catalogue.
DEFAULT_PRICE_IDS: dict[Tier, str] = {
    Tier.STARTER: "price_1RJXhuCDShtAyWWl8VhTAtNj",
    Tier.PROFESSIONAL: "price_1RJXjHCDShtAyWWllZtomnFA",
    Tier.ENTERPRISE: "price_1RJXjjCDShtAyWWlL0WQc0I8",
}


@dataclass(frozen=True, slots=True)
class PlanInfo:
    """Display metadata for one tier of the plan catalogue."""

    tier: Tier
    name: str
    description: str
    monthly_price_usd: int
    features: tuple[str, ...]
    popular: bool = False


PLAN_CATALOG: tuple[PlanInfo, ...] = (
    PlanInfo(
        tier=Tier.STARTER,
        name="Starter",
        description="Perfect for individuals or small rental businesses",
        monthly_price_usd=29,
        features=(
            "Up to 10 properties",
            "2 GB Storage",
            "Up to 1 user",
            "Basic AI damage detection",
            "Standard inspection templates",
            "PDF report generation",
            "Email support",
        ),
    ),
    PlanInfo(
        tier=Tier.PROFESSIONAL,
        name="Professional",
        description="For growing businesses with multiple properties",
        monthly_price_usd=79,
        features=(
            "Up to 45 properties",
            "5 GB Storage",
            "Up to 3 users",
            "Advanced AI damage detection",
            "Custom inspection templates",
            "Branded PDF reports",
            "Priority support",
        ),
        popular=True,
    ),
    PlanInfo(
        tier=Tier.ENTERPRISE,
        name="Enterprise",
        description="For large property management companies",
        monthly_price_usd=199,
        features=(
            "Unlimited properties",
            "Unlimited storage",
            "Unlimited users",
            "Enterprise-grade AI detection",
            "Team collaboration tools",
            "API access",
            "White-label reports",
        ),
    ),
)


class PriceTierMap:
    """Bidirectional lookup between processor price ids and tiers.

    Parameters
    ----------
    price_ids:
        Mapping of tier to the processor price id sold for that tier.
        Blank price ids are skipped (tier not for sale).
    """

    def __init__(self, price_ids: Mapping[Tier, str]) -> None:
        self._tier_to_price: dict[Tier, str] = {tier: pid for tier, pid in price_ids.items() if pid}
        self._price_to_tier: dict[str, Tier] = {}
        for tier, price_id in self._tier_to_price.items():
            if price_id in self._price_to_tier:
                raise ValueError(
                    f"Price id {price_id!r} is mapped to both "
                    f"{self._price_to_tier[price_id].value!r} and {tier.value!r}"
                )
            self._price_to_tier[price_id] = tier

    def tier_for_price(self, price_id: str | None) -> Tier:
        """Resolve a price id, failing open to :attr:`Tier.STARTER`.

        Used on the webhook path, where an unmapped price must never cause
        a billing event to be dropped.
        """
        if price_id:
            tier = self._price_to_tier.get(price_id)
            if tier is not None:
                return tier
        logger.warning("Unmapped price id %r; defaulting tier to %s", price_id, Tier.STARTER.value)
        return Tier.STARTER

    def require_tier(self, price_id: str) -> Tier:
        """Resolve a price id strictly; raise :class:`ConfigError` if unknown."""
        tier = self._price_to_tier.get(price_id)
        if tier is None:
            raise ConfigError(f"Unknown price id {price_id!r}: no plan tier is configured for it")
        return tier

    def price_for_tier(self, tier: Tier) -> str:
        """Return the price id sold for *tier*; raise :class:`ConfigError` if none."""
        price_id = self._tier_to_price.get(tier)
        if price_id is None:
            raise ConfigError(f"No price id configured for tier {tier.value!r}")
        return price_id

    def items(self) -> list[tuple[str, Tier]]:
        """Return ``(price_id, tier)`` pairs ordered by tier."""
        order = list(Tier)
        return sorted(self._price_to_tier.items(), key=lambda kv: order.index(kv[1]))
