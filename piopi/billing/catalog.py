"""
Static plan catalog.

This is the single source of truth for tier limits and prices. It is code,
not a table: prices change with a deploy, never at runtime, so every
history row can be checked against the catalog of its release.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from piopi.billing.constants import YEARLY_PRICE_MULTIPLIER
from piopi.billing.constants import OverflowPolicy
from piopi.billing.constants import PlanCode
from piopi.billing.exceptions import UnknownTierError


@dataclass(frozen=True)
class PlanTier:
    """One row of the plan catalog."""

    id: str
    label: str
    included_children: int
    base_price: Decimal
    extra_child_price: Decimal
    on_overflow: str
    description: str = ""

    @property
    def is_capped(self) -> bool:
        return self.on_overflow == OverflowPolicy.BLOCK

    @property
    def yearly_price(self) -> Decimal:
        """Yearly price of the base package, as shown on the pricing page."""
        return self.base_price * YEARLY_PRICE_MULTIPLIER


PLAN_CATALOG: dict[str, PlanTier] = {
    PlanCode.BASIC: PlanTier(
        id=PlanCode.BASIC,
        label="Solo",
        included_children=1,
        base_price=Decimal("2.00"),
        extra_child_price=Decimal("0.00"),
        on_overflow=OverflowPolicy.BLOCK,
        description="Parfait pour un premier explorateur",
    ),
    PlanCode.DUO: PlanTier(
        id=PlanCode.DUO,
        label="Duo",
        included_children=2,
        base_price=Decimal("3.00"),
        extra_child_price=Decimal("0.00"),
        on_overflow=OverflowPolicy.BLOCK,
        description="Idéal pour deux enfants complices",
    ),
    PlanCode.FAMILY: PlanTier(
        id=PlanCode.FAMILY,
        label="Famille",
        included_children=3,
        base_price=Decimal("5.00"),
        extra_child_price=Decimal("0.00"),
        on_overflow=OverflowPolicy.BLOCK,
        description="Pour une tribu motivée",
    ),
    PlanCode.PREMIUM: PlanTier(
        id=PlanCode.PREMIUM,
        label="Premium",
        included_children=4,
        base_price=Decimal("6.00"),
        extra_child_price=Decimal("0.00"),
        on_overflow=OverflowPolicy.BLOCK,
        description="Tous les héros sous le même toit",
    ),
    PlanCode.LIBERTE: PlanTier(
        id=PlanCode.LIBERTE,
        label="Liberté",
        included_children=5,
        base_price=Decimal("8.00"),
        extra_child_price=Decimal("2.00"),
        on_overflow=OverflowPolicy.AUTOBILL,
        description="Pour les familles nombreuses (5+)",
    ),
}


def get_plan(tier_id: str) -> PlanTier:
    """
    Look up a tier by id.

    Raises:
        UnknownTierError: if ``tier_id`` is not one of the catalog tiers.
    """
    try:
        return PLAN_CATALOG[tier_id]
    except (KeyError, TypeError):
        raise UnknownTierError(tier_id) from None


def all_plans() -> list[PlanTier]:
    """Catalog tiers in display order (smallest household first)."""
    return sorted(PLAN_CATALOG.values(), key=lambda plan: plan.included_children)
