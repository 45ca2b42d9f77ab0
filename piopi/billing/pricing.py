"""
Pricing engine.

Pure functions over the plan catalog: no I/O, no clock, no settings. Every
mutation in the lifecycle recomputes the price through ``compute_price``
instead of trusting the value already stored on the subscription.
"""

from __future__ import annotations

from decimal import Decimal

from piopi.billing.catalog import get_plan
from piopi.billing.constants import BillingPeriod
from piopi.billing.constants import YEARLY_PRICE_MULTIPLIER
from piopi.billing.exceptions import InvalidBillingPeriodError
from piopi.billing.exceptions import InvalidChildCountError

CENTS = Decimal("0.01")


def compute_billed_child_count(tier_id: str, actual_children: int) -> int:
    """
    Number of children a tier is priced against.

    Capped tiers always bill their included count, whatever the household
    size. The uncapped tier bills ``max(actual_children, included)``.
    """
    plan = get_plan(tier_id)
    if plan.is_capped:
        return plan.included_children
    return max(actual_children, plan.included_children)


def compute_price(tier_id: str, billed_child_count: int) -> Decimal:
    """
    Monthly price for a tier billed against ``billed_child_count`` children.

    Raises:
        UnknownTierError: for an unknown tier.
        InvalidChildCountError: when the count is below one, or below the
            included count of a capped tier. A capped tier charges its base
            price for any count at or above what it includes.
    """
    plan = get_plan(tier_id)

    if billed_child_count < 1:
        msg = f"Billed child count must be at least 1, got {billed_child_count}"
        raise InvalidChildCountError(msg)

    if plan.is_capped:
        if billed_child_count < plan.included_children:
            msg = (
                f"Plan {plan.id} bills at least {plan.included_children} "
                f"children, got {billed_child_count}"
            )
            raise InvalidChildCountError(msg)
        return plan.base_price.quantize(CENTS)

    extra_children = max(0, billed_child_count - plan.included_children)
    price = plan.base_price + plan.extra_child_price * extra_children
    return price.quantize(CENTS)


def compute_period_price(
    tier_id: str,
    billed_child_count: int,
    billing_period: str,
) -> Decimal:
    """Amount charged per billing period (yearly is sold as ten months)."""
    monthly = compute_price(tier_id, billed_child_count)
    if billing_period == BillingPeriod.YEARLY:
        return (monthly * YEARLY_PRICE_MULTIPLIER).quantize(CENTS)
    if billing_period == BillingPeriod.MONTHLY:
        return monthly
    msg = f"Unknown billing period: {billing_period!r}"
    raise InvalidBillingPeriodError(msg)
