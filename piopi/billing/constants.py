"""
Billing constants for the PioPi subscription engine.

These enums define the plan codes, billing periods and subscription
lifecycle states used throughout the billing app. PlanCode values are what
gets stored in ``Subscription.plan_tier`` and in every history row.
"""

from django.db import models
from django.utils.translation import gettext_lazy as _


class PlanCode(models.TextChoices):
    """
    Plan tiers offered on the plan selection page.

    Four capped tiers (a fixed number of children for a flat price) and one
    uncapped tier, Liberté, which bills every child above the included five.
    """

    BASIC = "basic", _("Solo")
    DUO = "duo", _("Duo")
    FAMILY = "family", _("Famille")
    PREMIUM = "premium", _("Premium")
    LIBERTE = "liberte", _("Liberté")


class BillingPeriod(models.TextChoices):
    MONTHLY = "monthly", _("Monthly")
    YEARLY = "yearly", _("Yearly")


class SubscriptionStatus(models.TextChoices):
    """
    Subscription lifecycle states.

    Allowed transitions:
        TRIAL → ACTIVE (payment confirmed)
        TRIAL → CANCELLED, ACTIVE → CANCELLED (parent cancels)
        CANCELLED → ACTIVE (or TRIAL if still inside the trial window)
        TRIAL → EXPIRED, ACTIVE → EXPIRED (time based sweep)
        EXPIRED → ACTIVE (admin reactivation only, dates are reset)
    """

    TRIAL = "trial", _("Trial")
    ACTIVE = "active", _("Active")
    EXPIRED = "expired", _("Expired")
    CANCELLED = "cancelled", _("Cancelled")


class HistoryAction(models.TextChoices):
    CREATED = "created", _("Created")
    UPDATED = "updated", _("Updated")
    CANCELLED = "cancelled", _("Cancelled")
    RENEWED = "renewed", _("Renewed")
    TRIAL_STARTED = "trial_started", _("Trial started")
    CHILD_ADDED = "child_added", _("Child added")
    CHILD_REMOVED = "child_removed", _("Child removed")


class OverflowPolicy(models.TextChoices):
    """What happens when a household outgrows its tier."""

    BLOCK = "block", _("Block until the parent changes tier")
    AUTOBILL = "autobill", _("Bill the extra children automatically")


# Free days granted per promo month.
DAYS_PER_PROMO_MONTH = 30

# Yearly billing is sold as ten months.
YEARLY_PRICE_MULTIPLIER = 10

# Length of a paid period opened by reactivation when none is supplied.
BILLING_PERIOD_DAYS = {
    BillingPeriod.MONTHLY: 30,
    BillingPeriod.YEARLY: 365,
}

# Default trial length when BILLING_TRIAL_BASE_DAYS is not configured.
DEFAULT_TRIAL_BASE_DAYS = 30

# How many times a conditional write is retried after losing a race.
DEFAULT_MAX_WRITE_RETRIES = 3

# Statuses in which the household can still be modified.
MUTABLE_STATUSES = frozenset({SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE})
