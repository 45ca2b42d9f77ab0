"""
Trial policy: how long a free trial lasts.

``compute_trial_window`` is pure. ``resolve_base_trial_days`` reads the base
length set in the admin panel, falling back to ``BILLING_TRIAL_BASE_DAYS``,
and lets an active admin trial campaign replace it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta

from django.conf import settings

from piopi.billing.constants import DAYS_PER_PROMO_MONTH
from piopi.billing.constants import DEFAULT_TRIAL_BASE_DAYS


@dataclass(frozen=True)
class TrialWindow:
    start: datetime
    end: datetime

    @property
    def days(self) -> int:
        return (self.end - self.start).days


def compute_trial_window(
    start: datetime,
    base_days: int,
    promo_free_months: int = 0,
) -> TrialWindow:
    """
    Trial window starting at ``start``.

    ``end = start + base_days + promo_free_months * 30`` days. Promo months
    are only passed in when the code was validated at creation time; the
    window is never extended afterwards.
    """
    if base_days < 0:
        msg = f"base_days must not be negative, got {base_days}"
        raise ValueError(msg)
    if promo_free_months < 0:
        msg = f"promo_free_months must not be negative, got {promo_free_months}"
        raise ValueError(msg)

    total_days = base_days + promo_free_months * DAYS_PER_PROMO_MONTH
    return TrialWindow(start=start, end=start + timedelta(days=total_days))


def configured_base_trial_days() -> int:
    return int(getattr(settings, "BILLING_TRIAL_BASE_DAYS", DEFAULT_TRIAL_BASE_DAYS))


def resolve_base_trial_days(now: datetime) -> int:
    """
    Base trial length for a trial starting at ``now``.

    An admin trial campaign running at ``now`` wins. Otherwise the admin
    ``default_trial_days`` applies, then ``BILLING_TRIAL_BASE_DAYS``.
    """
    from piopi.billing.trial_settings import get_trial_config

    config = get_trial_config()
    if config.campaign.is_running(now):
        return config.campaign.days
    if config.default_trial_days is not None:
        return config.default_trial_days
    return configured_base_trial_days()


def format_trial_duration(days: int) -> str:
    """French label for a trial length: "1 mois", "3 mois" or "10 jours"."""
    if days <= 0:
        return ""
    if days % DAYS_PER_PROMO_MONTH == 0:
        months = days // DAYS_PER_PROMO_MONTH
        return "1 mois" if months <= 1 else f"{months} mois"
    return f"{days} jours"
