"""
Wiring of the subscription lifecycle with its production collaborators.

Views, management commands and other apps should get a lifecycle from
here rather than assembling one, so every caller uses the same store,
promo validator and notifier.
"""

from __future__ import annotations

from piopi.billing.lifecycle import SubscriptionLifecycle
from piopi.billing.notifications import EmailNotifier
from piopi.billing.promos import PromoCodeValidator
from piopi.billing.storage import DjangoSubscriptionStore


def get_lifecycle() -> SubscriptionLifecycle:
    """
    Build a lifecycle backed by the ORM, the PromoCode table and email.

    Usage:
        result = get_lifecycle().cancel(request.user.pk)
    """
    return SubscriptionLifecycle(
        store=DjangoSubscriptionStore(),
        promo_validator=PromoCodeValidator(),
        notifier=EmailNotifier(),
    )
