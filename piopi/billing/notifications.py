"""
Subscription notifications.

The lifecycle emits a ``NotificationEvent`` from a closed set of kinds and
hands it to a ``Notifier``. It never formats or delivers anything itself.
``EmailNotifier`` is the production notifier: one French email per kind,
sent through Django's mail framework (bounded by ``EMAIL_TIMEOUT``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from enum import Enum
from typing import Any
from typing import Protocol

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.mail import send_mail

from piopi.billing.catalog import get_plan
from piopi.billing.exceptions import NotificationError

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    TRIAL_STARTED = "trial_started"
    PLAN_CHANGED = "plan_changed"
    CANCELLED = "cancelled"
    REACTIVATED = "reactivated"


@dataclass(frozen=True)
class NotificationEvent:
    kind: EventKind
    owner_id: int
    payload: dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    def notify(self, event: NotificationEvent) -> None:
        """Deliver ``event``; raise NotificationError when that fails."""


class NullNotifier:
    """Notifier that drops every event."""

    def notify(self, event: NotificationEvent) -> None:
        logger.debug("Dropping %s notification for owner %s", event.kind, event.owner_id)


def format_date_fr(value: str | datetime | None) -> str:
    """Render a date as "12 mars 2025"."""
    if value is None:
        return ""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    months = [
        "janvier", "février", "mars", "avril", "mai", "juin",
        "juillet", "août", "septembre", "octobre", "novembre", "décembre",
    ]  # fmt: skip
    return f"{value.day} {months[value.month - 1]} {value.year}"


def _plan_label(tier_id: str | None) -> str:
    if not tier_id:
        return ""
    return get_plan(tier_id).label


def render_event(
    event: NotificationEvent,
    recipient_name: str,
    manage_url: str = "",
) -> tuple[str, str]:
    """Subject and plain text body for ``event``."""
    payload = event.payload
    greeting = f"Bonjour {recipient_name}," if recipient_name else "Bonjour,"

    if event.kind == EventKind.TRIAL_STARTED:
        subject = "Bienvenue sur PioPi - votre essai gratuit commence"
        lines = [
            f"Votre essai gratuit du plan {_plan_label(payload.get('plan_tier'))} "
            f"est actif jusqu'au {format_date_fr(payload.get('trial_end'))}.",
            f"Ensuite : {payload.get('price')} € par mois.",
        ]
        if payload.get("promo_code"):
            lines.append(f"Code promo appliqué : {payload['promo_code']}.")
    elif event.kind == EventKind.PLAN_CHANGED:
        subject = "Mise à jour de votre abonnement PioPi"
        lines = [
            f"Plan : {_plan_label(payload.get('old_plan_tier'))} → "
            f"{_plan_label(payload.get('new_plan_tier'))}",
            f"Enfants facturés : {payload.get('old_child_count')} → "
            f"{payload.get('new_child_count')}",
            f"Tarif : {payload.get('old_price')} €/mois → "
            f"{payload.get('new_price')} €/mois",
        ]
    elif event.kind == EventKind.CANCELLED:
        subject = "Confirmation d'annulation - PioPi"
        lines = [
            "Votre abonnement a bien été annulé.",
            "Vous gardez l'accès jusqu'au "
            f"{format_date_fr(payload.get('access_ends_at'))}.",
        ]
    elif event.kind == EventKind.REACTIVATED:
        subject = "Votre abonnement PioPi est réactivé"
        lines = [
            f"Votre plan {_plan_label(payload.get('plan_tier'))} est de nouveau "
            f"actif ({payload.get('price')} €/mois).",
        ]
    else:
        msg = f"Unknown notification kind: {event.kind}"
        raise NotificationError(msg)

    if manage_url:
        lines.append(f"Gérer mon abonnement : {manage_url}")
    body = "\n\n".join([greeting, *lines, "L'équipe PioPi"])
    return subject, body


class EmailNotifier:
    """
    Notifier that emails the subscription owner.

    Usage:
        lifecycle = SubscriptionLifecycle(store, validator, EmailNotifier())
    """

    def notify(self, event: NotificationEvent) -> None:
        user = get_user_model().objects.filter(pk=event.owner_id).first()
        if user is None or not user.email:
            msg = f"No email address for owner {event.owner_id}"
            raise NotificationError(msg)

        site_url = getattr(settings, "SITE_URL", "")
        manage_url = f"{site_url.rstrip('/')}/abonnement" if site_url else ""
        subject, body = render_event(event, user.get_full_name(), manage_url)
        from_email = getattr(settings, "DEFAULT_FROM_EMAIL", None)

        try:
            sent = send_mail(subject, body, from_email, [user.email])
        except Exception as exc:
            logger.exception("Error sending %s email to %s", event.kind, user.email)
            raise NotificationError(str(exc)) from exc

        if sent == 0:
            msg = f"Email backend did not accept {event.kind} email for {user.email}"
            raise NotificationError(msg)

        logger.info("Sent %s email to %s", event.kind.value, user.email)
