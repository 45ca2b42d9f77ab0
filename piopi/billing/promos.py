"""
Promo code validation.

The lifecycle consumes a ``PromoValidator``: ``validate`` may be called as
often as the parent likes (the plan selection page re-checks on blur),
``increment_usage`` is called exactly once per trial actually created with
the code.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from django.db import DatabaseError
from django.utils import timezone

from piopi.billing.exceptions import PromoValidationError
from piopi.billing.models import PromoCode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromoValidation:
    """Outcome of checking a promo code."""

    valid: bool
    free_months: int = 0
    message: str = ""


class PromoValidator(Protocol):
    def validate(self, code: str) -> PromoValidation: ...

    def increment_usage(self, code: str) -> None: ...


def normalize_code(code: str) -> str:
    return code.strip().upper()


class PromoCodeValidator:
    """
    PromoValidator backed by the PromoCode table.

    A code is valid when it is active, inside its validity window and not
    used up. Messages are short machine friendly strings; the frontend owns
    the French wording.
    """

    def __init__(self, clock=timezone.now):
        self.clock = clock

    def validate(self, code: str) -> PromoValidation:
        normalized = normalize_code(code)
        if not normalized:
            return PromoValidation(valid=False, message="empty_code")

        try:
            promo = PromoCode.objects.filter(code=normalized).first()
        except DatabaseError as exc:
            logger.exception("Promo code lookup failed for %s", normalized)
            raise PromoValidationError(str(exc)) from exc

        if promo is None:
            return PromoValidation(valid=False, message="unknown_code")
        return self._check(promo, self.clock())

    def _check(self, promo: PromoCode, now: datetime) -> PromoValidation:
        if not promo.active:
            return PromoValidation(valid=False, message="inactive_code")
        if promo.valid_from and promo.valid_from > now:
            return PromoValidation(valid=False, message="not_yet_valid")
        if promo.valid_until and promo.valid_until < now:
            return PromoValidation(valid=False, message="expired_code")
        if promo.is_exhausted:
            return PromoValidation(valid=False, message="usage_limit_reached")
        return PromoValidation(
            valid=True,
            free_months=promo.free_months,
            message=promo.description,
        )

    def increment_usage(self, code: str) -> None:
        normalized = normalize_code(code)
        promo = PromoCode.objects.filter(code=normalized).first()
        if promo is None:
            logger.warning("Cannot record usage of unknown promo code %s", normalized)
            return
        if not promo.increment_usage():
            msg = f"Promo code {normalized} has reached its usage limit"
            raise PromoValidationError(msg)
        logger.info("Recorded usage of promo code %s", normalized)
