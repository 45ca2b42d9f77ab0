"""
Subscription lifecycle: the state machine behind every billing change.

States: trial, active, expired, cancelled. Every operation:

1. validates its inputs (unknown tier, impossible child count) before
   touching storage,
2. reads the owner's record, computes the new record with a fresh price
   from the pricing engine, and writes it with a conditional update on the
   row version, re-reading and retrying when another request won the race,
3. appends one history entry and emits one notification, both best-effort:
   a failure there is logged and returned as a warning, the committed write
   stands.

Usage:
    lifecycle = SubscriptionLifecycle(
        store=DjangoSubscriptionStore(),
        promo_validator=PromoCodeValidator(),
        notifier=EmailNotifier(),
    )
    result = lifecycle.create_trial_subscription(user.pk, "duo", "monthly")
    for warning in result.warnings:
        ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import UTC
from datetime import date
from datetime import datetime
from datetime import time
from datetime import timedelta
from typing import TYPE_CHECKING
from typing import Callable

from django.conf import settings
from django.utils import timezone

from piopi.billing.catalog import get_plan
from piopi.billing.constants import BILLING_PERIOD_DAYS
from piopi.billing.constants import DEFAULT_MAX_WRITE_RETRIES
from piopi.billing.constants import MUTABLE_STATUSES
from piopi.billing.constants import BillingPeriod
from piopi.billing.constants import HistoryAction
from piopi.billing.constants import SubscriptionStatus
from piopi.billing.exceptions import ConcurrentModificationError
from piopi.billing.exceptions import DuplicateSubscriptionError
from piopi.billing.exceptions import InvalidBillingPeriodError
from piopi.billing.exceptions import InvalidChildCountError
from piopi.billing.exceptions import InvalidTransitionError
from piopi.billing.exceptions import StaleSubscriptionError
from piopi.billing.exceptions import SubscriptionNotFoundError
from piopi.billing.exceptions import UpgradeRequiredError
from piopi.billing.notifications import EventKind
from piopi.billing.notifications import NotificationEvent
from piopi.billing.pricing import compute_billed_child_count
from piopi.billing.pricing import compute_price
from piopi.billing.promos import normalize_code
from piopi.billing.records import HistoryEntry
from piopi.billing.records import SubscriptionRecord
from piopi.billing.trial import compute_trial_window
from piopi.billing.trial import format_trial_duration
from piopi.billing.trial import resolve_base_trial_days

if TYPE_CHECKING:
    from piopi.billing.notifications import Notifier
    from piopi.billing.promos import PromoValidator
    from piopi.billing.storage import SubscriptionStore

logger = logging.getLogger(__name__)


class WarningCode:
    PROMO_INVALID = "promo_invalid"
    PROMO_UNAVAILABLE = "promo_unavailable"
    PROMO_USAGE_NOT_RECORDED = "promo_usage_not_recorded"
    HISTORY_APPEND_FAILED = "history_append_failed"
    NOTIFICATION_FAILED = "notification_failed"


@dataclass(frozen=True)
class LifecycleWarning:
    """Non-fatal problem attached to a successful operation."""

    code: str
    message: str = ""


@dataclass
class LifecycleResult:
    """Outcome of a lifecycle operation."""

    subscription: SubscriptionRecord
    warnings: list[LifecycleWarning] = field(default_factory=list)
    changed: bool = True

    @property
    def warning_codes(self) -> list[str]:
        return [warning.code for warning in self.warnings]


def end_of_day_utc(value: date | datetime) -> datetime:
    """Last microsecond of ``value``'s day in UTC."""
    if isinstance(value, datetime):
        if timezone.is_aware(value):
            value = value.astimezone(UTC)
        value = value.date()
    return datetime.combine(value, time(23, 59, 59, 999999), tzinfo=UTC)


def reprice(tier_id: str, child_count: int) -> dict:
    """Billed count and price for ``tier_id`` at ``child_count`` children."""
    billed = compute_billed_child_count(tier_id, child_count)
    return {
        "plan_tier": tier_id,
        "billed_child_count": billed,
        "price": compute_price(tier_id, billed),
    }


class SubscriptionLifecycle:
    """
    Service for every subscription state transition.

    The lifecycle trusts the child counts its callers pass in, except in
    add_child_to_household where the household is re-counted through the
    store so two concurrent additions cannot undercount it.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        promo_validator: PromoValidator,
        notifier: Notifier,
        *,
        clock: Callable[[], datetime] = timezone.now,
        base_trial_days: int | None = None,
        max_write_retries: int | None = None,
    ):
        self.store = store
        self.promo_validator = promo_validator
        self.notifier = notifier
        self.clock = clock
        self.base_trial_days = base_trial_days
        if max_write_retries is None:
            max_write_retries = getattr(
                settings,
                "BILLING_MAX_WRITE_RETRIES",
                DEFAULT_MAX_WRITE_RETRIES,
            )
        self.max_write_retries = max_write_retries

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_trial_subscription(
        self,
        owner_id: int,
        tier_id: str,
        billing_period: str,
        promo_code: str | None = None,
    ) -> LifecycleResult:
        """
        Start a free trial on ``tier_id``.

        The plan is picked before any child profile exists, so the billed
        count is the tier's included count. An invalid or unreachable promo
        code does not stop the trial; it comes back as a warning.

        Raises:
            UnknownTierError, InvalidBillingPeriodError,
            DuplicateSubscriptionError
        """
        plan = get_plan(tier_id)
        if billing_period not in BillingPeriod.values:
            msg = f"Unknown billing period: {billing_period!r}"
            raise InvalidBillingPeriodError(msg)

        if self.store.get_subscription(owner_id) is not None:
            msg = f"Owner {owner_id} already has a subscription"
            raise DuplicateSubscriptionError(msg)

        warnings: list[LifecycleWarning] = []
        redeemed_code, free_months = self._check_promo(promo_code, warnings)

        now = self.clock()
        base_days = self.base_trial_days
        if base_days is None:
            base_days = resolve_base_trial_days(now)
        window = compute_trial_window(now, base_days, free_months)

        billed = plan.included_children
        record = SubscriptionRecord(
            owner_id=owner_id,
            plan_tier=plan.id,
            billing_period=billing_period,
            billed_child_count=billed,
            price=compute_price(plan.id, billed),
            status=SubscriptionStatus.TRIAL,
            trial_start=window.start,
            trial_end=window.end,
            promo_code=redeemed_code,
            promo_months_remaining=free_months,
        )
        saved = self.store.create_subscription(record)

        if redeemed_code:
            try:
                self.promo_validator.increment_usage(redeemed_code)
            except Exception:
                logger.exception("Failed to record usage of promo code %s", redeemed_code)
                warnings.append(
                    LifecycleWarning(WarningCode.PROMO_USAGE_NOT_RECORDED, redeemed_code),
                )

        duration = format_trial_duration(window.days)
        notes = f"Essai gratuit de {duration} démarré"
        if redeemed_code:
            notes += f" avec le code promo: {redeemed_code}"
        self._append_history(saved, HistoryAction.TRIAL_STARTED, notes, warnings)
        self._notify(
            EventKind.TRIAL_STARTED,
            saved,
            {
                "plan_tier": saved.plan_tier.value,
                "price": str(saved.price),
                "trial_end": saved.trial_end.isoformat(),
                "trial_days": window.days,
                "promo_code": redeemed_code,
            },
            warnings,
        )

        logger.info(
            "Started %s day trial on %s for owner=%s (promo=%s)",
            window.days,
            plan.id,
            owner_id,
            redeemed_code,
        )
        return LifecycleResult(subscription=saved, warnings=warnings)

    def add_child_to_household(
        self,
        owner_id: int,
        current_actual_child_count: int,
    ) -> LifecycleResult:
        """
        Account for a newly created child profile.

        Capped tiers never absorb an extra child: going over the cap raises
        UpgradeRequiredError and nothing changes. The uncapped tier bills the
        new child immediately and tells the parent the new price.

        Raises:
            SubscriptionNotFoundError, InvalidTransitionError,
            InvalidChildCountError, UpgradeRequiredError
        """
        if current_actual_child_count < 0:
            msg = f"Child count cannot be negative, got {current_actual_child_count}"
            raise InvalidChildCountError(msg)

        def mutate(record: SubscriptionRecord) -> SubscriptionRecord | None:
            self._require_mutable(record, "add a child to")
            plan = get_plan(record.plan_tier)
            household = max(
                current_actual_child_count,
                self.store.count_children(owner_id),
            )

            if plan.is_capped:
                if household > plan.included_children:
                    raise UpgradeRequiredError(
                        plan.id,
                        plan.included_children,
                        household,
                    )
                return None

            if household <= record.billed_child_count:
                return None
            return record.evolve(**reprice(plan.id, household))

        old, saved, changed = self._commit(owner_id, mutate)
        if not changed:
            return LifecycleResult(subscription=saved, changed=False)

        warnings: list[LifecycleWarning] = []
        notes = (
            f"Plan {get_plan(saved.plan_tier).label} : passage de "
            f"{old.billed_child_count} à {saved.billed_child_count} enfants "
            f"({old.price}€ → {saved.price}€)"
        )
        self._append_history(saved, HistoryAction.UPDATED, notes, warnings)
        self._notify_plan_changed(old, saved, warnings)

        logger.info(
            "Billed children for owner=%s raised from %s to %s (price %s -> %s)",
            owner_id,
            old.billed_child_count,
            saved.billed_child_count,
            old.price,
            saved.price,
        )
        return LifecycleResult(subscription=saved, warnings=warnings)

    def change_tier(
        self,
        owner_id: int,
        new_tier_id: str,
        child_count: int | None = None,
    ) -> LifecycleResult:
        """
        Parent initiated upgrade or downgrade.

        ``child_count`` only matters for the uncapped tier and defaults to
        the currently billed count. Whether a downgrade below the number of
        existing profiles is acceptable is the caller's decision.

        Raises:
            UnknownTierError, InvalidChildCountError,
            SubscriptionNotFoundError, InvalidTransitionError
        """
        new_plan = get_plan(new_tier_id)
        if child_count is not None and child_count < 1:
            msg = f"Child count must be at least 1, got {child_count}"
            raise InvalidChildCountError(msg)

        def mutate(record: SubscriptionRecord) -> SubscriptionRecord | None:
            self._require_mutable(record, "change the plan of")
            count = record.billed_child_count if child_count is None else child_count
            priced = reprice(new_plan.id, count)
            if (
                record.plan_tier == new_plan.id
                and record.billed_child_count == priced["billed_child_count"]
                and record.price == priced["price"]
            ):
                return None
            return record.evolve(**priced)

        old, saved, changed = self._commit(owner_id, mutate)
        if not changed:
            return LifecycleResult(subscription=saved, changed=False)

        warnings: list[LifecycleWarning] = []
        notes = (
            f"Changement de plan : {get_plan(old.plan_tier).label} "
            f"({old.billed_child_count} enfants, {old.price}€) → "
            f"{new_plan.label} ({saved.billed_child_count} enfants, {saved.price}€)"
        )
        self._append_history(saved, HistoryAction.UPDATED, notes, warnings)
        self._notify_plan_changed(old, saved, warnings)

        logger.info(
            "Changed plan for owner=%s from %s to %s",
            owner_id,
            old.plan_tier,
            saved.plan_tier,
        )
        return LifecycleResult(subscription=saved, warnings=warnings)

    def cancel(self, owner_id: int) -> LifecycleResult:
        """
        Cancel at the parent's request.

        Dates are left untouched: access lasts until the trial or paid
        period ends. Cancelling twice is harmless and records nothing.

        Raises:
            SubscriptionNotFoundError
        """

        def mutate(record: SubscriptionRecord) -> SubscriptionRecord | None:
            if record.status not in MUTABLE_STATUSES:
                return None
            return record.evolve(
                status=SubscriptionStatus.CANCELLED,
                **reprice(record.plan_tier, record.billed_child_count),
            )

        _, saved, changed = self._commit(owner_id, mutate)
        if not changed:
            logger.info(
                "Cancel ignored for owner=%s, subscription already %s",
                owner_id,
                saved.status,
            )
            return LifecycleResult(subscription=saved, changed=False)

        warnings: list[LifecycleWarning] = []
        access_ends_at = saved.access_ends_at or self.clock()
        self._append_history(
            saved,
            HistoryAction.CANCELLED,
            "Abonnement annulé par l'utilisateur",
            warnings,
        )
        self._notify(
            EventKind.CANCELLED,
            saved,
            {
                "access_ends_at": access_ends_at.isoformat(),
                "child_count": saved.billed_child_count,
            },
            warnings,
        )

        logger.info(
            "Cancelled subscription for owner=%s, access until %s",
            owner_id,
            access_ends_at,
        )
        return LifecycleResult(subscription=saved, warnings=warnings)

    def reactivate(
        self,
        owner_id: int,
        *,
        admin_override: bool = False,
        subscription_end: datetime | None = None,
    ) -> LifecycleResult:
        """
        Bring a cancelled subscription back.

        A parent who cancels during the trial and comes back before it ends
        is back on trial; otherwise the subscription is active. When it has
        no paid period yet and ``subscription_end`` is not given, one billing
        period starting now is opened. Expired subscriptions can only be
        reactivated by an admin, which restarts the paid period from now.

        Raises:
            SubscriptionNotFoundError, InvalidTransitionError
        """

        def mutate(record: SubscriptionRecord) -> SubscriptionRecord | None:
            now = self.clock()
            priced = reprice(record.plan_tier, record.billed_child_count)

            if record.status == SubscriptionStatus.CANCELLED:
                if record.subscription_start is None and now < record.trial_end:
                    return record.evolve(status=SubscriptionStatus.TRIAL, **priced)
                changes = {
                    "status": SubscriptionStatus.ACTIVE,
                    "subscription_start": record.subscription_start or now,
                }
                if subscription_end is not None:
                    changes["subscription_end"] = subscription_end
                elif record.subscription_end is None:
                    period_days = BILLING_PERIOD_DAYS[record.billing_period]
                    changes["subscription_end"] = now + timedelta(days=period_days)
                return record.evolve(**changes, **priced)

            if record.status == SubscriptionStatus.EXPIRED and admin_override:
                return record.evolve(
                    status=SubscriptionStatus.ACTIVE,
                    subscription_start=now,
                    subscription_end=subscription_end,
                    **priced,
                )

            raise InvalidTransitionError("reactivate", record.status)

        _, saved, _ = self._commit(owner_id, mutate)

        warnings: list[LifecycleWarning] = []
        notes = "Réactivation par un administrateur" if admin_override else "Réactivation"
        self._append_history(saved, HistoryAction.RENEWED, notes, warnings)
        self._notify(
            EventKind.REACTIVATED,
            saved,
            {
                "status": saved.status.value,
                "plan_tier": saved.plan_tier.value,
                "price": str(saved.price),
            },
            warnings,
        )

        logger.info("Reactivated subscription for owner=%s as %s", owner_id, saved.status)
        return LifecycleResult(subscription=saved, warnings=warnings)

    def expire(self, owner_id: int) -> LifecycleResult:
        """
        Time based expiry, called by the expiry sweep for one owner.

        A trial expires once its trial window has passed, an active
        subscription once its paid period has. Expiring an already expired
        subscription is a no-op so overlapping sweeps are harmless.

        Raises:
            SubscriptionNotFoundError, InvalidTransitionError
        """

        def mutate(record: SubscriptionRecord) -> SubscriptionRecord | None:
            if record.status == SubscriptionStatus.EXPIRED:
                return None
            now = self.clock()
            trial_over = (
                record.status == SubscriptionStatus.TRIAL and now > record.trial_end
            )
            period_over = (
                record.status == SubscriptionStatus.ACTIVE
                and record.subscription_end is not None
                and now > record.subscription_end
            )
            if not (trial_over or period_over):
                raise InvalidTransitionError("expire", record.status)
            return record.evolve(
                status=SubscriptionStatus.EXPIRED,
                **reprice(record.plan_tier, record.billed_child_count),
            )

        old, saved, changed = self._commit(owner_id, mutate)
        if not changed:
            return LifecycleResult(subscription=saved, changed=False)

        warnings: list[LifecycleWarning] = []
        self._append_history(
            saved,
            HistoryAction.UPDATED,
            f"Expiration automatique ({old.status} → expired)",
            warnings,
        )
        logger.info("Expired %s subscription for owner=%s", old.status, owner_id)
        return LifecycleResult(subscription=saved, warnings=warnings)

    def activate(
        self,
        owner_id: int,
        subscription_end: datetime | None = None,
    ) -> LifecycleResult:
        """
        Convert a trial into a paid subscription once payment is confirmed.

        Raises:
            SubscriptionNotFoundError, InvalidTransitionError
        """

        def mutate(record: SubscriptionRecord) -> SubscriptionRecord | None:
            if record.status != SubscriptionStatus.TRIAL:
                raise InvalidTransitionError("activate", record.status)
            return record.evolve(
                status=SubscriptionStatus.ACTIVE,
                subscription_start=self.clock(),
                subscription_end=subscription_end,
                **reprice(record.plan_tier, record.billed_child_count),
            )

        _, saved, _ = self._commit(owner_id, mutate)

        warnings: list[LifecycleWarning] = []
        self._append_history(
            saved,
            HistoryAction.UPDATED,
            "Essai converti en abonnement payant",
            warnings,
        )
        logger.info("Activated paid subscription for owner=%s", owner_id)
        return LifecycleResult(subscription=saved, warnings=warnings)

    def admin_update(
        self,
        owner_id: int,
        tier_id: str,
        activation_end: date | datetime | None = None,
    ) -> LifecycleResult:
        """
        Set an owner's plan from the admin panel.

        Creates the subscription when the owner has none. The household is
        counted through the store, the paid period ends at the end of the
        ``activation_end`` day (UTC), and the status is derived from that
        date: expired if it is already past, active otherwise. This is the
        one path allowed to move an expired subscription straight to active.

        Raises:
            UnknownTierError
        """
        plan = get_plan(tier_id)
        end = end_of_day_utc(activation_end) if activation_end is not None else None

        def target_status(now: datetime) -> str:
            if end is not None and end < now:
                return SubscriptionStatus.EXPIRED
            return SubscriptionStatus.ACTIVE

        warnings: list[LifecycleWarning] = []
        children = self.store.count_children(owner_id)

        if self.store.get_subscription(owner_id) is None:
            now = self.clock()
            billed = compute_billed_child_count(plan.id, children)
            record = SubscriptionRecord(
                owner_id=owner_id,
                plan_tier=plan.id,
                billing_period=BillingPeriod.MONTHLY,
                billed_child_count=billed,
                price=compute_price(plan.id, billed),
                status=target_status(now),
                trial_start=now,
                trial_end=now,
                subscription_start=now,
                subscription_end=end,
            )
            saved = self.store.create_subscription(record)
            self._append_history(
                saved,
                HistoryAction.CREATED,
                "Créé via le panneau admin",
                warnings,
            )
            logger.info("Admin created %s subscription for owner=%s", plan.id, owner_id)
            return LifecycleResult(subscription=saved, warnings=warnings)

        def mutate(record: SubscriptionRecord) -> SubscriptionRecord | None:
            now = self.clock()
            return record.evolve(
                status=target_status(now),
                subscription_start=record.subscription_start or now,
                subscription_end=end,
                **reprice(plan.id, children),
            )

        _, saved, _ = self._commit(owner_id, mutate)
        self._append_history(
            saved,
            HistoryAction.UPDATED,
            "Mise à jour via le panneau admin",
            warnings,
        )
        logger.info(
            "Admin set owner=%s to %s (%s) until %s",
            owner_id,
            saved.plan_tier,
            saved.status,
            end,
        )
        return LifecycleResult(subscription=saved, warnings=warnings)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get(self, owner_id: int) -> SubscriptionRecord:
        record = self.store.get_subscription(owner_id)
        if record is None:
            msg = f"No subscription for owner {owner_id}"
            raise SubscriptionNotFoundError(msg)
        return record

    @staticmethod
    def _require_mutable(record: SubscriptionRecord, operation: str) -> None:
        if record.status not in MUTABLE_STATUSES:
            raise InvalidTransitionError(operation, record.status)

    def _commit(
        self,
        owner_id: int,
        mutate: Callable[[SubscriptionRecord], SubscriptionRecord | None],
    ) -> tuple[SubscriptionRecord, SubscriptionRecord, bool]:
        """
        Read, mutate and conditionally write the owner's record.

        ``mutate`` returns the new record, or None when nothing changes. It
        is re-run against a fresh read whenever the write loses a race.
        Returns ``(old, saved, changed)``.
        """
        for attempt in range(self.max_write_retries + 1):
            record = self._get(owner_id)
            updated = mutate(record)
            if updated is None:
                return record, record, False
            try:
                saved = self.store.put_subscription(updated, expected_version=record.version)
            except StaleSubscriptionError:
                logger.info(
                    "Write conflict on subscription of owner=%s (attempt %s)",
                    owner_id,
                    attempt + 1,
                )
                continue
            return record, saved, True

        msg = (
            f"Subscription of owner {owner_id} kept changing after "
            f"{self.max_write_retries + 1} attempts"
        )
        raise ConcurrentModificationError(msg)

    def _check_promo(
        self,
        promo_code: str | None,
        warnings: list[LifecycleWarning],
    ) -> tuple[str | None, int]:
        """Return ``(redeemed_code, free_months)`` for an optional code."""
        if not promo_code or not promo_code.strip():
            return None, 0
        code = normalize_code(promo_code)
        try:
            validation = self.promo_validator.validate(code)
        except Exception:
            logger.exception("Promo validator unavailable for code %s", code)
            warnings.append(LifecycleWarning(WarningCode.PROMO_UNAVAILABLE, code))
            return None, 0

        if not validation.valid:
            warnings.append(
                LifecycleWarning(WarningCode.PROMO_INVALID, validation.message),
            )
            return None, 0
        return code, validation.free_months

    def _append_history(
        self,
        record: SubscriptionRecord,
        action: HistoryAction,
        notes: str,
        warnings: list[LifecycleWarning],
    ) -> None:
        entry = HistoryEntry.for_subscription(record, action, self.clock(), notes)
        try:
            self.store.append_history(entry)
        except Exception:
            logger.exception(
                "Failed to append %s history for owner=%s",
                action,
                record.owner_id,
            )
            warnings.append(
                LifecycleWarning(WarningCode.HISTORY_APPEND_FAILED, str(action)),
            )

    def _notify(
        self,
        kind: EventKind,
        record: SubscriptionRecord,
        payload: dict,
        warnings: list[LifecycleWarning],
    ) -> None:
        event = NotificationEvent(kind=kind, owner_id=record.owner_id, payload=payload)
        try:
            self.notifier.notify(event)
        except Exception as exc:
            logger.warning(
                "Notification %s for owner=%s failed: %s",
                kind.value,
                record.owner_id,
                exc,
            )
            warnings.append(LifecycleWarning(WarningCode.NOTIFICATION_FAILED, kind.value))

    def _notify_plan_changed(
        self,
        old: SubscriptionRecord,
        new: SubscriptionRecord,
        warnings: list[LifecycleWarning],
    ) -> None:
        self._notify(
            EventKind.PLAN_CHANGED,
            new,
            {
                "old_plan_tier": old.plan_tier.value,
                "new_plan_tier": new.plan_tier.value,
                "old_child_count": old.billed_child_count,
                "new_child_count": new.billed_child_count,
                "old_price": str(old.price),
                "new_price": str(new.price),
            },
            warnings,
        )
