"""
Tests for the subscription lifecycle.

These tests cover:
- Trial creation, with and without promo codes
- Adding children on capped and uncapped tiers
- Tier changes, cancellation, reactivation, expiry and activation
- The admin update path
- Best-effort history and notifications (warnings, never rollbacks)
- Lost races on the conditional write
"""

from datetime import UTC
from datetime import date
from datetime import datetime
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock
from unittest.mock import patch

import pytest
from django.test import override_settings

from piopi.billing.constants import BillingPeriod
from piopi.billing.constants import HistoryAction
from piopi.billing.constants import PlanCode
from piopi.billing.constants import SubscriptionStatus
from piopi.billing.exceptions import ConcurrentModificationError
from piopi.billing.exceptions import DuplicateSubscriptionError
from piopi.billing.exceptions import InvalidBillingPeriodError
from piopi.billing.exceptions import InvalidChildCountError
from piopi.billing.exceptions import InvalidTransitionError
from piopi.billing.exceptions import NotificationError
from piopi.billing.exceptions import PromoValidationError
from piopi.billing.exceptions import StaleSubscriptionError
from piopi.billing.exceptions import SubscriptionNotFoundError
from piopi.billing.exceptions import UnknownTierError
from piopi.billing.exceptions import UpgradeRequiredError
from piopi.billing.lifecycle import SubscriptionLifecycle
from piopi.billing.lifecycle import WarningCode
from piopi.billing.lifecycle import end_of_day_utc
from piopi.billing.models import PromoCode
from piopi.billing.models import Subscription
from piopi.billing.models import SubscriptionHistory
from piopi.billing.notifications import EventKind
from piopi.billing.promos import PromoCodeValidator
from piopi.billing.storage import DjangoSubscriptionStore
from piopi.billing.tests.factories import PromoCodeFactory
from piopi.billing.tests.factories import SubscriptionFactory
from piopi.users.tests.factories import ChildProfileFactory

NOW = datetime(2025, 3, 1, 10, 0, tzinfo=UTC)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self, fail: bool = False):  # noqa: FBT001, FBT002
        self.fail = fail
        self.events = []

    def notify(self, event) -> None:
        if self.fail:
            msg = "SMTP server unreachable"
            raise NotificationError(msg)
        self.events.append(event)

    @property
    def kinds(self) -> list[EventKind]:
        return [event.kind for event in self.events]


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store() -> DjangoSubscriptionStore:
    return DjangoSubscriptionStore()


@pytest.fixture
def lifecycle(store, notifier, clock) -> SubscriptionLifecycle:
    return SubscriptionLifecycle(
        store=store,
        promo_validator=PromoCodeValidator(clock=clock),
        notifier=notifier,
        clock=clock,
        base_trial_days=30,
    )


def history_of(user) -> list[SubscriptionHistory]:
    return list(
        SubscriptionHistory.objects.filter(subscription_owner_id=user.pk).order_by("id"),
    )


def make_subscription(user, **overrides) -> Subscription:
    values = {
        "owner": user,
        "trial_start": NOW - timedelta(days=1),
        "trial_end": NOW + timedelta(days=29),
    }
    values.update(overrides)
    return SubscriptionFactory(**values)


def make_liberte(user, billed: int = 5, **overrides) -> Subscription:
    extra = max(0, billed - 5)
    return make_subscription(
        user,
        plan_tier=PlanCode.LIBERTE,
        billed_child_count=billed,
        price=Decimal("8.00") + Decimal("2.00") * extra,
        **overrides,
    )


@pytest.mark.django_db
class TestCreateTrialSubscription:
    def test_creates_trial_on_included_count(self, lifecycle, notifier, user):
        result = lifecycle.create_trial_subscription(
            user.pk,
            PlanCode.BASIC,
            BillingPeriod.MONTHLY,
        )

        record = result.subscription
        assert record.status == SubscriptionStatus.TRIAL
        assert record.billed_child_count == 1
        assert record.price == Decimal("2.00")
        assert record.trial_start == NOW
        assert record.trial_end == NOW + timedelta(days=30)
        assert record.version == 1
        assert result.warnings == []

        history = history_of(user)
        assert [h.action_type for h in history] == [HistoryAction.TRIAL_STARTED]
        assert history[0].price_at_action == Decimal("2.00")
        assert "1 mois" in history[0].notes
        assert notifier.kinds == [EventKind.TRIAL_STARTED]

    def test_liberte_trial_bills_five_children(self, lifecycle, user):
        record = lifecycle.create_trial_subscription(
            user.pk,
            PlanCode.LIBERTE,
            BillingPeriod.YEARLY,
        ).subscription

        assert record.billed_child_count == 5
        assert record.price == Decimal("8.00")
        assert record.billing_period == BillingPeriod.YEARLY

    def test_promo_code_extends_trial(self, lifecycle, notifier, user):
        PromoCodeFactory(code="SAVE2", free_months=2)

        result = lifecycle.create_trial_subscription(
            user.pk,
            PlanCode.BASIC,
            BillingPeriod.MONTHLY,
            promo_code="save2",
        )

        record = result.subscription
        assert record.trial_end - record.trial_start == timedelta(days=90)
        assert record.promo_code == "SAVE2"
        assert record.promo_months_remaining == 2
        assert result.warnings == []
        assert PromoCode.objects.get(code="SAVE2").current_uses == 1
        assert "SAVE2" in history_of(user)[0].notes
        assert notifier.events[0].payload["promo_code"] == "SAVE2"

    def test_invalid_promo_is_a_warning(self, lifecycle, user):
        result = lifecycle.create_trial_subscription(
            user.pk,
            PlanCode.DUO,
            BillingPeriod.MONTHLY,
            promo_code="NOPE",
        )

        record = result.subscription
        assert record.trial_end - record.trial_start == timedelta(days=30)
        assert record.promo_code is None
        assert record.promo_months_remaining == 0
        assert result.warning_codes == [WarningCode.PROMO_INVALID]
        assert result.warnings[0].message == "unknown_code"

    def test_exhausted_promo_is_not_counted_again(self, lifecycle, user):
        PromoCodeFactory(code="LAST", max_uses=1, current_uses=1)

        result = lifecycle.create_trial_subscription(
            user.pk,
            PlanCode.DUO,
            BillingPeriod.MONTHLY,
            promo_code="LAST",
        )

        assert result.warnings[0].message == "usage_limit_reached"
        assert PromoCode.objects.get(code="LAST").current_uses == 1

    def test_unreachable_validator_is_a_warning(self, store, notifier, clock, user):
        validator = MagicMock()
        validator.validate.side_effect = PromoValidationError("database down")
        lifecycle = SubscriptionLifecycle(
            store=store,
            promo_validator=validator,
            notifier=notifier,
            clock=clock,
            base_trial_days=30,
        )

        result = lifecycle.create_trial_subscription(
            user.pk,
            PlanCode.DUO,
            BillingPeriod.MONTHLY,
            promo_code="SAVE2",
        )

        assert result.subscription.status == SubscriptionStatus.TRIAL
        assert result.warning_codes == [WarningCode.PROMO_UNAVAILABLE]
        validator.increment_usage.assert_not_called()

    def test_usage_recording_failure_is_a_warning(self, store, notifier, clock, user):
        validator = MagicMock()
        validator.validate.return_value = MagicMock(valid=True, free_months=1)
        validator.increment_usage.side_effect = RuntimeError("boom")
        lifecycle = SubscriptionLifecycle(
            store=store,
            promo_validator=validator,
            notifier=notifier,
            clock=clock,
            base_trial_days=30,
        )

        result = lifecycle.create_trial_subscription(
            user.pk,
            PlanCode.DUO,
            BillingPeriod.MONTHLY,
            promo_code="SAVE1",
        )

        assert result.subscription.promo_code == "SAVE1"
        assert result.warning_codes == [WarningCode.PROMO_USAGE_NOT_RECORDED]
        validator.validate.assert_called_once_with("SAVE1")
        validator.increment_usage.assert_called_once_with("SAVE1")

    def test_duplicate_subscription(self, lifecycle, notifier, user):
        lifecycle.create_trial_subscription(user.pk, PlanCode.DUO, BillingPeriod.MONTHLY)

        with pytest.raises(DuplicateSubscriptionError):
            lifecycle.create_trial_subscription(
                user.pk,
                PlanCode.FAMILY,
                BillingPeriod.MONTHLY,
            )

        assert Subscription.objects.get(owner=user).plan_tier == PlanCode.DUO
        assert len(history_of(user)) == 1
        assert len(notifier.events) == 1

    def test_duplicate_does_not_consume_promo(self, lifecycle, user):
        PromoCodeFactory(code="SAVE2", free_months=2)
        make_subscription(user)

        with pytest.raises(DuplicateSubscriptionError):
            lifecycle.create_trial_subscription(
                user.pk,
                PlanCode.DUO,
                BillingPeriod.MONTHLY,
                promo_code="SAVE2",
            )
        assert PromoCode.objects.get(code="SAVE2").current_uses == 0

    def test_unknown_tier_persists_nothing(self, lifecycle, user):
        with pytest.raises(UnknownTierError):
            lifecycle.create_trial_subscription(user.pk, "gold", BillingPeriod.MONTHLY)
        assert not Subscription.objects.filter(owner=user).exists()

    def test_unknown_billing_period(self, lifecycle, user):
        with pytest.raises(InvalidBillingPeriodError):
            lifecycle.create_trial_subscription(user.pk, PlanCode.DUO, "weekly")
        assert not Subscription.objects.filter(owner=user).exists()

    @override_settings(BILLING_TRIAL_BASE_DAYS=7)
    def test_base_days_from_settings(self, store, notifier, clock, user):
        lifecycle = SubscriptionLifecycle(
            store=store,
            promo_validator=PromoCodeValidator(clock=clock),
            notifier=notifier,
            clock=clock,
        )

        record = lifecycle.create_trial_subscription(
            user.pk,
            PlanCode.DUO,
            BillingPeriod.MONTHLY,
        ).subscription

        assert record.trial_end - record.trial_start == timedelta(days=7)

    def test_notification_failure_keeps_subscription(self, store, clock, user):
        lifecycle = SubscriptionLifecycle(
            store=store,
            promo_validator=PromoCodeValidator(clock=clock),
            notifier=RecordingNotifier(fail=True),
            clock=clock,
            base_trial_days=30,
        )

        result = lifecycle.create_trial_subscription(
            user.pk,
            PlanCode.DUO,
            BillingPeriod.MONTHLY,
        )

        assert result.warning_codes == [WarningCode.NOTIFICATION_FAILED]
        assert Subscription.objects.filter(owner=user).exists()
        assert len(history_of(user)) == 1

    def test_history_failure_keeps_subscription(self, lifecycle, store, notifier, user):
        with patch.object(store, "append_history", side_effect=RuntimeError("disk full")):
            result = lifecycle.create_trial_subscription(
                user.pk,
                PlanCode.DUO,
                BillingPeriod.MONTHLY,
            )

        assert result.warning_codes == [WarningCode.HISTORY_APPEND_FAILED]
        assert Subscription.objects.filter(owner=user).exists()
        assert notifier.kinds == [EventKind.TRIAL_STARTED]


@pytest.mark.django_db
class TestAddChildToHousehold:
    def test_capped_tier_over_cap_requires_upgrade(self, lifecycle, notifier, user):
        make_subscription(user, plan_tier=PlanCode.DUO)
        ChildProfileFactory.create_batch(2, parent=user)

        with pytest.raises(UpgradeRequiredError) as exc_info:
            lifecycle.add_child_to_household(user.pk, 3)

        assert exc_info.value.included_children == 2
        assert exc_info.value.requested == 3
        subscription = Subscription.objects.get(owner=user)
        assert subscription.billed_child_count == 2
        assert subscription.price == Decimal("3.00")
        assert subscription.version == 1
        assert history_of(user) == []
        assert notifier.events == []

    def test_capped_tier_within_cap_is_noop(self, lifecycle, notifier, user):
        make_subscription(user, plan_tier=PlanCode.DUO)

        result = lifecycle.add_child_to_household(user.pk, 2)

        assert result.changed is False
        assert result.subscription.billed_child_count == 2
        assert history_of(user) == []
        assert notifier.events == []

    def test_liberte_bills_sixth_child(self, lifecycle, notifier, user):
        make_liberte(user)

        result = lifecycle.add_child_to_household(user.pk, 6)

        record = result.subscription
        assert record.billed_child_count == 6
        assert record.price == Decimal("10.00")
        assert record.version == 2

        history = history_of(user)
        assert [h.action_type for h in history] == [HistoryAction.UPDATED]
        assert history[0].child_count_at_action == 6
        assert "5 à 6" in history[0].notes

        assert notifier.kinds == [EventKind.PLAN_CHANGED]
        payload = notifier.events[0].payload
        assert payload["old_price"] == "8.00"
        assert payload["new_price"] == "10.00"
        assert payload["new_child_count"] == 6

    def test_liberte_within_included_is_noop(self, lifecycle, notifier, user):
        make_liberte(user)

        result = lifecycle.add_child_to_household(user.pk, 4)

        assert result.changed is False
        assert result.subscription.price == Decimal("8.00")
        assert notifier.events == []

    def test_stored_profiles_win_over_stale_count(self, lifecycle, user):
        make_liberte(user)
        ChildProfileFactory.create_batch(7, parent=user)

        record = lifecycle.add_child_to_household(user.pk, 6).subscription

        assert record.billed_child_count == 7
        assert record.price == Decimal("12.00")

    def test_not_allowed_once_cancelled(self, lifecycle, user):
        make_liberte(user, status=SubscriptionStatus.CANCELLED)

        with pytest.raises(InvalidTransitionError):
            lifecycle.add_child_to_household(user.pk, 6)

    def test_negative_count(self, lifecycle, user):
        make_liberte(user)
        with pytest.raises(InvalidChildCountError):
            lifecycle.add_child_to_household(user.pk, -1)

    def test_no_subscription(self, lifecycle, user):
        with pytest.raises(SubscriptionNotFoundError):
            lifecycle.add_child_to_household(user.pk, 1)


@pytest.mark.django_db
class TestChangeTier:
    def test_liberte_six_children(self, lifecycle, notifier, user):
        make_liberte(user)

        result = lifecycle.change_tier(user.pk, PlanCode.LIBERTE, child_count=6)

        assert result.subscription.price == Decimal("10.00")
        assert result.subscription.billed_child_count == 6
        assert [h.action_type for h in history_of(user)] == [HistoryAction.UPDATED]
        assert notifier.kinds == [EventKind.PLAN_CHANGED]

    def test_upgrade_capped_tier(self, lifecycle, notifier, user):
        make_subscription(user, plan_tier=PlanCode.DUO)

        record = lifecycle.change_tier(user.pk, PlanCode.FAMILY).subscription

        assert record.plan_tier == PlanCode.FAMILY
        assert record.billed_child_count == 3
        assert record.price == Decimal("5.00")
        payload = notifier.events[0].payload
        assert payload["old_plan_tier"] == PlanCode.DUO
        assert payload["new_plan_tier"] == PlanCode.FAMILY

    def test_downgrade_from_liberte(self, lifecycle, user):
        make_liberte(user, billed=7)

        record = lifecycle.change_tier(user.pk, PlanCode.BASIC).subscription

        assert record.billed_child_count == 1
        assert record.price == Decimal("2.00")

    def test_liberte_defaults_to_current_billed_count(self, lifecycle, user):
        make_subscription(user, plan_tier=PlanCode.PREMIUM, billed_child_count=4, price=6)

        record = lifecycle.change_tier(user.pk, PlanCode.LIBERTE).subscription

        assert record.billed_child_count == 5
        assert record.price == Decimal("8.00")

    def test_same_tier_is_noop(self, lifecycle, notifier, user):
        make_subscription(user, plan_tier=PlanCode.DUO)

        result = lifecycle.change_tier(user.pk, PlanCode.DUO)

        assert result.changed is False
        assert history_of(user) == []
        assert notifier.events == []

    def test_unknown_tier_checked_first(self, lifecycle, user):
        with pytest.raises(UnknownTierError):
            lifecycle.change_tier(user.pk, "gold")

    def test_invalid_child_count(self, lifecycle, user):
        make_liberte(user)
        with pytest.raises(InvalidChildCountError):
            lifecycle.change_tier(user.pk, PlanCode.LIBERTE, child_count=0)

    def test_not_allowed_once_expired(self, lifecycle, user):
        make_subscription(user, status=SubscriptionStatus.EXPIRED)
        with pytest.raises(InvalidTransitionError):
            lifecycle.change_tier(user.pk, PlanCode.FAMILY)
        assert Subscription.objects.get(owner=user).plan_tier == PlanCode.DUO


@pytest.mark.django_db
class TestCancel:
    def test_cancel_trial_keeps_dates(self, lifecycle, notifier, user):
        subscription = make_subscription(user)

        record = lifecycle.cancel(user.pk).subscription

        assert record.status == SubscriptionStatus.CANCELLED
        assert record.trial_end == subscription.trial_end
        assert record.access_ends_at == subscription.trial_end
        assert [h.action_type for h in history_of(user)] == [HistoryAction.CANCELLED]
        assert notifier.kinds == [EventKind.CANCELLED]
        assert notifier.events[0].payload["access_ends_at"] == (
            subscription.trial_end.isoformat()
        )

    def test_cancel_active_uses_subscription_end(self, lifecycle, notifier, user):
        end = NOW + timedelta(days=12)
        make_subscription(
            user,
            status=SubscriptionStatus.ACTIVE,
            subscription_start=NOW - timedelta(days=18),
            subscription_end=end,
        )

        lifecycle.cancel(user.pk)

        assert notifier.events[0].payload["access_ends_at"] == end.isoformat()

    def test_cancel_twice_is_idempotent(self, lifecycle, notifier, user):
        make_subscription(user)

        lifecycle.cancel(user.pk)
        second = lifecycle.cancel(user.pk)

        assert second.changed is False
        assert second.subscription.status == SubscriptionStatus.CANCELLED
        assert len(history_of(user)) == 1
        assert len(notifier.events) == 1

    def test_cancel_expired_is_noop(self, lifecycle, notifier, user):
        make_subscription(user, status=SubscriptionStatus.EXPIRED)

        result = lifecycle.cancel(user.pk)

        assert result.changed is False
        assert result.subscription.status == SubscriptionStatus.EXPIRED
        assert history_of(user) == []

    def test_no_subscription(self, lifecycle, user):
        with pytest.raises(SubscriptionNotFoundError):
            lifecycle.cancel(user.pk)


@pytest.mark.django_db
class TestReactivate:
    def test_back_to_trial_inside_window(self, lifecycle, notifier, user):
        make_subscription(user, status=SubscriptionStatus.CANCELLED)

        record = lifecycle.reactivate(user.pk).subscription

        assert record.status == SubscriptionStatus.TRIAL
        assert record.subscription_start is None
        assert [h.action_type for h in history_of(user)] == [HistoryAction.RENEWED]
        assert notifier.kinds == [EventKind.REACTIVATED]

    def test_active_after_trial_ended(self, lifecycle, clock, user):
        make_subscription(user, status=SubscriptionStatus.CANCELLED)
        clock.advance(days=40)

        record = lifecycle.reactivate(user.pk).subscription

        assert record.status == SubscriptionStatus.ACTIVE
        assert record.subscription_start == clock.now
        assert record.subscription_end == clock.now + timedelta(days=30)

    def test_reactivation_opens_a_period_that_expires(self, lifecycle, clock, user):
        make_subscription(
            user,
            status=SubscriptionStatus.CANCELLED,
            billing_period=BillingPeriod.YEARLY,
        )
        clock.advance(days=40)
        lifecycle.reactivate(user.pk)

        clock.advance(days=366)
        record = lifecycle.expire(user.pk).subscription

        assert record.status == SubscriptionStatus.EXPIRED

    def test_given_end_date_is_used(self, lifecycle, clock, user):
        make_subscription(user, status=SubscriptionStatus.CANCELLED)
        clock.advance(days=40)
        end = clock.now + timedelta(days=90)

        record = lifecycle.reactivate(user.pk, subscription_end=end).subscription

        assert record.subscription_end == end

    def test_paid_subscription_keeps_start(self, lifecycle, user):
        start = NOW - timedelta(days=60)
        make_subscription(
            user,
            status=SubscriptionStatus.CANCELLED,
            subscription_start=start,
            subscription_end=NOW + timedelta(days=5),
        )

        record = lifecycle.reactivate(user.pk).subscription

        assert record.status == SubscriptionStatus.ACTIVE
        assert record.subscription_start == start

    def test_expired_requires_admin(self, lifecycle, user):
        make_subscription(user, status=SubscriptionStatus.EXPIRED)

        with pytest.raises(InvalidTransitionError):
            lifecycle.reactivate(user.pk)
        assert history_of(user) == []

    def test_admin_reactivates_expired(self, lifecycle, clock, user):
        make_subscription(
            user,
            status=SubscriptionStatus.EXPIRED,
            subscription_start=NOW - timedelta(days=400),
            subscription_end=NOW - timedelta(days=35),
        )
        end = NOW + timedelta(days=30)

        record = lifecycle.reactivate(
            user.pk,
            admin_override=True,
            subscription_end=end,
        ).subscription

        assert record.status == SubscriptionStatus.ACTIVE
        assert record.subscription_start == clock.now
        assert record.subscription_end == end

    def test_active_cannot_be_reactivated(self, lifecycle, user):
        make_subscription(user, status=SubscriptionStatus.ACTIVE)
        with pytest.raises(InvalidTransitionError):
            lifecycle.reactivate(user.pk)


@pytest.mark.django_db
class TestExpire:
    def test_trial_past_end(self, lifecycle, notifier, clock, user):
        make_subscription(user)
        clock.advance(days=30)

        record = lifecycle.expire(user.pk).subscription

        assert record.status == SubscriptionStatus.EXPIRED
        history = history_of(user)
        assert [h.action_type for h in history] == [HistoryAction.UPDATED]
        assert "Expiration" in history[0].notes
        assert notifier.events == []

    def test_trial_still_running(self, lifecycle, user):
        make_subscription(user)
        with pytest.raises(InvalidTransitionError):
            lifecycle.expire(user.pk)

    def test_active_past_end(self, lifecycle, user):
        make_subscription(
            user,
            status=SubscriptionStatus.ACTIVE,
            subscription_start=NOW - timedelta(days=31),
            subscription_end=NOW - timedelta(minutes=1),
        )

        record = lifecycle.expire(user.pk).subscription

        assert record.status == SubscriptionStatus.EXPIRED

    def test_active_without_end_never_expires(self, lifecycle, clock, user):
        make_subscription(user, status=SubscriptionStatus.ACTIVE, subscription_start=NOW)
        clock.advance(days=365)

        with pytest.raises(InvalidTransitionError):
            lifecycle.expire(user.pk)

    def test_already_expired_is_noop(self, lifecycle, user):
        make_subscription(user, status=SubscriptionStatus.EXPIRED)

        result = lifecycle.expire(user.pk)

        assert result.changed is False
        assert history_of(user) == []

    def test_cancelled_cannot_expire(self, lifecycle, clock, user):
        make_subscription(user, status=SubscriptionStatus.CANCELLED)
        clock.advance(days=60)
        with pytest.raises(InvalidTransitionError):
            lifecycle.expire(user.pk)


@pytest.mark.django_db
class TestActivate:
    def test_trial_becomes_active(self, lifecycle, notifier, clock, user):
        make_subscription(user)
        end = NOW + timedelta(days=30)

        record = lifecycle.activate(user.pk, subscription_end=end).subscription

        assert record.status == SubscriptionStatus.ACTIVE
        assert record.subscription_start == clock.now
        assert record.subscription_end == end
        assert [h.action_type for h in history_of(user)] == [HistoryAction.UPDATED]
        assert notifier.events == []

    def test_only_from_trial(self, lifecycle, user):
        make_subscription(user, status=SubscriptionStatus.CANCELLED)
        with pytest.raises(InvalidTransitionError):
            lifecycle.activate(user.pk)


@pytest.mark.django_db
class TestAdminUpdate:
    def test_creates_subscription_from_profiles(self, lifecycle, notifier, user):
        ChildProfileFactory.create_batch(6, parent=user)

        result = lifecycle.admin_update(user.pk, PlanCode.LIBERTE, date(2025, 6, 30))

        record = result.subscription
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.billed_child_count == 6
        assert record.price == Decimal("10.00")
        assert record.subscription_end == datetime(
            2025,
            6,
            30,
            23,
            59,
            59,
            999999,
            tzinfo=UTC,
        )
        assert [h.action_type for h in history_of(user)] == [HistoryAction.CREATED]
        assert notifier.events == []

    def test_capped_tier_bills_included_count(self, lifecycle, user):
        ChildProfileFactory.create_batch(3, parent=user)

        record = lifecycle.admin_update(user.pk, PlanCode.BASIC).subscription

        assert record.billed_child_count == 1
        assert record.price == Decimal("2.00")
        assert record.subscription_end is None

    def test_past_date_sets_expired(self, lifecycle, user):
        make_subscription(user, status=SubscriptionStatus.ACTIVE, subscription_start=NOW)

        record = lifecycle.admin_update(
            user.pk,
            PlanCode.DUO,
            date(2025, 2, 1),
        ).subscription

        assert record.status == SubscriptionStatus.EXPIRED
        assert [h.action_type for h in history_of(user)] == [HistoryAction.UPDATED]

    def test_reopens_expired_subscription(self, lifecycle, clock, user):
        make_subscription(user, status=SubscriptionStatus.EXPIRED)

        record = lifecycle.admin_update(
            user.pk,
            PlanCode.FAMILY,
            date(2025, 12, 31),
        ).subscription

        assert record.status == SubscriptionStatus.ACTIVE
        assert record.plan_tier == PlanCode.FAMILY
        assert record.subscription_start == clock.now

    def test_unknown_tier(self, lifecycle, user):
        with pytest.raises(UnknownTierError):
            lifecycle.admin_update(user.pk, "gold")

    def test_end_of_day_normalises_aware_datetime(self):
        late_evening = datetime(2025, 6, 30, 23, 30, tzinfo=UTC) + timedelta(hours=1)
        assert end_of_day_utc(late_evening) == datetime(
            2025,
            7,
            1,
            23,
            59,
            59,
            999999,
            tzinfo=UTC,
        )


class RacingStore(DjangoSubscriptionStore):
    """
    Store that lets another writer commit between our read and our write.

    ``competitor`` is called once, right before the first conditional write.
    """

    def __init__(self, competitor):
        self.competitor = competitor
        self.raced = False

    def put_subscription(self, record, expected_version):
        if not self.raced:
            self.raced = True
            self.competitor()
        return super().put_subscription(record, expected_version)


@pytest.mark.django_db
class TestConcurrentWrites:
    def test_two_children_added_at_once_are_both_billed(self, notifier, clock, user):
        make_liberte(user)
        ChildProfileFactory.create_batch(5, parent=user)

        def other_parent_tab():
            # The second tab adds child 7 and bills it before our write lands.
            ChildProfileFactory.create_batch(2, parent=user)
            DjangoSubscriptionStore().put_subscription(
                DjangoSubscriptionStore()
                .get_subscription(user.pk)
                .evolve(billed_child_count=7, price=Decimal("12.00")),
                expected_version=1,
            )

        store = RacingStore(other_parent_tab)
        lifecycle = SubscriptionLifecycle(
            store=store,
            promo_validator=PromoCodeValidator(clock=clock),
            notifier=notifier,
            clock=clock,
            base_trial_days=30,
        )

        result = lifecycle.add_child_to_household(user.pk, 6)

        subscription = Subscription.objects.get(owner=user)
        assert subscription.billed_child_count == 7
        assert subscription.price == Decimal("12.00")
        assert subscription.version == 2
        assert result.changed is False
        assert history_of(user) == []

    def test_lost_race_is_retried(self, notifier, clock, user):
        make_subscription(user, plan_tier=PlanCode.DUO)

        def admin_changes_period():
            DjangoSubscriptionStore().put_subscription(
                DjangoSubscriptionStore()
                .get_subscription(user.pk)
                .evolve(billing_period=BillingPeriod.YEARLY),
                expected_version=1,
            )

        lifecycle = SubscriptionLifecycle(
            store=RacingStore(admin_changes_period),
            promo_validator=PromoCodeValidator(clock=clock),
            notifier=notifier,
            clock=clock,
            base_trial_days=30,
        )

        record = lifecycle.change_tier(user.pk, PlanCode.FAMILY).subscription

        assert record.plan_tier == PlanCode.FAMILY
        assert record.billing_period == BillingPeriod.YEARLY
        assert record.version == 3
        assert len(history_of(user)) == 1
        assert len(notifier.events) == 1

    def test_retries_are_bounded(self, lifecycle, store, user):
        make_subscription(user)

        with patch.object(
            store,
            "put_subscription",
            side_effect=StaleSubscriptionError("changed"),
        ) as put:
            with pytest.raises(ConcurrentModificationError):
                lifecycle.cancel(user.pk)

        assert put.call_count == lifecycle.max_write_retries + 1
        assert history_of(user) == []
        assert Subscription.objects.get(owner=user).status == SubscriptionStatus.TRIAL
