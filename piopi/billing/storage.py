"""
Storage collaborator for the subscription lifecycle.

The lifecycle only talks to a ``SubscriptionStore``; it never issues
queries. ``DjangoSubscriptionStore`` is the ORM backed implementation.

Writes of an existing subscription are conditional: the UPDATE only
matches the row when its ``version`` still equals the version the caller
read. Two requests that read the same version cannot both win; the loser
gets StaleSubscriptionError and re-reads.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

from django.db import IntegrityError
from django.db import transaction
from django.db.models import F
from django.db.models import Q
from pydantic import ValidationError as PydanticValidationError

from piopi.billing.constants import SubscriptionStatus
from piopi.billing.exceptions import CorruptRecordError
from piopi.billing.exceptions import DuplicateSubscriptionError
from piopi.billing.exceptions import StaleSubscriptionError
from piopi.billing.exceptions import SubscriptionNotFoundError
from piopi.billing.models import Subscription
from piopi.billing.models import SubscriptionHistory
from piopi.billing.records import HistoryEntry
from piopi.billing.records import SubscriptionRecord
from piopi.users.models import ChildProfile

logger = logging.getLogger(__name__)

SUBSCRIPTION_FIELDS = [
    "plan_tier",
    "billing_period",
    "billed_child_count",
    "price",
    "status",
    "trial_start",
    "trial_end",
    "subscription_start",
    "subscription_end",
    "promo_code",
    "promo_months_remaining",
]


class SubscriptionStore(Protocol):
    """Operations the lifecycle needs from persistence."""

    def get_subscription(self, owner_id: int) -> SubscriptionRecord | None: ...

    def create_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord: ...

    def put_subscription(
        self,
        record: SubscriptionRecord,
        expected_version: int,
    ) -> SubscriptionRecord: ...

    def append_history(self, entry: HistoryEntry) -> None: ...

    def count_children(self, owner_id: int) -> int: ...


def subscription_to_record(subscription: Subscription) -> SubscriptionRecord:
    """
    Convert an ORM row to a typed record.

    Raises:
        CorruptRecordError: if the row does not satisfy the record schema.
    """
    data = {field: getattr(subscription, field) for field in SUBSCRIPTION_FIELDS}
    try:
        return SubscriptionRecord(
            id=subscription.pk,
            owner_id=subscription.owner_id,
            version=subscription.version,
            **data,
        )
    except PydanticValidationError as exc:
        logger.exception(
            "Corrupt subscription row id=%s owner=%s",
            subscription.pk,
            subscription.owner_id,
        )
        msg = f"Subscription {subscription.pk} is not a valid record"
        raise CorruptRecordError(msg) from exc


class DjangoSubscriptionStore:
    """
    ORM backed SubscriptionStore.

    Usage:
        store = DjangoSubscriptionStore()
        record = store.get_subscription(user.pk)
    """

    def get_subscription(self, owner_id: int) -> SubscriptionRecord | None:
        subscription = Subscription.objects.filter(owner_id=owner_id).first()
        if subscription is None:
            return None
        return subscription_to_record(subscription)

    def create_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """
        Insert the first subscription of an owner.

        Raises:
            DuplicateSubscriptionError: if the owner already has one.
        """
        data = {field: getattr(record, field) for field in SUBSCRIPTION_FIELDS}
        try:
            with transaction.atomic():
                subscription = Subscription.objects.create(
                    owner_id=record.owner_id,
                    version=1,
                    **data,
                )
        except IntegrityError as exc:
            msg = f"Owner {record.owner_id} already has a subscription"
            raise DuplicateSubscriptionError(msg) from exc
        return subscription_to_record(subscription)

    def put_subscription(
        self,
        record: SubscriptionRecord,
        expected_version: int,
    ) -> SubscriptionRecord:
        """
        Update the owner's row if it is still at ``expected_version``.

        Raises:
            SubscriptionNotFoundError: if the owner has no subscription.
            StaleSubscriptionError: if another write got there first.
        """
        data = {field: getattr(record, field) for field in SUBSCRIPTION_FIELDS}
        updated = Subscription.objects.filter(
            owner_id=record.owner_id,
            version=expected_version,
        ).update(version=F("version") + 1, **data)

        if updated == 0:
            if not Subscription.objects.filter(owner_id=record.owner_id).exists():
                msg = f"No subscription for owner {record.owner_id}"
                raise SubscriptionNotFoundError(msg)
            msg = (
                f"Subscription of owner {record.owner_id} changed since "
                f"version {expected_version}"
            )
            raise StaleSubscriptionError(msg)

        return subscription_to_record(Subscription.objects.get(owner_id=record.owner_id))

    def append_history(self, entry: HistoryEntry) -> None:
        SubscriptionHistory.objects.create(**entry.model_dump())

    def list_history(self, owner_id: int) -> list[HistoryEntry]:
        rows = SubscriptionHistory.objects.filter(subscription_owner_id=owner_id)
        return [
            HistoryEntry(
                subscription_owner_id=row.subscription_owner_id,
                action_type=row.action_type,
                child_count_at_action=row.child_count_at_action,
                price_at_action=row.price_at_action,
                plan_tier_at_action=row.plan_tier_at_action,
                timestamp=row.timestamp,
                notes=row.notes,
            )
            for row in rows
        ]

    def count_children(self, owner_id: int) -> int:
        return ChildProfile.objects.filter(parent_id=owner_id).count()

    def expirable_owner_ids(self, now: datetime) -> list[int]:
        """Owners whose trial or paid period ended before ``now``."""
        return list(
            Subscription.objects.filter(
                Q(status=SubscriptionStatus.TRIAL, trial_end__lt=now)
                | Q(status=SubscriptionStatus.ACTIVE, subscription_end__lt=now),
            )
            .order_by("pk")
            .values_list("owner_id", flat=True),
        )
