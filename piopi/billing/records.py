"""
Typed records exchanged between the lifecycle and its storage collaborator.

The lifecycle never touches ORM instances. Rows are converted to these
pydantic models at the storage boundary, so a row with a missing or
malformed field fails there with CorruptRecordError instead of leaking
``None`` into price arithmetic.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import model_validator

from piopi.billing.constants import BillingPeriod
from piopi.billing.constants import HistoryAction
from piopi.billing.constants import PlanCode
from piopi.billing.constants import SubscriptionStatus


class SubscriptionRecord(BaseModel):
    """Snapshot of one parent's subscription."""

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    owner_id: int
    plan_tier: PlanCode
    billing_period: BillingPeriod
    billed_child_count: int = Field(ge=1)
    price: Decimal = Field(ge=0, decimal_places=2)
    status: SubscriptionStatus
    trial_start: datetime
    trial_end: datetime
    subscription_start: datetime | None = None
    subscription_end: datetime | None = None
    promo_code: str | None = None
    promo_months_remaining: int = Field(default=0, ge=0)
    version: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_trial_window(self) -> SubscriptionRecord:
        if self.trial_end < self.trial_start:
            raise ValueError("trial_end is before trial_start")
        return self

    @property
    def access_ends_at(self) -> datetime | None:
        """When access actually lapses for this subscription."""
        if self.status == SubscriptionStatus.TRIAL:
            return self.trial_end
        if self.subscription_end is not None:
            return self.subscription_end
        if self.subscription_start is None:
            # Cancelled before ever paying: the trial end still applies.
            return self.trial_end
        return None

    def evolve(self, **changes) -> SubscriptionRecord:
        """Copy with ``changes`` applied and validated."""
        data = self.model_dump()
        data.update(changes)
        return SubscriptionRecord(**data)


class HistoryEntry(BaseModel):
    """One append-only audit row."""

    model_config = ConfigDict(frozen=True)

    subscription_owner_id: int
    action_type: HistoryAction
    child_count_at_action: int = Field(ge=0)
    price_at_action: Decimal = Field(ge=0, decimal_places=2)
    plan_tier_at_action: PlanCode
    timestamp: datetime
    notes: str = ""

    @classmethod
    def for_subscription(
        cls,
        record: SubscriptionRecord,
        action_type: HistoryAction,
        timestamp: datetime,
        notes: str = "",
    ) -> HistoryEntry:
        return cls(
            subscription_owner_id=record.owner_id,
            action_type=action_type,
            child_count_at_action=record.billed_child_count,
            price_at_action=record.price,
            plan_tier_at_action=record.plan_tier,
            timestamp=timestamp,
            notes=notes,
        )
