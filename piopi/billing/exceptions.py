"""
Exceptions raised by the billing engine.

Every error carries a stable ``code`` so callers (the API layer, the
frontend) can branch on the kind of failure without parsing messages.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base exception for billing errors."""

    code = "billing_error"


class UnknownTierError(BillingError):
    """Raised when a tier id is not one of the catalog tiers."""

    code = "unknown_tier"

    def __init__(self, tier_id: object):
        self.tier_id = tier_id
        super().__init__(f"Unknown plan tier: {tier_id!r}")


class InvalidChildCountError(BillingError):
    """Raised when a billed child count is impossible for the tier."""

    code = "invalid_child_count"


class InvalidBillingPeriodError(BillingError):
    code = "invalid_billing_period"


class DuplicateSubscriptionError(BillingError):
    """Raised when an owner already holds a subscription."""

    code = "duplicate_subscription"


class SubscriptionNotFoundError(BillingError):
    code = "subscription_not_found"


class InvalidTransitionError(BillingError):
    """Raised when an operation is attempted from a state that forbids it."""

    code = "invalid_transition"

    def __init__(self, operation: str, status: str):
        self.operation = operation
        self.status = status
        super().__init__(f"Cannot {operation} a subscription that is {status}")


class UpgradeRequiredError(BillingError):
    """
    Raised when a capped tier would have to bill more children than it
    includes. The parent has to pick a bigger tier first.
    """

    code = "upgrade_required"

    def __init__(self, tier_id: str, included_children: int, requested: int):
        self.tier_id = tier_id
        self.included_children = included_children
        self.requested = requested
        super().__init__(
            f"Plan {tier_id} includes {included_children} children, "
            f"{requested} requested",
        )


class CorruptRecordError(BillingError):
    """Raised when a stored row cannot be turned into a typed record."""

    code = "corrupt_record"


class StaleSubscriptionError(BillingError):
    """Raised by the store when a conditional write loses a race."""

    code = "stale_subscription"


class ConcurrentModificationError(BillingError):
    """Raised when retries are exhausted after repeated write conflicts."""

    code = "concurrent_modification"


class NotificationError(Exception):
    """Raised by a notifier when an event could not be delivered."""


class PromoValidationError(Exception):
    """Raised by a promo validator when the code cannot be checked at all."""
