"""
Billing models for the PioPi subscription engine.

Key design decisions:
- Plan tiers are not a table; they live in the static catalog
  (piopi.billing.catalog) and Subscription stores the tier code.
- Subscription is 1:1 with the parent account and is never deleted;
  cancellation and expiry are status changes.
- Every write of a Subscription bumps ``version``; the storage layer only
  updates a row whose version it read (compare-and-swap).
- SubscriptionHistory is append-only, one row per state transition.

Relationship: User ──1:1── Subscription ──1:N── SubscriptionHistory
"""

from django.conf import settings
from django.db import models
from django.db.models import F
from django.utils import timezone
from model_utils.models import TimeStampedModel

from piopi.billing.constants import BillingPeriod
from piopi.billing.constants import HistoryAction
from piopi.billing.constants import PlanCode
from piopi.billing.constants import SubscriptionStatus


class Subscription(TimeStampedModel):
    """
    Billing subscription for a parent account.

    ``price`` is derived from (plan_tier, billed_child_count) through the
    pricing engine and persisted so support can audit what was charged.

    Usage:
        record = DjangoSubscriptionStore().get_subscription(owner_id)
    """

    owner = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="subscription",
    )
    plan_tier = models.CharField(max_length=16, choices=PlanCode.choices)
    billing_period = models.CharField(
        max_length=16,
        choices=BillingPeriod.choices,
        default=BillingPeriod.MONTHLY,
    )
    billed_child_count = models.PositiveIntegerField(
        help_text="Children the price is computed for, not the profile count.",
    )
    price = models.DecimalField(
        max_digits=8,
        decimal_places=2,
        help_text="Monthly price in euros at the last mutation.",
    )
    status = models.CharField(
        max_length=16,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.TRIAL,
    )

    trial_start = models.DateTimeField()
    trial_end = models.DateTimeField()
    subscription_start = models.DateTimeField(null=True, blank=True)
    subscription_end = models.DateTimeField(null=True, blank=True)

    promo_code = models.CharField(max_length=64, null=True, blank=True)
    promo_months_remaining = models.PositiveIntegerField(default=0)

    version = models.PositiveIntegerField(
        default=1,
        help_text="Row version, incremented on every write.",
    )

    class Meta:
        indexes = [
            models.Index(fields=["status"], name="billing_sub_status_6a1f0c_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.owner} - {self.plan_tier} ({self.status})"


class SubscriptionHistory(models.Model):
    """
    Audit log for subscription transitions.

    Rows are written once and never updated. The owner id is stored as a
    plain column so history survives for support and billing review.
    """

    subscription_owner_id = models.BigIntegerField(db_index=True)
    action_type = models.CharField(max_length=20, choices=HistoryAction.choices)
    child_count_at_action = models.PositiveIntegerField()
    price_at_action = models.DecimalField(max_digits=8, decimal_places=2)
    plan_tier_at_action = models.CharField(max_length=16, choices=PlanCode.choices)
    timestamp = models.DateTimeField(default=timezone.now)
    notes = models.TextField(blank=True, default="")

    class Meta:
        ordering = ["-timestamp", "-id"]
        verbose_name_plural = "subscription history"

    def __str__(self) -> str:
        return f"{self.subscription_owner_id}: {self.action_type} @ {self.timestamp}"


class PromoCode(TimeStampedModel):
    """
    Promotional code granting free trial months.

    ``current_uses`` is only incremented when a trial is actually created
    with the code, never when a parent merely checks it.
    """

    code = models.CharField(max_length=64, unique=True)
    description = models.CharField(max_length=255, blank=True, default="")
    free_months = models.PositiveIntegerField(default=1)
    max_uses = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Null = unlimited.",
    )
    current_uses = models.PositiveIntegerField(default=0)
    valid_from = models.DateTimeField(default=timezone.now)
    valid_until = models.DateTimeField(null=True, blank=True)
    active = models.BooleanField(default=True)

    class Meta:
        ordering = ["-created"]

    def __str__(self) -> str:
        return self.code

    def save(self, *args, **kwargs):
        self.code = self.code.strip().upper()
        super().save(*args, **kwargs)

    @property
    def is_exhausted(self) -> bool:
        return self.max_uses is not None and self.current_uses >= self.max_uses

    def increment_usage(self) -> bool:
        """
        Count one more use. Returns False when the code was already used up,
        in which case nothing is written.
        """
        qs = PromoCode.objects.filter(pk=self.pk)
        if self.max_uses is not None:
            qs = qs.filter(current_uses__lt=self.max_uses)
        return qs.update(current_uses=F("current_uses") + 1) == 1


class TrialSettings(TimeStampedModel):
    """
    Singleton holding the admin trial campaign as a JSON document.

    Read it through piopi.billing.trial_settings.get_trial_config().
    """

    DEFAULT_SLUG = "default"

    slug = models.SlugField(unique=True, default=DEFAULT_SLUG)
    data = models.JSONField(default=dict, blank=True)

    class Meta:
        verbose_name_plural = "trial settings"

    def __str__(self) -> str:
        return f"Trial settings ({self.slug})"
