"""
Django admin configuration for billing models.

Provides admin interfaces for:
- Subscription: View subscriptions (writes go through the lifecycle)
- SubscriptionHistory: Read-only audit trail
- PromoCode: Create and manage promotional codes
- TrialSettings: Inspect the stored trial campaign
"""

from django.contrib import admin

from piopi.billing.models import PromoCode
from piopi.billing.models import Subscription
from piopi.billing.models import SubscriptionHistory
from piopi.billing.models import TrialSettings


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """
    Admin for parent subscriptions.

    Pricing and status fields are read-only here: editing them by hand
    would bypass the version check and leave no history row. Use the admin
    subscription API instead.
    """

    list_display = [
        "owner",
        "plan_tier",
        "billed_child_count",
        "price",
        "status",
        "trial_end",
        "subscription_end",
    ]
    list_filter = ["status", "plan_tier", "billing_period"]
    search_fields = ["owner__email", "owner__name", "promo_code"]
    raw_id_fields = ["owner"]
    readonly_fields = [
        "plan_tier",
        "billing_period",
        "billed_child_count",
        "price",
        "status",
        "version",
        "created",
        "modified",
    ]

    fieldsets = [
        (None, {"fields": ["owner", "plan_tier", "billing_period", "status"]}),
        ("Pricing", {"fields": ["billed_child_count", "price"]}),
        ("Trial", {"fields": ["trial_start", "trial_end"]}),
        (
            "Paid Period",
            {"fields": ["subscription_start", "subscription_end"]},
        ),
        ("Promo", {"fields": ["promo_code", "promo_months_remaining"]}),
        ("Timestamps", {"fields": ["version", "created", "modified"]}),
    ]


@admin.register(SubscriptionHistory)
class SubscriptionHistoryAdmin(admin.ModelAdmin):
    """Read-only audit trail."""

    list_display = [
        "subscription_owner_id",
        "action_type",
        "plan_tier_at_action",
        "child_count_at_action",
        "price_at_action",
        "timestamp",
    ]
    list_filter = ["action_type", "plan_tier_at_action"]
    search_fields = ["subscription_owner_id", "notes"]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(PromoCode)
class PromoCodeAdmin(admin.ModelAdmin):
    list_display = [
        "code",
        "free_months",
        "current_uses",
        "max_uses",
        "valid_from",
        "valid_until",
        "active",
    ]
    list_filter = ["active"]
    search_fields = ["code", "description"]
    readonly_fields = ["current_uses", "created", "modified"]


@admin.register(TrialSettings)
class TrialSettingsAdmin(admin.ModelAdmin):
    list_display = ["slug", "modified"]
    readonly_fields = ["created", "modified"]
