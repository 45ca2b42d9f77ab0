from rest_framework import serializers

from piopi.billing.constants import BillingPeriod
from piopi.billing.constants import PlanCode


class PlanSerializer(serializers.Serializer):
    """Read-only view of a catalog tier."""

    id = serializers.CharField()
    label = serializers.CharField()
    description = serializers.CharField()
    included_children = serializers.IntegerField()
    base_price = serializers.DecimalField(max_digits=8, decimal_places=2)
    extra_child_price = serializers.DecimalField(max_digits=8, decimal_places=2)
    yearly_price = serializers.DecimalField(max_digits=8, decimal_places=2)
    on_overflow = serializers.CharField()
    is_capped = serializers.BooleanField()


class SubscriptionSerializer(serializers.Serializer):
    """Read-only view of a SubscriptionRecord."""

    plan_tier = serializers.CharField()
    billing_period = serializers.CharField()
    billed_child_count = serializers.IntegerField()
    price = serializers.DecimalField(max_digits=8, decimal_places=2)
    status = serializers.CharField()
    trial_start = serializers.DateTimeField()
    trial_end = serializers.DateTimeField()
    subscription_start = serializers.DateTimeField(allow_null=True)
    subscription_end = serializers.DateTimeField(allow_null=True)
    promo_code = serializers.CharField(allow_null=True)
    promo_months_remaining = serializers.IntegerField()
    access_ends_at = serializers.DateTimeField(allow_null=True)


class HistoryEntrySerializer(serializers.Serializer):
    action_type = serializers.CharField()
    child_count_at_action = serializers.IntegerField()
    price_at_action = serializers.DecimalField(max_digits=8, decimal_places=2)
    plan_tier_at_action = serializers.CharField()
    timestamp = serializers.DateTimeField()
    notes = serializers.CharField()


class WarningSerializer(serializers.Serializer):
    code = serializers.CharField()
    message = serializers.CharField()


class StartTrialSerializer(serializers.Serializer):
    planType = serializers.ChoiceField(choices=PlanCode.choices)  # noqa: N815
    billingPeriod = serializers.ChoiceField(  # noqa: N815
        choices=BillingPeriod.choices,
        default=BillingPeriod.MONTHLY,
    )
    promoCode = serializers.CharField(  # noqa: N815
        required=False,
        allow_blank=True,
        allow_null=True,
    )


class ChangePlanSerializer(serializers.Serializer):
    planType = serializers.ChoiceField(choices=PlanCode.choices)  # noqa: N815
    childCount = serializers.IntegerField(  # noqa: N815
        required=False,
        allow_null=True,
        min_value=1,
    )


class AddChildSerializer(serializers.Serializer):
    childCount = serializers.IntegerField(min_value=0)  # noqa: N815


class PromoCodeCheckSerializer(serializers.Serializer):
    code = serializers.CharField(max_length=64)


class AdminSubscriptionUpdateSerializer(serializers.Serializer):
    """Body of the admin "set this user's plan" call."""

    userId = serializers.IntegerField()  # noqa: N815
    planType = serializers.ChoiceField(choices=PlanCode.choices)  # noqa: N815
    activationEndDate = serializers.DateField(  # noqa: N815
        required=False,
        allow_null=True,
    )
