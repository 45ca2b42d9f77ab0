"""
Billing API endpoints.

Thin DRF views over the subscription lifecycle. Domain errors are raised as
BillingError subclasses and translated to HTTP here, nowhere else:

    404  subscription_not_found
    409  duplicate_subscription, invalid_transition, stale/concurrent writes
    402  upgrade_required
    400  input validation (unknown tier, child count, billing period)
    500  corrupt_record

Successful mutations return the subscription plus any ``warnings`` (a
notification that could not be sent, a promo code that was not applied).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.contrib.auth import get_user_model
from drf_spectacular.utils import extend_schema
from pydantic import ValidationError as PydanticValidationError
from rest_framework import permissions
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from piopi.billing.api.serializers import AddChildSerializer
from piopi.billing.api.serializers import AdminSubscriptionUpdateSerializer
from piopi.billing.api.serializers import ChangePlanSerializer
from piopi.billing.api.serializers import HistoryEntrySerializer
from piopi.billing.api.serializers import PlanSerializer
from piopi.billing.api.serializers import PromoCodeCheckSerializer
from piopi.billing.api.serializers import StartTrialSerializer
from piopi.billing.api.serializers import SubscriptionSerializer
from piopi.billing.api.serializers import WarningSerializer
from piopi.billing.catalog import all_plans
from piopi.billing.exceptions import BillingError
from piopi.billing.exceptions import ConcurrentModificationError
from piopi.billing.exceptions import CorruptRecordError
from piopi.billing.exceptions import DuplicateSubscriptionError
from piopi.billing.exceptions import InvalidBillingPeriodError
from piopi.billing.exceptions import InvalidChildCountError
from piopi.billing.exceptions import InvalidTransitionError
from piopi.billing.exceptions import PromoValidationError
from piopi.billing.exceptions import StaleSubscriptionError
from piopi.billing.exceptions import SubscriptionNotFoundError
from piopi.billing.exceptions import UnknownTierError
from piopi.billing.exceptions import UpgradeRequiredError
from piopi.billing.promos import PromoCodeValidator
from piopi.billing.services import get_lifecycle
from piopi.billing.storage import DjangoSubscriptionStore
from piopi.billing.trial_settings import get_trial_config
from piopi.billing.trial_settings import update_trial_campaign

if TYPE_CHECKING:
    from piopi.billing.lifecycle import LifecycleResult

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    SubscriptionNotFoundError: status.HTTP_404_NOT_FOUND,
    DuplicateSubscriptionError: status.HTTP_409_CONFLICT,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    StaleSubscriptionError: status.HTTP_409_CONFLICT,
    ConcurrentModificationError: status.HTTP_409_CONFLICT,
    UpgradeRequiredError: status.HTTP_402_PAYMENT_REQUIRED,
    UnknownTierError: status.HTTP_400_BAD_REQUEST,
    InvalidChildCountError: status.HTTP_400_BAD_REQUEST,
    InvalidBillingPeriodError: status.HTTP_400_BAD_REQUEST,
    CorruptRecordError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def billing_error_response(exc: BillingError) -> Response:
    """Translate a domain error into an API response."""
    http_status = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    if http_status >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("Billing error %s: %s", exc.code, exc)
    else:
        logger.info("Billing request rejected (%s): %s", exc.code, exc)

    body = {"error": str(exc), "code": exc.code}
    if isinstance(exc, UpgradeRequiredError):
        body["included_children"] = exc.included_children
        body["requested"] = exc.requested
    return Response(body, status=http_status)


def result_response(
    result: LifecycleResult,
    http_status: int = status.HTTP_200_OK,
) -> Response:
    return Response(
        {
            "subscription": SubscriptionSerializer(result.subscription).data,
            "changed": result.changed,
            "warnings": WarningSerializer(result.warnings, many=True).data,
        },
        status=http_status,
    )


class IsPlatformAdmin(permissions.BasePermission):
    """Allows access only to PioPi administrators."""

    def has_permission(self, request, view):
        user = request.user
        return bool(user and user.is_authenticated and user.is_platform_admin)


class PlanListView(APIView):
    """The plan catalog, cheapest tier first."""

    permission_classes = [permissions.AllowAny]

    @extend_schema(responses=PlanSerializer(many=True), tags=["Billing"])
    def get(self, request):
        return Response(PlanSerializer(all_plans(), many=True).data)


class SubscriptionView(APIView):
    """
    The authenticated parent's subscription.

    GET returns it with its history. POST starts the free trial from the
    plan selection page.
    """

    permission_classes = [permissions.IsAuthenticated]

    @extend_schema(tags=["Billing"])
    def get(self, request):
        store = DjangoSubscriptionStore()
        try:
            record = store.get_subscription(request.user.pk)
        except BillingError as exc:
            return billing_error_response(exc)

        if record is None:
            return Response(
                {"error": "No subscription", "code": SubscriptionNotFoundError.code},
                status=status.HTTP_404_NOT_FOUND,
            )

        history = store.list_history(request.user.pk)
        return Response(
            {
                "subscription": SubscriptionSerializer(record).data,
                "history": HistoryEntrySerializer(history, many=True).data,
            },
        )

    @extend_schema(request=StartTrialSerializer, tags=["Billing"])
    def post(self, request):
        serializer = StartTrialSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            result = get_lifecycle().create_trial_subscription(
                request.user.pk,
                data["planType"],
                data["billingPeriod"],
                promo_code=data.get("promoCode"),
            )
        except BillingError as exc:
            return billing_error_response(exc)
        return result_response(result, status.HTTP_201_CREATED)


class ChangePlanView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    @extend_schema(request=ChangePlanSerializer, tags=["Billing"])
    def post(self, request):
        serializer = ChangePlanSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            result = get_lifecycle().change_tier(
                request.user.pk,
                data["planType"],
                child_count=data.get("childCount"),
            )
        except BillingError as exc:
            return billing_error_response(exc)
        return result_response(result)


class AddChildView(APIView):
    """
    Called by the add-child flow once a child profile has been created.

    Returns 402 when the current tier cannot take another child; the client
    then offers the upgrade.
    """

    permission_classes = [permissions.IsAuthenticated]

    @extend_schema(request=AddChildSerializer, tags=["Billing"])
    def post(self, request):
        serializer = AddChildSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            result = get_lifecycle().add_child_to_household(
                request.user.pk,
                serializer.validated_data["childCount"],
            )
        except BillingError as exc:
            return billing_error_response(exc)
        return result_response(result)


class CancelSubscriptionView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    @extend_schema(request=None, tags=["Billing"])
    def post(self, request):
        try:
            result = get_lifecycle().cancel(request.user.pk)
        except BillingError as exc:
            return billing_error_response(exc)
        return result_response(result)


class ReactivateSubscriptionView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    @extend_schema(request=None, tags=["Billing"])
    def post(self, request):
        try:
            result = get_lifecycle().reactivate(request.user.pk)
        except BillingError as exc:
            return billing_error_response(exc)
        return result_response(result)


class PromoCodeCheckView(APIView):
    """Check a promo code without redeeming it."""

    permission_classes = [permissions.IsAuthenticated]

    @extend_schema(request=PromoCodeCheckSerializer, tags=["Billing"])
    def post(self, request):
        serializer = PromoCodeCheckSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            validation = PromoCodeValidator().validate(serializer.validated_data["code"])
        except PromoValidationError:
            return Response(
                {"error": "Promo codes cannot be checked right now"},
                status=status.HTTP_503_SERVICE_UNAVAILABLE,
            )
        return Response(
            {
                "valid": validation.valid,
                "free_months": validation.free_months,
                "message": validation.message,
            },
        )


class AdminSubscriptionUpdateView(APIView):
    """
    Set a parent's plan and paid period end date from the admin panel.

    The billed child count is taken from the parent's actual child
    profiles, not from the request.
    """

    permission_classes = [IsPlatformAdmin]

    @extend_schema(request=AdminSubscriptionUpdateSerializer, tags=["Billing admin"])
    def post(self, request):
        serializer = AdminSubscriptionUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        if not get_user_model().objects.filter(pk=data["userId"]).exists():
            return Response(
                {"error": "User not found"},
                status=status.HTTP_404_NOT_FOUND,
            )

        try:
            result = get_lifecycle().admin_update(
                data["userId"],
                data["planType"],
                activation_end=data.get("activationEndDate"),
            )
        except BillingError as exc:
            return billing_error_response(exc)

        logger.info(
            "Admin %s set subscription of user %s to %s",
            request.user.pk,
            data["userId"],
            data["planType"],
        )
        return result_response(result)


class TrialSettingsView(APIView):
    """Read or replace the admin trial settings and campaign."""

    permission_classes = [IsPlatformAdmin]

    @extend_schema(tags=["Billing admin"])
    def get(self, request):
        return Response(get_trial_config().model_dump(mode="json"))

    @extend_schema(tags=["Billing admin"])
    def post(self, request):
        try:
            config = update_trial_campaign(dict(request.data))
        except PydanticValidationError as exc:
            return Response(
                {"errors": exc.errors(include_url=False, include_context=False)},
                status=status.HTTP_400_BAD_REQUEST,
            )
        return Response(config.model_dump(mode="json"))
