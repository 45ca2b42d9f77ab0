"""
URL configuration for billing API endpoints.
"""

from django.urls import path

from .views import AddChildView
from .views import AdminSubscriptionUpdateView
from .views import CancelSubscriptionView
from .views import ChangePlanView
from .views import PlanListView
from .views import PromoCodeCheckView
from .views import ReactivateSubscriptionView
from .views import SubscriptionView
from .views import TrialSettingsView

app_name = "billing"

urlpatterns = [
    path("plans/", PlanListView.as_view(), name="plans"),
    path("subscription/", SubscriptionView.as_view(), name="subscription"),
    path(
        "subscription/change-plan/",
        ChangePlanView.as_view(),
        name="subscription-change-plan",
    ),
    path(
        "subscription/children/",
        AddChildView.as_view(),
        name="subscription-add-child",
    ),
    path(
        "subscription/cancel/",
        CancelSubscriptionView.as_view(),
        name="subscription-cancel",
    ),
    path(
        "subscription/reactivate/",
        ReactivateSubscriptionView.as_view(),
        name="subscription-reactivate",
    ),
    path(
        "promo-codes/validate/",
        PromoCodeCheckView.as_view(),
        name="promo-code-validate",
    ),
    path(
        "admin/subscriptions/",
        AdminSubscriptionUpdateView.as_view(),
        name="admin-subscriptions",
    ),
    path(
        "admin/trial-settings/",
        TrialSettingsView.as_view(),
        name="admin-trial-settings",
    ),
]
