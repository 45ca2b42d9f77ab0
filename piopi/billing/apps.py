from django.apps import AppConfig


class BillingConfig(AppConfig):
    """
    Django app configuration for the billing app.

    Handles plan pricing, free trials, promo codes and the subscription
    lifecycle.
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "piopi.billing"
