import django.db.models.deletion
import django.utils.timezone
import model_utils.fields
from django.conf import settings
from django.db import migrations
from django.db import models

PLAN_CHOICES = [
    ("basic", "Solo"),
    ("duo", "Duo"),
    ("family", "Famille"),
    ("premium", "Premium"),
    ("liberte", "Liberté"),
]


def timestamp_fields():
    return [
        (
            "created",
            model_utils.fields.AutoCreatedField(
                default=django.utils.timezone.now,
                editable=False,
                verbose_name="created",
            ),
        ),
        (
            "modified",
            model_utils.fields.AutoLastModifiedField(
                default=django.utils.timezone.now,
                editable=False,
                verbose_name="modified",
            ),
        ),
    ]


def id_field():
    return (
        "id",
        models.BigAutoField(
            auto_created=True,
            primary_key=True,
            serialize=False,
            verbose_name="ID",
        ),
    )


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Subscription",
            fields=[
                id_field(),
                *timestamp_fields(),
                ("plan_tier", models.CharField(choices=PLAN_CHOICES, max_length=16)),
                (
                    "billing_period",
                    models.CharField(
                        choices=[("monthly", "Monthly"), ("yearly", "Yearly")],
                        default="monthly",
                        max_length=16,
                    ),
                ),
                (
                    "billed_child_count",
                    models.PositiveIntegerField(
                        help_text="Children the price is computed for, not the profile count.",
                    ),
                ),
                (
                    "price",
                    models.DecimalField(
                        decimal_places=2,
                        help_text="Monthly price in euros at the last mutation.",
                        max_digits=8,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("trial", "Trial"),
                            ("active", "Active"),
                            ("expired", "Expired"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="trial",
                        max_length=16,
                    ),
                ),
                ("trial_start", models.DateTimeField()),
                ("trial_end", models.DateTimeField()),
                ("subscription_start", models.DateTimeField(blank=True, null=True)),
                ("subscription_end", models.DateTimeField(blank=True, null=True)),
                ("promo_code", models.CharField(blank=True, max_length=64, null=True)),
                ("promo_months_remaining", models.PositiveIntegerField(default=0)),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Row version, incremented on every write.",
                    ),
                ),
                (
                    "owner",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="subscription",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["status"], name="billing_sub_status_6a1f0c_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionHistory",
            fields=[
                id_field(),
                ("subscription_owner_id", models.BigIntegerField(db_index=True)),
                (
                    "action_type",
                    models.CharField(
                        choices=[
                            ("created", "Created"),
                            ("updated", "Updated"),
                            ("cancelled", "Cancelled"),
                            ("renewed", "Renewed"),
                            ("trial_started", "Trial started"),
                            ("child_added", "Child added"),
                            ("child_removed", "Child removed"),
                        ],
                        max_length=20,
                    ),
                ),
                ("child_count_at_action", models.PositiveIntegerField()),
                ("price_at_action", models.DecimalField(decimal_places=2, max_digits=8)),
                (
                    "plan_tier_at_action",
                    models.CharField(choices=PLAN_CHOICES, max_length=16),
                ),
                ("timestamp", models.DateTimeField(default=django.utils.timezone.now)),
                ("notes", models.TextField(blank=True, default="")),
            ],
            options={
                "verbose_name_plural": "subscription history",
                "ordering": ["-timestamp", "-id"],
            },
        ),
        migrations.CreateModel(
            name="PromoCode",
            fields=[
                id_field(),
                *timestamp_fields(),
                ("code", models.CharField(max_length=64, unique=True)),
                (
                    "description",
                    models.CharField(blank=True, default="", max_length=255),
                ),
                ("free_months", models.PositiveIntegerField(default=1)),
                (
                    "max_uses",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Null = unlimited.",
                        null=True,
                    ),
                ),
                ("current_uses", models.PositiveIntegerField(default=0)),
                ("valid_from", models.DateTimeField(default=django.utils.timezone.now)),
                ("valid_until", models.DateTimeField(blank=True, null=True)),
                ("active", models.BooleanField(default=True)),
            ],
            options={
                "ordering": ["-created"],
            },
        ),
        migrations.CreateModel(
            name="TrialSettings",
            fields=[
                id_field(),
                *timestamp_fields(),
                ("slug", models.SlugField(default="default", unique=True)),
                ("data", models.JSONField(blank=True, default=dict)),
            ],
            options={
                "verbose_name_plural": "trial settings",
            },
        ),
    ]
