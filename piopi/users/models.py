from django.contrib.auth.models import AbstractUser
from django.db import models
from django.db.models import CharField
from django.utils.translation import gettext_lazy as _
from model_utils.models import TimeStampedModel


class User(AbstractUser):
    """
    Parent (or staff) account.

    Children never log in with a password; they are ChildProfile rows owned
    by a parent account.
    """

    class Role(models.TextChoices):
        PARENT = "parent", _("Parent")
        ADMIN = "admin", _("Admin")

    # First and last name do not cover name patterns around the globe
    name = CharField(_("Name of User"), blank=True, max_length=255)
    role = models.CharField(
        max_length=16,
        choices=Role.choices,
        default=Role.PARENT,
    )

    first_name = None  # type: ignore[assignment]

    last_name = None  # type: ignore[assignment]

    @property
    def is_platform_admin(self) -> bool:
        return self.role == self.Role.ADMIN or self.is_superuser

    def get_full_name(self) -> str:
        return self.name or self.username


class ChildProfile(TimeStampedModel):
    """A child's profile, counted against the parent's subscription."""

    parent = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name="children",
    )
    full_name = models.CharField(max_length=255)
    age = models.PositiveSmallIntegerField(null=True, blank=True)
    grade_level = models.CharField(
        max_length=16,
        blank=True,
        default="",
        help_text=_("School grade, e.g. CP, CE1, CM2."),
    )
    birthday = models.DateField(null=True, blank=True)

    class Meta:
        ordering = ["created"]

    def __str__(self) -> str:
        return f"{self.full_name} ({self.parent})"
