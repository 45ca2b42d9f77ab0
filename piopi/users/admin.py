from django.contrib import admin
from django.contrib.auth import admin as auth_admin
from django.utils.translation import gettext_lazy as _

from piopi.users.models import ChildProfile
from piopi.users.models import User


class ChildProfileInline(admin.TabularInline):
    model = ChildProfile
    extra = 0
    fields = ["full_name", "age", "grade_level", "birthday"]


@admin.register(User)
class UserAdmin(auth_admin.UserAdmin):
    fieldsets = (
        (None, {"fields": ("username", "password")}),
        (_("Personal info"), {"fields": ("name", "email", "role")}),
        (
            _("Permissions"),
            {
                "fields": (
                    "is_active",
                    "is_staff",
                    "is_superuser",
                    "groups",
                    "user_permissions",
                ),
            },
        ),
        (_("Important dates"), {"fields": ("last_login", "date_joined")}),
    )
    list_display = ["username", "name", "email", "role", "is_superuser"]
    list_filter = ["role", "is_staff", "is_superuser", "is_active"]
    search_fields = ["name", "username", "email"]
    inlines = [ChildProfileInline]


@admin.register(ChildProfile)
class ChildProfileAdmin(admin.ModelAdmin):
    list_display = ["full_name", "parent", "age", "grade_level", "created"]
    search_fields = ["full_name", "parent__email"]
    raw_id_fields = ["parent"]
