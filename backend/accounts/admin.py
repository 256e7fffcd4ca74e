from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin

from accounts.models import User
from notifications.models import NotificationPreference


class NotificationPreferenceInline(admin.StackedInline):
    model = NotificationPreference
    can_delete = False
    extra = 0
    fields = ("email_enabled", "sms_enabled", "push_enabled", "emergency_only")


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """Users with their role, contact details and last seen activity"""

    inlines = [NotificationPreferenceInline]

    list_display = ("username", "email", "role", "phone_number", "email_verified", "last_activity_at")
    list_filter = ("role", "email_verified", "is_active")
    search_fields = ("username", "email", "phone_number")
    ordering = ("-date_joined",)
    readonly_fields = ("last_activity_at",)

    fieldsets = BaseUserAdmin.fieldsets + (
        ("Contact & Activity", {"fields": ("role", "phone_number", "email_verified", "last_activity_at")}),
    )
    add_fieldsets = BaseUserAdmin.add_fieldsets + (
        ("Role", {"fields": ("role", "phone_number")}),
    )
