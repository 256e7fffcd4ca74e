"""Tells what to show in the Django admin interface for notifications app"""

from django.contrib import admin
from .models import NotificationLog, NotificationPreference, PushSubscription


@admin.register(NotificationPreference)
class NotificationPreferenceAdmin(admin.ModelAdmin):
    list_display = ['user', 'email_enabled', 'sms_enabled', 'push_enabled', 'emergency_only', 'updated_at']
    list_filter = ['email_enabled', 'sms_enabled', 'push_enabled', 'emergency_only']
    search_fields = ['user__username', 'user__email']


@admin.register(PushSubscription)
class PushSubscriptionAdmin(admin.ModelAdmin):
    list_display = ("user", "endpoint", "created_at")
    search_fields = ("user__username", "endpoint")


@admin.register(NotificationLog)
class NotificationLogAdmin(admin.ModelAdmin):
    """Read-only audit trail of dispatches"""
    list_display = ['template_id', 'user', 'priority', 'succeeded', 'created_at']
    list_filter = ['template_id', 'priority', 'succeeded']
    search_fields = ['user__username', 'template_id']
    readonly_fields = ['user', 'template_id', 'priority', 'results', 'succeeded', 'created_at']
    date_hierarchy = 'created_at'
