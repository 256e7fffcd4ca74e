from django.db import models
from django.conf import settings

User = settings.AUTH_USER_MODEL


class NotificationPreference(models.Model):
    """Per-user channel and category switches. Users without a row get the defaults."""

    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name='notification_preference')

    # Global channel switches
    email_enabled = models.BooleanField(default=True)
    sms_enabled = models.BooleanField(default=True)
    push_enabled = models.BooleanField(default=True)

    # Category switches
    ride_updates = models.BooleanField(default=True)
    payment_alerts = models.BooleanField(default=True)
    system_alerts = models.BooleanField(default=True)
    marketing_emails = models.BooleanField(default=False)
    emergency_only = models.BooleanField(default=False)

    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'notification_preferences'

    def __str__(self):
        return f"Preferences for {self.user_id}"


class PushSubscription(models.Model):
    """A browser push endpoint registered by a user's device."""

    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='push_subscriptions')
    endpoint = models.URLField(max_length=500, unique=True)
    p256dh = models.CharField(max_length=255)
    auth = models.CharField(max_length=255)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'push_subscriptions'

    def __str__(self):
        return f"Push endpoint #{self.id} for {self.user_id}"

    def subscription_info(self):
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}


class NotificationLog(models.Model):
    """Audit row for every dispatch, with the per-channel outcome."""

    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='notification_logs')
    template_id = models.CharField(max_length=64)
    priority = models.CharField(max_length=10)
    results = models.JSONField(default=dict)
    succeeded = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'notification_logs'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.template_id} -> {self.user_id} ({'ok' if self.succeeded else 'failed'})"
