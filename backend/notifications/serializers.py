from rest_framework import serializers

from .models import NotificationPreference


class NotificationPreferenceSerializer(serializers.ModelSerializer):
    """Serializer for a user's notification switches"""

    class Meta:
        model = NotificationPreference
        fields = ['email_enabled', 'sms_enabled', 'push_enabled', 'ride_updates',
                  'payment_alerts', 'system_alerts', 'marketing_emails', 'emergency_only',
                  'updated_at']
        read_only_fields = ['updated_at']


class PushKeysSerializer(serializers.Serializer):
    p256dh = serializers.CharField(max_length=255)
    auth = serializers.CharField(max_length=255)


class PushSubscriptionSerializer(serializers.Serializer):
    """Browser PushSubscription.toJSON() payload"""
    endpoint = serializers.URLField(max_length=500)
    keys = PushKeysSerializer()
