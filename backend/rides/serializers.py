from rest_framework import serializers

from .models import Ride


class RideSerializer(serializers.ModelSerializer):
    """Serializer for Rides"""
    rider = serializers.CharField(source='rider.display_name', read_only=True)
    driver = serializers.CharField(source='driver.display_name', read_only=True, default=None)

    class Meta:
        model = Ride
        fields = ['id', 'reference_number', 'rider', 'driver', 'pickup_address', 'pickup_latitude',
                  'pickup_longitude', 'dropoff_address', 'dropoff_latitude', 'dropoff_longitude',
                  'status', 'scheduled_time', 'estimated_price', 'final_price', 'created_at',
                  'accepted_at', 'completed_at', 'cancelled_at']
        read_only_fields = fields


class RideStatusUpdateSerializer(serializers.Serializer):
    """Serializer for driver status changes"""
    status = serializers.ChoiceField(choices=[choice for choice, _ in Ride.STATUS_CHOICES])


class LocationFixSerializer(serializers.Serializer):
    """One sampler fix in the camelCase wire shape"""
    lat = serializers.FloatField()
    lng = serializers.FloatField()
    timestamp = serializers.JSONField(required=False)
    accuracy = serializers.FloatField(required=False, allow_null=True)
    heading = serializers.FloatField(required=False, allow_null=True)
    speedMph = serializers.FloatField(required=False, allow_null=True)
    batteryPercent = serializers.IntegerField(required=False, allow_null=True, min_value=0, max_value=100)


class LocationBatchSerializer(serializers.Serializer):
    """HTTP fallback batch sent by the sampler when the socket is down"""
    locations = LocationFixSerializer(many=True, allow_empty=False)
