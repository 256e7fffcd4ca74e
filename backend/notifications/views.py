from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated

from .dispatcher import get_dispatcher
from .models import NotificationPreference
from .serializers import NotificationPreferenceSerializer, PushSubscriptionSerializer


@api_view(['GET', 'PUT'])
@permission_classes([IsAuthenticated])
def notification_preferences(request):
    """
    Read or update the caller's notification preferences

    GET returns the defaults when the user never saved preferences.
    PUT accepts any subset of the switches.
    """
    preference = NotificationPreference.objects.filter(user=request.user).first()

    if request.method == 'GET':
        if preference is None:
            preference = NotificationPreference(user=request.user)
        return Response(NotificationPreferenceSerializer(preference).data)

    if preference is None:
        preference = NotificationPreference(user=request.user)
    serializer = NotificationPreferenceSerializer(preference, data=request.data, partial=True)
    if serializer.is_valid():
        serializer.save(user=request.user)
        return Response(serializer.data)

    return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def register_push_subscription(request):
    """Register this browser for web push"""
    serializer = PushSubscriptionSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    record = get_dispatcher().register_push_subscription(request.user, serializer.validated_data)
    return Response(
        {'id': record.id, 'endpoint': record.endpoint, 'message': 'Push notifications enabled'},
        status=status.HTTP_201_CREATED
    )
