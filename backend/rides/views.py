import logging

from django.conf import settings
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated

from common.tracking import LocationFix
from common.utils.coordinates import InvalidCoordinateError
from common.utils.directions import DirectionsClient, route_estimate
from realtime.relay import relay_driver_fix
from .exceptions import InvalidStatusTransitionError, RideNotFoundError
from .models import Ride
from .serializers import LocationBatchSerializer, RideSerializer, RideStatusUpdateSerializer
from . import services

logger = logging.getLogger(__name__)


def _directions_client():
    api_key = getattr(settings, "GOOGLE_MAPS_API_KEY", "")
    if not api_key:
        return None
    return DirectionsClient(api_key, timeout=getattr(settings, "ROUTE_REQUEST_TIMEOUT", 8))


@api_view(['PATCH'])
@permission_classes([IsAuthenticated])
def update_ride_status(request, ride_id):
    """
    Driver moves their ride through en_route -> arrived -> in_progress -> completed

    Leaving the tracking statuses stops live tracking for every subscriber.
    """
    if request.user.role != 'driver':
        return Response(
            {'error': 'Only drivers can update ride status'},
            status=status.HTTP_403_FORBIDDEN
        )

    serializer = RideStatusUpdateSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        result = services.update_ride_status(ride_id, serializer.validated_data['status'], actor=request.user)
    except RideNotFoundError as e:
        return Response({'error': str(e)}, status=status.HTTP_404_NOT_FOUND)
    except InvalidStatusTransitionError as e:
        return Response({'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)

    return Response({
        'message': result.message,
        'ride': RideSerializer(result.ride).data,
    })


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def upload_locations(request, ride_id):
    """
    HTTP fallback for driver fixes (socket unavailable)

    Each fix goes through the same relay as WebSocket updates; rejected fixes
    are reported per index instead of failing the whole batch.
    """
    if request.user.role != 'driver':
        return Response(
            {'error': 'Only drivers can upload locations'},
            status=status.HTTP_403_FORBIDDEN
        )

    ride = Ride.objects.filter(id=ride_id).first()
    if ride is None or ride.driver_id != request.user.id:
        return Response(
            {'error': 'Ride not found or not assigned to you'},
            status=status.HTTP_404_NOT_FOUND
        )

    serializer = LocationBatchSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    relayed = 0
    rejected = []
    for index, location in enumerate(serializer.validated_data['locations']):
        try:
            fix = LocationFix.from_wire(location)
        except InvalidCoordinateError as e:
            rejected.append({'index': index, 'reason': e.user_message})
            continue

        result = relay_driver_fix(ride.id, request.user.id, fix, ride=ride)
        if result.relayed:
            relayed += 1
        else:
            rejected.append({'index': index, 'reason': result.message})

    logger.info("HTTP location batch for ride %s: %s relayed, %s rejected", ride.id, relayed, len(rejected))
    return Response({
        'relayed': relayed,
        'rejected': rejected,
    })


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def ride_estimate(request, ride_id):
    """
    Distance/ETA between the ride's pickup and dropoff

    Uses the live route when the mapping provider answers in time, otherwise
    a straight-line estimate flagged ``is_fallback``.
    """
    ride = Ride.objects.filter(id=ride_id).first()
    if ride is None or not ride.is_participant(request.user.id):
        return Response({'error': 'Ride not found'}, status=status.HTTP_404_NOT_FOUND)

    estimate = route_estimate(ride.pickup_point(), ride.dropoff_point(), client=_directions_client())
    return Response({
        'ride_id': ride.id,
        **estimate.to_dict(),
    })
