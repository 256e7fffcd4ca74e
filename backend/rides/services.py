"""
Core ride lifecycle operations.

Status changes are the source of truth for live tracking: leaving the
trackable statuses closes the ride's tracking session. Each lifecycle step
also notifies the rider through the notification dispatcher.
"""

import logging
from typing import Optional, Dict, Any
from dataclasses import dataclass

from django.db import transaction
from django.utils import timezone

from realtime.broadcast import broadcast_ride_status, close_ride_tracking
from .exceptions import InvalidStatusTransitionError, RideNotFoundError
from .models import Ride

logger = logging.getLogger(__name__)


@dataclass
class RideResult:
    """Result object for ride operations."""
    success: bool
    ride: Optional[Ride] = None
    message: str = ""
    error_code: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None


ALLOWED_TRANSITIONS = {
    'pending': {'accepted', 'cancelled'},
    'accepted': {'en_route', 'cancelled'},
    'en_route': {'arrived', 'cancelled'},
    'arrived': {'in_progress', 'cancelled'},
    'in_progress': {'completed', 'cancelled'},
    'completed': set(),
    'cancelled': set(),
}

# Status -> tracking event sent to the rider
TRACKING_EVENTS = {
    'en_route': ('started', 'Your driver is on the way.'),
    'arrived': ('pickup', 'Your driver has arrived at the pickup location.'),
    'completed': ('dropoff', 'You have arrived at your destination.'),
}

STATUS_MESSAGES = {
    'accepted': 'A driver accepted your ride.',
    'en_route': 'Driver is on the way!',
    'arrived': 'Driver has arrived at pickup.',
    'in_progress': 'Ride in progress.',
    'completed': 'Ride completed. Thank you for riding with MyAmbulex!',
    'cancelled': 'Ride cancelled.',
}


def _format_time(value) -> Optional[str]:
    if value is None:
        return None
    return timezone.localtime(value).strftime("%b %d, %Y %I:%M %p")


def ride_template_data(ride: Ride) -> Dict[str, Any]:
    """Placeholder values shared by the ride templates."""
    rider = ride.rider
    data = {
        "rideId": ride.id,
        "rideReference": ride.display_reference,
        "firstName": rider.first_name,
        "pickupAddress": ride.pickup_address,
        "dropoffAddress": ride.dropoff_address,
        "scheduledTime": _format_time(ride.scheduled_time),
        "finalPrice": ride.final_price,
    }
    if ride.driver_id:
        driver = ride.driver
        data["driverName"] = driver.display_name
        profile = getattr(driver, "driver_profile", None)
        if profile is not None:
            data["vehicle"] = profile.vehicle_description or profile.vehicle_number
    return data


def _notify(template_id: str, ride: Ride):
    """Send a ride template to the rider; failures never break the lifecycle step."""
    from notifications.dispatcher import get_dispatcher
    try:
        get_dispatcher().send(ride.rider_id, template_id, ride_template_data(ride))
    except Exception:
        logger.exception("Failed to send %s for ride %s", template_id, ride.id)


def _notify_tracking(ride: Ride, event: str, message: str):
    from notifications.dispatcher import get_dispatcher
    get_dispatcher().send_ride_tracking_notification(
        ride.rider_id, ride.id, event, message, data=ride_template_data(ride)
    )


def get_ride(ride_id: int) -> Ride:
    try:
        return Ride.objects.select_related('rider', 'driver').get(id=ride_id)
    except Ride.DoesNotExist:
        raise RideNotFoundError("Ride not found")


@transaction.atomic
def book_ride(rider, **fields) -> RideResult:
    """
    Create a pending ride for a rider and confirm the booking.

    Args:
        rider: User model instance (rider)
        **fields: Ride model fields (addresses, coordinates, schedule, price)

    Returns:
        RideResult with the created ride
    """
    ride = Ride.objects.create(rider=rider, status='pending', **fields)
    if not ride.reference_number:
        ride.reference_number = f"MA-{ride.id:06d}"
        ride.save(update_fields=['reference_number'])

    _notify('ride_booked', ride)
    return RideResult(success=True, ride=ride, message="Ride booked")


@transaction.atomic
def assign_driver(ride_id: int, driver) -> RideResult:
    """
    Assign a driver to a pending ride.

    Args:
        ride_id: ID of the ride
        driver: User model instance (driver)

    Returns:
        RideResult with the accepted ride
    """
    ride = get_ride(ride_id)
    if ride.status != 'pending':
        raise InvalidStatusTransitionError(f"Cannot assign a driver - ride is already {ride.status}")

    ride.driver = driver
    ride.status = 'accepted'
    ride.accepted_at = timezone.now()
    ride.save(update_fields=['driver', 'status', 'accepted_at'])

    _after_status_change(ride, 'pending')
    _notify('driver_assigned', ride)
    return RideResult(success=True, ride=ride, message="Driver assigned")


@transaction.atomic
def update_ride_status(ride_id: int, new_status: str, actor=None) -> RideResult:
    """
    Move a ride to a new status.

    Args:
        ride_id: ID of the ride
        new_status: Target status
        actor: User making the change (must be the assigned driver when given)

    Returns:
        RideResult with the updated ride

    Raises:
        RideNotFoundError: Unknown ride, or actor is not the assigned driver
        InvalidStatusTransitionError: Target status not reachable from the current one
    """
    ride = get_ride(ride_id)
    if actor is not None and ride.driver_id != actor.id:
        raise RideNotFoundError("Ride not found or not assigned to you")

    previous = ride.status
    if new_status not in ALLOWED_TRANSITIONS.get(previous, set()):
        raise InvalidStatusTransitionError(f"Cannot move ride from {previous} to {new_status}")

    ride.status = new_status
    update_fields = ['status']
    now = timezone.now()
    if new_status == 'completed':
        ride.completed_at = now
        update_fields.append('completed_at')
        if ride.final_price is None and ride.estimated_price is not None:
            ride.final_price = ride.estimated_price
            update_fields.append('final_price')
    elif new_status == 'cancelled':
        ride.cancelled_at = now
        update_fields.append('cancelled_at')
    ride.save(update_fields=update_fields)

    _after_status_change(ride, previous)
    return RideResult(
        success=True,
        ride=ride,
        message=STATUS_MESSAGES.get(new_status, ""),
        extra={"previous_status": previous}
    )


def _after_status_change(ride: Ride, previous: str):
    """Broadcast the change, stop tracking when it ends, and notify the rider."""
    broadcast_ride_status(ride.id, ride.status, STATUS_MESSAGES.get(ride.status, ""))

    if previous in Ride.TRACKABLE_STATUSES and not ride.is_trackable:
        close_ride_tracking(ride.id, reason=f"ride_{ride.status}")

    tracking_event = TRACKING_EVENTS.get(ride.status)
    if tracking_event:
        _notify_tracking(ride, *tracking_event)

    if ride.status == 'completed':
        _notify('ride_completed', ride)
