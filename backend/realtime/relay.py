"""
Driver fix relay shared by the WebSocket consumer and the HTTP batch fallback.

The ride row decides whether tracking may happen at all; the in-memory session
holds the rolling history and the tracking state.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from django.utils import timezone

from common.tracking import LocationFix, TrackingState
from .alerts import RideAlert, evaluate_fix
from .broadcast import (
    broadcast_tracking_state,
    close_ride_tracking,
    relay_location,
    signal_accuracy_degraded,
)
from .sessions import session_registry

logger = logging.getLogger(__name__)

# Outcome codes
RELAYED = "relayed"
RIDE_NOT_FOUND = "ride_not_found"
NOT_RIDE_DRIVER = "not_ride_driver"
NOT_TRACKABLE = "not_trackable"
SYNTHETIC_FIX = "synthetic_fix"
ACCURACY_DEGRADED = "accuracy_degraded"
SESSION_CLOSED = "session_closed"

OUTCOME_MESSAGES = {
    RIDE_NOT_FOUND: "Ride not found",
    NOT_RIDE_DRIVER: "Only the assigned driver can send location updates for this ride",
    NOT_TRACKABLE: "Ride is not being tracked",
    SYNTHETIC_FIX: "Synthetic positions are never relayed",
    ACCURACY_DEGRADED: "Location accuracy too low; fix dropped",
    SESSION_CLOSED: "Tracking session is closed",
}


@dataclass
class RelayResult:
    outcome: str
    alerts: List[RideAlert] = field(default_factory=list)

    @property
    def relayed(self) -> bool:
        return self.outcome == RELAYED

    @property
    def message(self) -> str:
        return OUTCOME_MESSAGES.get(self.outcome, "")


def _update_driver_position(driver_id: int, fix: LocationFix):
    from drivers.models import DriverProfile

    updated = DriverProfile.objects.filter(user_id=driver_id).update(
        current_latitude=round(fix.latitude, 6),
        current_longitude=round(fix.longitude, 6),
        last_location_update=timezone.now(),
    )
    if not updated:
        logger.debug("Driver %s has no profile; position not stored", driver_id)


def _raise_alerts(session, fix: LocationFix) -> List[RideAlert]:
    from notifications.dispatcher import get_dispatcher

    alerts = evaluate_fix(fix, frozenset(session.raised_alerts))
    for alert in alerts:
        session.raised_alerts.add(alert.alert_type)
        get_dispatcher().send_ride_alert_notification(
            session.rider_id, session.ride_id, alert.alert_type, alert.message, alert.severity
        )
    return alerts


def relay_driver_fix(ride_id: int, driver_id: int, fix: LocationFix, ride=None) -> RelayResult:
    """
    Validate and fan out one driver fix.

    Args:
        ride_id: Ride being tracked
        driver_id: User ID of the sending driver
        fix: Coordinate-validated fix
        ride: Already loaded Ride row (optional)

    Returns:
        RelayResult describing whether the fix reached the ride's subscribers
    """
    from rides.models import Ride

    if fix.is_synthetic:
        return RelayResult(SYNTHETIC_FIX)

    if ride is None:
        ride = Ride.objects.filter(id=ride_id).first()
    if ride is None:
        return RelayResult(RIDE_NOT_FOUND)
    if ride.driver_id != driver_id:
        return RelayResult(NOT_RIDE_DRIVER)
    if not ride.is_trackable:
        if session_registry.get(ride.id) is not None:
            close_ride_tracking(ride.id, reason=f"ride_{ride.status}")
        return RelayResult(NOT_TRACKABLE)

    if fix.exceeds_accuracy_limit:
        logger.info("Dropping fix for ride %s: accuracy %.0fm", ride.id, fix.accuracy)
        signal_accuracy_degraded(ride.id, fix.accuracy)
        return RelayResult(ACCURACY_DEGRADED)

    resuming = session_registry.open(ride.id, ride.rider_id, ride.driver_id).state is TrackingState.TRACKING_IDLE
    session = session_registry.record(ride.id, fix)
    if session is None:
        return RelayResult(SESSION_CLOSED)

    relay_location(ride.id, driver_id, fix)
    if resuming:
        broadcast_tracking_state(ride.id, session.state.value)
    _update_driver_position(driver_id, fix)

    alerts = []
    try:
        alerts = _raise_alerts(session, fix)
    except Exception:
        logger.exception("Alert evaluation failed for ride %s", ride.id)

    return RelayResult(RELAYED, alerts=alerts)
