"""
Sync helpers that publish ride events to the ``ride_<id>`` channel group.

Called from views, services and Celery tasks (and from consumer code through
``database_sync_to_async``). Every subscriber of a ride is in its group, so a
single group_send is the per-ride fan-out.
"""

from __future__ import annotations

import logging
from typing import Optional

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

from common.tracking import LocationFix
from .sessions import session_registry

logger = logging.getLogger(__name__)


def ride_group(ride_id) -> str:
    return f"ride_{ride_id}"


def _group_send(group: str, message: dict) -> bool:
    channel_layer = get_channel_layer()
    if channel_layer is None:
        logger.warning("No channel layer configured; dropping %s for %s", message.get("type"), group)
        return False
    async_to_sync(channel_layer.group_send)(group, message)
    return True


def relay_location(ride_id: int, driver_id: int, fix: LocationFix) -> bool:
    """Fan a device fix out to everyone currently subscribed to the ride."""
    return _group_send(ride_group(ride_id), {
        "type": "location.update",
        "ride_id": ride_id,
        "driver_id": driver_id,
        "location": fix.to_wire(),
    })


def signal_accuracy_degraded(ride_id: int, accuracy: Optional[float]) -> bool:
    return _group_send(ride_group(ride_id), {
        "type": "accuracy.degraded",
        "ride_id": ride_id,
        "accuracy": accuracy,
    })


def broadcast_ride_status(ride_id: int, status: str, message: str = "") -> bool:
    try:
        return _group_send(ride_group(ride_id), {
            "type": "ride.status",
            "ride_id": ride_id,
            "status": status,
            "message": message,
        })
    except Exception:
        logger.exception("Failed to broadcast status %s for ride %s", status, ride_id)
        return False


def close_ride_tracking(ride_id: int, reason: str = "ride_ended") -> bool:
    """
    Close the ride's tracking session and tell subscribers tracking stopped.

    Consumers leave the ride group when they receive the stop event, so later
    location updates for the ride reach nobody.
    """
    session = session_registry.close(ride_id, reason)
    try:
        _group_send(ride_group(ride_id), {
            "type": "tracking.stopped",
            "ride_id": ride_id,
            "reason": reason,
        })
    except Exception:
        logger.exception("Failed to broadcast tracking stop for ride %s", ride_id)
    return session is not None


def tracking_state_event(ride_id: int, state: str) -> dict:
    return {"type": "tracking.state", "ride_id": ride_id, "state": state}


def broadcast_tracking_state(ride_id: int, state: str) -> bool:
    """Tell subscribers the session moved between tracking_active and tracking_idle."""
    try:
        return _group_send(ride_group(ride_id), tracking_state_event(ride_id, state))
    except Exception:
        logger.exception("Failed to broadcast tracking state %s for ride %s", state, ride_id)
        return False
