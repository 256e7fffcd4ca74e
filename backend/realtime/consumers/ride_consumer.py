"""Ride tracking WebSocket consumer for real-time driver location."""

import asyncio
import logging
from typing import Dict, Any, Set

from channels.db import database_sync_to_async
from django.conf import settings

from common.tracking import LocationFix
from common.utils.coordinates import InvalidCoordinateError
from .. import messages
from ..broadcast import ride_group, tracking_state_event
from ..relay import ACCURACY_DEGRADED, relay_driver_fix
from ..sessions import session_registry
from .base import BaseConsumer

logger = logging.getLogger(__name__)

IDLE_CHECK_SECONDS = getattr(settings, "TRACKING_IDLE_CHECK_SECONDS", 15)


def _ride_id(data: Dict[str, Any]):
    value = data.get("rideId")
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class RideConsumer(BaseConsumer):
    """
    WebSocket consumer for ride tracking.

    Riders and drivers send ``start_tracking`` to subscribe to a ride; the
    assigned driver streams ``location_update`` messages, which are relayed
    to every subscriber of that ride at send time.
    """

    message_handlers = {
        "start_tracking": "_handle_start_tracking",
        "stop_tracking": "_handle_stop_tracking",
        "location_update": "_handle_location_update",
    }

    async def on_connect(self):
        """Set up ride tracking connection."""
        self.tracked_rides: Set[int] = set()
        self._idle_watcher = None

        await self.send_json({
            "type": "connection_established",
            "userId": self.user_id,
            "role": self.role,
            "message": "Ride tracking connection established",
        })

    async def on_disconnect(self, close_code):
        if getattr(self, "_idle_watcher", None) is not None:
            self._idle_watcher.cancel()
        for ride_id in list(getattr(self, "tracked_rides", ())):
            await self._unsubscribe(ride_id)

    # ---------------------- Message Handlers ----------------------

    async def _handle_start_tracking(self, data: Dict[str, Any]):
        """
        Subscribe to a ride.
        Only the ride's rider or driver may subscribe, and only while the ride is trackable.
        """
        ride_id = _ride_id(data)
        if ride_id is None:
            await self.send_error("start_tracking requires rideId")
            return

        ride = await self._get_ride(ride_id)
        if ride is None:
            await self.send_error("Ride not found")
            return
        if not ride.is_participant(self.user_id):
            await self.send_error("You are not authorized to track this ride")
            return
        if not ride.is_trackable:
            await self.send_error(f"Ride is {ride.status}; live tracking is not available")
            return

        session = session_registry.open(ride.id, ride.rider_id, ride.driver_id)
        session_registry.subscribe(ride.id, self.channel_name)

        await self.join_group(ride_group(ride.id))
        self.tracked_rides.add(ride.id)
        if self._idle_watcher is None:
            self._idle_watcher = asyncio.ensure_future(self._watch_idle())

        await self.send_message("tracking_started", rideId=ride.id, state=session.state.value)
        await self.send_message("location_history", rideId=ride.id, locations=session.history())

    async def _handle_stop_tracking(self, data: Dict[str, Any]):
        """Unsubscribe from a ride."""
        ride_id = _ride_id(data)
        if ride_id is None:
            await self.send_error("stop_tracking requires rideId")
            return

        await self._unsubscribe(ride_id)
        await self.send_message("tracking_stopped", rideId=ride_id, reason="stopped")

    async def _handle_location_update(self, data: Dict[str, Any]):
        """
        Driver sends a fix during an active ride.
        Low-accuracy and placeholder coordinates are never relayed.
        """
        if self.role != "driver":
            await self.send_error("Only drivers can send location updates")
            return

        ride_id = _ride_id(data)
        location = data.get("location")
        if ride_id is None or not isinstance(location, dict):
            await self.send_error("location_update requires rideId and location")
            return

        driver_id = data.get("driverId")
        if driver_id is not None and str(driver_id) != str(self.user_id):
            await self.send_error("driverId does not match the connected driver")
            return

        try:
            fix = LocationFix.from_wire(location)
        except InvalidCoordinateError as exc:
            logger.info("Rejected coordinates from driver %s for ride %s: %s", self.user_id, ride_id, exc.reason)
            await self.send_error(exc.user_message)
            return
        except (TypeError, ValueError):
            await self.send_error("Invalid location payload")
            return

        result = await database_sync_to_async(relay_driver_fix)(ride_id, self.user_id, fix)
        if not result.relayed and result.outcome != ACCURACY_DEGRADED:
            await self.send_error(result.message)

    async def _watch_idle(self):
        """Announce tracking_idle for this socket's rides once the driver goes quiet."""
        while True:
            await asyncio.sleep(IDLE_CHECK_SECONDS)
            try:
                for session in session_registry.sweep_idle(ride_ids=list(self.tracked_rides)):
                    logger.info("Ride %s tracking idle since %s", session.ride_id, session.last_fix_at)
                    await self.channel_layer.group_send(
                        ride_group(session.ride_id),
                        tracking_state_event(session.ride_id, session.state.value),
                    )
            except Exception:
                logger.exception("Idle check failed for user %s", self.user_id)

    async def _unsubscribe(self, ride_id: int):
        await self.leave_group(ride_group(ride_id))
        self.tracked_rides.discard(ride_id)
        session_registry.unsubscribe(ride_id, self.channel_name)

    # ---------------------- Event Handlers (from group_send) ----------------------

    async def location_update(self, event):
        """Forward a relayed driver fix."""
        await self.send_json(messages.location_update(event))

    async def accuracy_degraded(self, event):
        await self.send_json(messages.accuracy_degraded(event))

    async def tracking_state(self, event):
        await self.send_json(messages.tracking_state(event))

    async def tracking_stopped(self, event):
        """Ride left the trackable statuses: stop listening to it."""
        ride_id = event.get("ride_id")
        await self.leave_group(ride_group(ride_id))
        self.tracked_rides.discard(ride_id)
        await self.send_json(messages.tracking_stopped(event))

    # ---------------------- Database Helpers ----------------------

    @database_sync_to_async
    def _get_ride(self, ride_id: int):
        from rides.models import Ride
        return Ride.objects.filter(id=ride_id).first()
