"""Read-only Server-Sent Events mirror of a ride's tracking channel."""

import json
import logging
from typing import Any, Dict, List

from channels.db import database_sync_to_async
from channels.exceptions import StopConsumer
from channels.generic.http import AsyncHttpConsumer

from .. import messages
from ..broadcast import ride_group

logger = logging.getLogger(__name__)


class RideEventStreamConsumer(AsyncHttpConsumer):
    """
    ``GET /events/rides/<ride_id>/`` streams ride group events and the
    caller's real-time notifications as ``text/event-stream``.
    """

    async def http_request(self, message):
        # The response stays open after handle() returns; only the client
        # disconnecting (or a rejection) ends the consumer.
        if "body" in message:
            self.body.append(message["body"])
        if not message.get("more_body"):
            await self.handle(b"".join(self.body))

    async def handle(self, body):
        self.groups_joined: List[str] = []
        user = self.scope.get("user")
        if user is None or user.is_anonymous:
            await self._reject(401, "Authentication required")

        ride_id = int(self.scope["url_route"]["kwargs"]["ride_id"])
        if not await self._can_view(ride_id, user.id):
            await self._reject(403, "You are not authorized to follow this ride")

        for group in (ride_group(ride_id), f"user_{user.id}"):
            await self.channel_layer.group_add(group, self.channel_name)
            self.groups_joined.append(group)

        await self.send_headers(headers=[
            (b"Cache-Control", b"no-cache"),
            (b"Content-Type", b"text/event-stream"),
            (b"X-Accel-Buffering", b"no"),
        ])
        await self.send_event("connected", {"rideId": ride_id})

    async def disconnect(self):
        for group in getattr(self, "groups_joined", []):
            await self.channel_layer.group_discard(group, self.channel_name)

    async def _reject(self, status: int, message: str):
        await self.send_response(
            status,
            json.dumps({"error": message}).encode("utf-8"),
            headers=[(b"Content-Type", b"application/json")],
        )
        await self.disconnect()
        raise StopConsumer()

    async def send_event(self, event: str, data: Dict[str, Any]):
        payload = f"event: {event}\ndata: {json.dumps(data)}\n\n"
        await self.send_body(payload.encode("utf-8"), more_body=True)

    # ---------------------- Event Handlers (from group_send) ----------------------

    async def location_update(self, event):
        await self.send_event("location_update", messages.location_update(event))

    async def accuracy_degraded(self, event):
        await self.send_event("accuracy_degraded", messages.accuracy_degraded(event))

    async def ride_status(self, event):
        await self.send_event("ride_status", messages.ride_status(event))

    async def tracking_state(self, event):
        await self.send_event("tracking_state", messages.tracking_state(event))

    async def tracking_stopped(self, event):
        await self.send_event("tracking_stopped", messages.tracking_stopped(event))

    async def notification(self, event):
        await self.send_event("notification", messages.notification(event))

    @database_sync_to_async
    def _can_view(self, ride_id: int, user_id: int) -> bool:
        from rides.models import Ride
        ride = Ride.objects.filter(id=ride_id).first()
        return ride is not None and ride.is_participant(user_id)
