"""Authenticated JSON WebSocket consumer shared by the tracking sockets."""

import logging
from typing import Any, Dict, Set

from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncJsonWebsocketConsumer

from accounts.activity import touch_last_activity

from .. import messages

logger = logging.getLogger(__name__)


class BaseConsumer(AsyncJsonWebsocketConsumer):
    """
    Rejects anonymous sockets, keeps the per-user group and routes client
    messages by their ``type`` field.

    Subclasses fill ``message_handlers`` with ``{type: method name}`` and may
    override ``on_connect`` / ``on_disconnect``.
    """

    message_handlers: Dict[str, str] = {}

    async def connect(self):
        user = self.scope.get("user")
        if user is None or user.is_anonymous:
            await self.close()
            return

        self.user = user
        self.user_id = user.id
        self.role = getattr(user, "role", None)
        self.groups_joined: Set[str] = set()

        await self.join_group(f"user_{self.user_id}")
        await database_sync_to_async(touch_last_activity)(user)
        await self.accept()
        await self.on_connect()

    async def on_connect(self):
        pass

    async def disconnect(self, close_code):
        try:
            await self.on_disconnect(close_code)
        except Exception:
            logger.exception("Disconnect cleanup failed for user %s", getattr(self, "user_id", None))
        for group in list(getattr(self, "groups_joined", ())):
            await self.leave_group(group)

    async def on_disconnect(self, close_code):
        pass

    async def receive_json(self, content, **kwargs):
        msg_type = content.get("type") if isinstance(content, dict) else None
        if not msg_type:
            await self.send_error("Message type is required")
            return

        handler_name = self.message_handlers.get(msg_type)
        if handler_name is None:
            await self.send_error(f"Unknown message type: {msg_type}")
            return

        try:
            await getattr(self, handler_name)(content)
        except Exception:
            logger.exception("Handler for %s failed (user %s)", msg_type, self.user_id)
            await self.send_error(f"Error processing {msg_type}")

    # Groups

    async def join_group(self, group: str):
        await self.channel_layer.group_add(group, self.channel_name)
        self.groups_joined.add(group)

    async def leave_group(self, group: str):
        await self.channel_layer.group_discard(group, self.channel_name)
        self.groups_joined.discard(group)

    # Outgoing

    async def send_message(self, msg_type: str, **fields: Any):
        await self.send_json({"type": msg_type, **fields})

    async def send_error(self, message: str):
        await self.send_message("error", message=message)

    # group_send events addressed to the user group

    async def notification(self, event):
        """Real-time channel of the notification dispatcher."""
        await self.send_json(messages.notification(event))

    async def ride_status(self, event):
        await self.send_json(messages.ride_status(event))
