"""Realtime consumers for WebSocket and SSE communication."""

from .base import BaseConsumer
from .event_stream import RideEventStreamConsumer
from .ride_consumer import RideConsumer

__all__ = [
    "BaseConsumer",
    "RideConsumer",
    "RideEventStreamConsumer",
]
