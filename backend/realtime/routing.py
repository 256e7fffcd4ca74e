"""URL routing for the realtime app (tracking WebSocket and SSE mirror)."""

from django.urls import path, re_path

from .consumers.event_stream import RideEventStreamConsumer
from .consumers.ride_consumer import RideConsumer

websocket_urlpatterns = [
    # Ride tracking WebSocket endpoint (shared by both roles)
    # URL: ws://localhost:8000/ws/ride/
    re_path(
        r"ws/ride/$",
        RideConsumer.as_asgi(),
        name="ride-ws"
    ),
]

# Mounted under /events/ by the ASGI router
http_urlpatterns = [
    # URL: http://localhost:8000/events/rides/<ride_id>/
    path(
        "rides/<int:ride_id>/",
        RideEventStreamConsumer.as_asgi(),
        name="ride-events"
    ),
]
