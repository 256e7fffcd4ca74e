"""
Device-side tracking: the geolocation sampler and the WebSocket tracking client
used by driver apps (and by the demo/driver simulator scripts).
"""

from .client import TrackingClient
from .exceptions import AccuracyError, LocationPermissionDenied, TrackingRejected, TransportError
from .sampler import GeolocationSampler

__all__ = [
    "TrackingClient",
    "GeolocationSampler",
    "AccuracyError",
    "LocationPermissionDenied",
    "TrackingRejected",
    "TransportError",
]
