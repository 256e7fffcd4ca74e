"""Exceptions raised by the device-side tracking client."""

from typing import Optional

PERMISSION_DENIED_MESSAGE = "Location permission denied"


class TrackingClientError(Exception):
    """Base class for tracking client errors."""


class AccuracyError(TrackingClientError):
    """Fix is too inaccurate to be treated as a real position."""

    def __init__(self, accuracy: Optional[float]):
        super().__init__(f"Location accuracy {accuracy}m exceeds the 100m limit")
        self.accuracy = accuracy


class ImplausibleFixError(TrackingClientError):
    """Fix implies an impossible speed or jump."""


class LocationPermissionDenied(TrackingClientError):
    """The user refused location access; sampling stops until permission is reset."""

    def __init__(self, message: str = PERMISSION_DENIED_MESSAGE):
        super().__init__(message)


class TransportError(TrackingClientError):
    """The tracking connection failed or is not open."""


class TrackingRejected(TrackingClientError):
    """The server answered start_tracking with an error message."""
