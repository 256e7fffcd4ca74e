"""Custom exceptions for ride management."""


class RideNotFoundError(Exception):
    """Raised when a ride cannot be found."""
    pass


class InvalidStatusTransitionError(Exception):
    """Raised when a ride is asked to move to a status it cannot reach."""
    pass


class RideNotTrackableError(Exception):
    """Raised when live tracking is requested for a ride outside the trackable statuses."""
    pass
