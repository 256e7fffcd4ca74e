"""Coordinate validation applied before any distance math or relay."""

import math
from typing import Any, Mapping, Tuple

# Placeholders written by upstream geocoding when it fails to resolve an address.
SENTINEL_COORDINATES = frozenset({(0.0, 0.0), (1.0, 1.0)})

INVALID_COORDINATES_MESSAGE = "Invalid location coordinates. Please try selecting addresses again."


class InvalidCoordinateError(ValueError):
    """Raised when a latitude/longitude pair cannot be a real position."""

    def __init__(self, reason: str, latitude=None, longitude=None):
        super().__init__(reason)
        self.reason = reason
        self.latitude = latitude
        self.longitude = longitude

    @property
    def user_message(self) -> str:
        return INVALID_COORDINATES_MESSAGE


def validate_coordinates(latitude: Any, longitude: Any) -> Tuple[float, float]:
    """
    Return the pair as floats, or raise InvalidCoordinateError.

    Rejects missing/non-numeric values, NaN, |lat| > 90, |lng| > 180 and the
    sentinel pairs (0, 0) and (1, 1).
    """
    try:
        lat = float(latitude)
        lng = float(longitude)
    except (TypeError, ValueError):
        raise InvalidCoordinateError("Coordinates must be numeric", latitude, longitude)

    if math.isnan(lat) or math.isnan(lng):
        raise InvalidCoordinateError("Coordinates must not be NaN", latitude, longitude)

    if abs(lat) > 90 or abs(lng) > 180:
        raise InvalidCoordinateError("Coordinates out of range", latitude, longitude)

    if (lat, lng) in SENTINEL_COORDINATES:
        raise InvalidCoordinateError("Coordinates look like a geocoding placeholder", latitude, longitude)

    return lat, lng


def is_valid_coordinate(latitude: Any, longitude: Any) -> bool:
    try:
        validate_coordinates(latitude, longitude)
    except InvalidCoordinateError:
        return False
    return True


def point_from_mapping(point: Mapping[str, Any]) -> Tuple[float, float]:
    """Validate a ``{"lat": .., "lng": ..}`` mapping (``latitude``/``longitude`` also accepted)."""
    if point is None:
        raise InvalidCoordinateError("Location is missing")
    lat = point.get("lat", point.get("latitude"))
    lng = point.get("lng", point.get("longitude"))
    return validate_coordinates(lat, lng)
