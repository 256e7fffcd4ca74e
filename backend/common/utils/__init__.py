"""Common utility functions."""

from .geo import calculate_distance, calculate_distance_miles, interpolate
from .coordinates import InvalidCoordinateError, validate_coordinates, is_valid_coordinate
from .estimator import RouteEstimate, estimate, format_duration

__all__ = [
    "calculate_distance",
    "calculate_distance_miles",
    "interpolate",
    "InvalidCoordinateError",
    "validate_coordinates",
    "is_valid_coordinate",
    "RouteEstimate",
    "estimate",
    "format_duration",
]
