"""
Geographic utility functions.

This module provides core geospatial calculations used throughout the application.
"""

from math import radians, cos, sin, asin, sqrt

EARTH_RADIUS_METERS = 6371000
EARTH_RADIUS_MILES = 3958.8


def _haversine(lat1: float, lon1: float, lat2: float, lon2: float, radius: float) -> float:
    lat1, lon1, lat2, lon2 = map(radians, [float(lat1), float(lon1), float(lat2), float(lon2)])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(sqrt(a))
    return c * radius


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two points in meters using Haversine formula.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    return _haversine(lat1, lon1, lat2, lon2, EARTH_RADIUS_METERS)


def calculate_distance_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in statute miles (Earth radius 3958.8 mi)."""
    return _haversine(lat1, lon1, lat2, lon2, EARTH_RADIUS_MILES)


def interpolate(lat1: float, lon1: float, lat2: float, lon2: float, fraction: float):
    """
    Linear step from the first point toward the second.

    Good enough for the short hops used while a client is disconnected;
    not a geodesic interpolation.
    """
    fraction = max(0.0, min(1.0, fraction))
    return (
        lat1 + (lat2 - lat1) * fraction,
        lon1 + (lon2 - lon1) * fraction,
    )
