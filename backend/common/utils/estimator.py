"""
Straight-line distance and duration estimates.

Used when the live route provider fails, is over quota, or is too slow to
answer. Every estimate produced here is flagged ``is_fallback`` so clients can
show that the numbers are approximate.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Mapping, Optional

from .coordinates import InvalidCoordinateError, point_from_mapping
from .geo import calculate_distance_miles

AVERAGE_SPEED_MPH = 30

FALLBACK_BANNER = "Map/tracking temporarily unavailable — using estimated distances"
UNAVAILABLE_TEXT = "Unavailable"


@dataclass(frozen=True)
class RouteEstimate:
    """Distance/duration shown to a rider. Never persisted."""
    distance_text: str
    duration_text: str
    is_fallback: bool
    distance_miles: Optional[float] = None
    duration_minutes: Optional[float] = None
    is_available: bool = True
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def format_duration(minutes: float) -> str:
    """Render minutes as "Xh Ym", "X mins" or "less than a minute"."""
    if minutes < 1:
        return "less than a minute"

    hours = int(minutes // 60)
    mins = int(round(minutes % 60))
    if mins == 60:
        hours += 1
        mins = 0

    if hours > 0:
        return f"{hours}h {mins}m"
    return f"{mins} min" if mins == 1 else f"{mins} mins"


def format_distance(miles: float) -> str:
    return f"{miles:.1f} miles"


def unavailable_estimate(reason: str) -> RouteEstimate:
    return RouteEstimate(
        distance_text=UNAVAILABLE_TEXT,
        duration_text=UNAVAILABLE_TEXT,
        is_fallback=True,
        is_available=False,
        message=reason,
    )


def estimate(pickup: Mapping[str, Any], dropoff: Mapping[str, Any]) -> RouteEstimate:
    """
    Haversine distance plus a 30 mph duration estimate between two points.

    Either endpoint failing validation yields an "unavailable" estimate instead
    of a distance measured against a placeholder location.
    """
    try:
        pickup_lat, pickup_lng = point_from_mapping(pickup)
        dropoff_lat, dropoff_lng = point_from_mapping(dropoff)
    except InvalidCoordinateError as exc:
        return unavailable_estimate(exc.user_message)

    miles = calculate_distance_miles(pickup_lat, pickup_lng, dropoff_lat, dropoff_lng)
    minutes = miles / AVERAGE_SPEED_MPH * 60

    return RouteEstimate(
        distance_text=format_distance(miles),
        duration_text=format_duration(minutes),
        is_fallback=True,
        distance_miles=miles,
        duration_minutes=minutes,
        message=FALLBACK_BANNER,
    )
