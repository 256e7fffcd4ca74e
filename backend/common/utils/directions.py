"""
Live route lookups against the Google Directions API, with estimator fallback.

The HTTP call is bounded by ``timeout``; that bound is the "wait" after which
the rider sees the straight-line estimate instead of a driving route.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import requests

from .coordinates import InvalidCoordinateError, point_from_mapping
from .estimator import RouteEstimate, estimate, unavailable_estimate

logger = logging.getLogger(__name__)

DIRECTIONS_URL = "https://maps.googleapis.com/maps/api/directions/json"
DEFAULT_TIMEOUT = 8


class RouteUnavailableError(Exception):
    """Raised when the provider cannot produce a route (error, quota, timeout)."""

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message)
        self.status = status


class DirectionsClient:
    """Thin wrapper around the Directions JSON endpoint."""

    def __init__(self, api_key: str, session: Optional[requests.Session] = None, timeout: float = DEFAULT_TIMEOUT):
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def get_route(self, pickup: Mapping[str, Any], dropoff: Mapping[str, Any]) -> RouteEstimate:
        origin = point_from_mapping(pickup)
        destination = point_from_mapping(dropoff)

        try:
            response = self.session.get(
                DIRECTIONS_URL,
                params={
                    "origin": f"{origin[0]},{origin[1]}",
                    "destination": f"{destination[0]},{destination[1]}",
                    "mode": "driving",
                    "units": "imperial",
                    "key": self.api_key,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.Timeout as exc:
            raise RouteUnavailableError(f"Directions request timed out: {exc}", status="TIMEOUT")
        except (requests.RequestException, ValueError) as exc:
            raise RouteUnavailableError(f"Directions request failed: {exc}")

        status = payload.get("status")
        if status != "OK":
            raise RouteUnavailableError(f"Directions status {status}", status=status)

        try:
            leg = payload["routes"][0]["legs"][0]
            meters = leg["distance"]["value"]
            seconds = leg["duration"]["value"]
            return RouteEstimate(
                distance_text=leg["distance"]["text"],
                duration_text=leg["duration"]["text"],
                is_fallback=False,
                distance_miles=meters / 1609.344,
                duration_minutes=seconds / 60,
            )
        except (KeyError, IndexError, TypeError) as exc:
            raise RouteUnavailableError(f"Malformed directions response: {exc}")


def route_estimate(
    pickup: Mapping[str, Any],
    dropoff: Mapping[str, Any],
    client: Optional[DirectionsClient] = None,
) -> RouteEstimate:
    """
    Return the live route when the provider answers, otherwise the fallback estimate.

    Invalid endpoints short-circuit to an "unavailable" estimate before any
    provider call is made.
    """
    try:
        point_from_mapping(pickup)
        point_from_mapping(dropoff)
    except InvalidCoordinateError as exc:
        return unavailable_estimate(exc.user_message)

    if client is None:
        return estimate(pickup, dropoff)

    try:
        return client.get_route(pickup, dropoff)
    except RouteUnavailableError as exc:
        if exc.status == "OVER_QUERY_LIMIT":
            logger.warning("Directions quota exceeded, using estimated distance")
        else:
            logger.warning("Directions unavailable (%s), using estimated distance", exc)
        return estimate(pickup, dropoff)
