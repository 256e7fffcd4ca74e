"""
Shared tracking primitives used by the server consumers and the device client.

    - LocationFix: one location reading, tagged with where it came from
    - TrackingStateMachine: lifecycle of one tracking channel instance
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, Optional

from common.utils.coordinates import validate_coordinates

MAX_ACCURACY_METERS = 100


class FixSource(str, enum.Enum):
    DEVICE = "device"
    SYNTHETIC = "synthetic"


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        # JS clients send epoch milliseconds
        parsed = datetime.fromtimestamp(value / 1000, tz=dt_timezone.utc)
    elif isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        parsed = datetime.now(dt_timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt_timezone.utc)
    return parsed


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


@dataclass(frozen=True)
class LocationFix:
    """
    A single location reading.

    Synthetic fixes are placeholders produced while a client is disconnected;
    they never carry an accuracy value and are never transmitted.
    """
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    captured_at: datetime = field(default_factory=lambda: datetime.now(dt_timezone.utc))
    heading: Optional[float] = None
    speed_mph: Optional[float] = None
    battery_percent: Optional[int] = None
    source: FixSource = FixSource.DEVICE

    @property
    def is_synthetic(self) -> bool:
        return self.source is FixSource.SYNTHETIC

    @property
    def exceeds_accuracy_limit(self) -> bool:
        return self.accuracy is not None and self.accuracy > MAX_ACCURACY_METERS

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "lat": self.latitude,
            "lng": self.longitude,
            "timestamp": self.captured_at.isoformat(),
            "source": self.source.value,
        }
        if self.accuracy is not None:
            payload["accuracy"] = self.accuracy
        if self.heading is not None:
            payload["heading"] = self.heading
        if self.speed_mph is not None:
            payload["speedMph"] = self.speed_mph
        if self.battery_percent is not None:
            payload["batteryPercent"] = self.battery_percent
        return payload

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "LocationFix":
        """
        Build a fix from a ``location`` wire object.

        Raises InvalidCoordinateError for unusable coordinates and ValueError
        for malformed optional fields.
        """
        lat, lng = validate_coordinates(data.get("lat"), data.get("lng"))
        battery = data.get("batteryPercent")
        return cls(
            latitude=lat,
            longitude=lng,
            accuracy=_optional_float(data.get("accuracy")),
            captured_at=_parse_timestamp(data.get("timestamp")),
            heading=_optional_float(data.get("heading")),
            speed_mph=_optional_float(data.get("speedMph")),
            battery_percent=None if battery is None else int(battery),
            source=FixSource(data.get("source") or FixSource.DEVICE.value),
        )


class TrackingState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    TRACKING_ACTIVE = "tracking_active"
    TRACKING_IDLE = "tracking_idle"
    CLOSED = "closed"


_TRANSITIONS = {
    TrackingState.IDLE: {TrackingState.CONNECTING, TrackingState.CLOSED},
    TrackingState.CONNECTING: {TrackingState.OPEN, TrackingState.CLOSED},
    TrackingState.OPEN: {TrackingState.TRACKING_ACTIVE, TrackingState.TRACKING_IDLE, TrackingState.CLOSED},
    TrackingState.TRACKING_ACTIVE: {TrackingState.TRACKING_IDLE, TrackingState.CLOSED},
    TrackingState.TRACKING_IDLE: {TrackingState.TRACKING_ACTIVE, TrackingState.CLOSED},
    TrackingState.CLOSED: set(),
}


class InvalidTransitionError(Exception):
    """Raised when a tracking channel is asked to move to an unreachable state."""


class TrackingStateMachine:
    """
    Lifecycle of one tracking channel instance.

    CLOSED is terminal; reconnecting means building a new machine.
    """

    def __init__(self):
        self.state = TrackingState.IDLE
        self.close_reason: Optional[str] = None

    def __repr__(self):
        return f"<TrackingStateMachine {self.state.value}>"

    def _move(self, target: TrackingState):
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"Cannot move from {self.state.value} to {target.value}")
        self.state = target

    @property
    def is_closed(self) -> bool:
        return self.state is TrackingState.CLOSED

    @property
    def accepts_fixes(self) -> bool:
        return self.state in (TrackingState.OPEN, TrackingState.TRACKING_ACTIVE, TrackingState.TRACKING_IDLE)

    def connect(self):
        self._move(TrackingState.CONNECTING)

    def acknowledge(self):
        self._move(TrackingState.OPEN)

    def record_fix(self) -> bool:
        """Note a relayed fix. Returns False when the channel can no longer relay."""
        if not self.accepts_fixes:
            return False
        if self.state is not TrackingState.TRACKING_ACTIVE:
            self._move(TrackingState.TRACKING_ACTIVE)
        return True

    def mark_idle(self) -> bool:
        if self.state in (TrackingState.OPEN, TrackingState.TRACKING_ACTIVE):
            self._move(TrackingState.TRACKING_IDLE)
            return True
        return False

    def close(self, reason: str = "closed"):
        if self.is_closed:
            return
        self._move(TrackingState.CLOSED)
        self.close_reason = reason
