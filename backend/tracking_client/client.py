"""
WebSocket tracking client for driver and rider devices.

Speaks the ``ws/ride/`` protocol over ``websocket-client``. A transport error
closes the current channel and schedules exactly one reconnect after 5 seconds;
if that reconnect fails too the client gives up and stays in the banner state
until ``retry()`` is called.
"""

from __future__ import annotations

import json
import logging
import random
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlencode

import websocket

from common.tracking import FixSource, LocationFix, TrackingStateMachine
from common.utils.estimator import FALLBACK_BANNER
from common.utils.geo import interpolate
from .exceptions import TrackingRejected, TransportError

logger = logging.getLogger(__name__)

RECONNECT_DELAY_SECONDS = 5
CONNECT_TIMEOUT_SECONDS = 10

# Synthetic positions: fraction of the remaining distance per step, plus jitter in degrees
SYNTHETIC_STEP_FRACTION = 0.1
SYNTHETIC_JITTER_DEGREES = 0.0005

TRANSPORT_ERRORS = (websocket.WebSocketException, OSError)

Point = Tuple[float, float]


class TrackingClient:
    """
    One device's tracking connection for one ride.

    Args:
        url: ``ws://host/ws/ride/``
        token: JWT access token (sent as ``?token=``)
        ride_id: Ride to track
        user_id: Connected user's id
        role: "driver" or "rider"
        pickup, dropoff: (lat, lng) waypoints used for synthetic positions
        ride_status: Current ride status, kept up to date from ``ride_status`` messages
    """

    def __init__(
        self,
        url: str,
        token: str,
        ride_id: int,
        user_id: int,
        role: str,
        pickup: Optional[Point] = None,
        dropoff: Optional[Point] = None,
        ride_status: str = "en_route",
        connection_factory: Callable[..., Any] = websocket.create_connection,
        timer_factory: Callable[..., Any] = threading.Timer,
        rng: Optional[random.Random] = None,
        timeout: float = CONNECT_TIMEOUT_SECONDS,
    ):
        self.url = url
        self.token = token
        self.ride_id = ride_id
        self.user_id = user_id
        self.role = role
        self.pickup = pickup
        self.dropoff = dropoff
        self.ride_status = ride_status
        self.timeout = timeout

        self._connection_factory = connection_factory
        self._timer_factory = timer_factory
        self._rng = rng or random.Random()

        self.machine = TrackingStateMachine()
        self.banner: Optional[str] = None
        self.gave_up = False
        self.history: List[Dict[str, Any]] = []
        self.last_fix: Optional[LocationFix] = None

        self._ws = None
        self._lock = threading.RLock()
        self._reconnect_timer = None
        self._reconnect_pending = False
        self._reconnect_used = False
        self._estimate: Optional[Point] = None

    def __repr__(self):
        return f"<TrackingClient ride={self.ride_id} role={self.role} {self.machine.state.value}>"

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self.machine.accepts_fixes

    @property
    def disconnected(self) -> bool:
        return not self.is_open

    @property
    def reconnect_scheduled(self) -> bool:
        return self._reconnect_pending

    # ---------------------- Connection ----------------------

    def _socket_url(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode({'token': self.token})}"

    def _send(self, message: Dict[str, Any]):
        self._ws.send(json.dumps(message))

    def _recv(self) -> Dict[str, Any]:
        return json.loads(self._ws.recv())

    def connect(self) -> bool:
        """
        Open the socket and perform the start_tracking handshake.

        Returns:
            True once the server acknowledged with tracking_started

        Raises:
            TrackingRejected: The server refused to track the ride
        """
        with self._lock:
            if self.machine.is_closed:
                self.machine = TrackingStateMachine()
            self.machine.connect()

            try:
                self._ws = self._connection_factory(self._socket_url(), timeout=self.timeout)
                self._send({
                    "type": "start_tracking",
                    "role": self.role,
                    "userId": self.user_id,
                    "rideId": self.ride_id,
                })
                ack = self._await_ack()
            except TRANSPORT_ERRORS as e:
                self._handle_transport_error(e)
                return False
            except TrackingRejected:
                self._close_socket()
                self.machine.close("rejected")
                raise

            self.machine.acknowledge()
            self.banner = None
            self._reconnect_used = False
            self._estimate = None
            logger.info("Tracking ride %s (%s)", self.ride_id, ack.get("state"))
            return True

    def _await_ack(self) -> Dict[str, Any]:
        while True:
            message = self._recv()
            msg_type = message.get("type")
            if msg_type == "tracking_started" and message.get("rideId") == self.ride_id:
                return message
            if msg_type == "error":
                raise TrackingRejected(message.get("message", "Tracking rejected"))
            # connection_established and unrelated notifications

    def stop(self):
        """Send stop_tracking and close the connection."""
        with self._lock:
            self._cancel_reconnect()
            if self.is_open:
                try:
                    self._send({
                        "type": "stop_tracking",
                        "role": self.role,
                        "userId": self.user_id,
                        "rideId": self.ride_id,
                    })
                except TRANSPORT_ERRORS as e:
                    logger.debug("stop_tracking not delivered: %s", e)
            self._close_socket()
            self.machine.close("stopped")

    def retry(self) -> bool:
        """Manual retry after the client gave up."""
        self.gave_up = False
        self._reconnect_used = False
        return self.connect()

    def _close_socket(self):
        if self._ws is not None:
            try:
                self._ws.close()
            except TRANSPORT_ERRORS as e:
                logger.debug("Error closing tracking socket: %s", e)
            self._ws = None

    # ---------------------- Failure handling ----------------------

    def _handle_transport_error(self, error: Exception):
        logger.warning("Tracking connection for ride %s failed: %s", self.ride_id, error)
        self._close_socket()
        self.machine.close("transport_error")
        self.banner = FALLBACK_BANNER

        if self._reconnect_used:
            self.gave_up = True
            logger.warning("Reconnect for ride %s failed; giving up", self.ride_id)
            return

        self._reconnect_used = True
        self._reconnect_pending = True
        timer = self._timer_factory(RECONNECT_DELAY_SECONDS, self._reconnect)
        timer.daemon = True
        timer.start()
        self._reconnect_timer = timer

    def _reconnect(self):
        self._reconnect_pending = False
        self._reconnect_timer = None
        try:
            self.connect()
        except TrackingRejected as e:
            self.gave_up = True
            logger.warning("Reconnect for ride %s rejected: %s", self.ride_id, e)

    def _cancel_reconnect(self):
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
        self._reconnect_timer = None
        self._reconnect_pending = False

    # ---------------------- Sending ----------------------

    def send_fixes(self, fixes: Iterable[LocationFix]):
        """
        Send device fixes as location_update messages (GeolocationSampler flush callback).

        Synthetic fixes are skipped.

        Raises:
            TransportError: The channel is not open or the send failed
        """
        with self._lock:
            if not self.is_open:
                raise TransportError("Tracking channel is not open")
            for fix in fixes:
                if fix.is_synthetic:
                    continue
                try:
                    self._send({
                        "type": "location_update",
                        "driverId": self.user_id,
                        "rideId": self.ride_id,
                        "location": fix.to_wire(),
                    })
                except TRANSPORT_ERRORS as e:
                    self._handle_transport_error(e)
                    raise TransportError(str(e)) from e
                self.last_fix = fix
                self.machine.record_fix()

    # ---------------------- Receiving ----------------------

    def poll(self) -> Optional[Dict[str, Any]]:
        """Read one server message and apply it to the client state."""
        if self._ws is None:
            return None
        try:
            message = self._recv()
        except TRANSPORT_ERRORS as e:
            with self._lock:
                self._handle_transport_error(e)
            return None

        msg_type = message.get("type")
        if msg_type == "location_history":
            self.history = list(message.get("locations") or [])
        elif msg_type == "location_update":
            self.history.append(message.get("location"))
            self.machine.record_fix()
        elif msg_type == "tracking_state" and message.get("state") == "tracking_idle":
            self.machine.mark_idle()
        elif msg_type == "ride_status":
            self.ride_status = message.get("status") or self.ride_status
        elif msg_type == "tracking_stopped":
            self._close_socket()
            self.machine.close(message.get("reason") or "stopped")
        return message

    # ---------------------- Degraded mode ----------------------

    def _next_waypoint(self) -> Optional[Point]:
        if self.ride_status == "in_progress":
            return self.dropoff
        if self.ride_status in ("accepted", "en_route", "arrived"):
            return self.pickup
        return None

    def synthetic_position(self) -> Optional[LocationFix]:
        """
        Approximate position while disconnected.

        Steps from the last known position toward the next waypoint with a
        little jitter. The fix is tagged synthetic, carries no accuracy and is
        never sent to the server.
        """
        if not self.disconnected:
            return None
        target = self._next_waypoint()
        start = self._estimate
        if start is None and self.last_fix is not None:
            start = (self.last_fix.latitude, self.last_fix.longitude)
        if start is None or target is None:
            return None

        lat, lng = interpolate(start[0], start[1], target[0], target[1], SYNTHETIC_STEP_FRACTION)
        lat += self._rng.uniform(-SYNTHETIC_JITTER_DEGREES, SYNTHETIC_JITTER_DEGREES)
        lng += self._rng.uniform(-SYNTHETIC_JITTER_DEGREES, SYNTHETIC_JITTER_DEGREES)
        self._estimate = (lat, lng)
        return LocationFix(latitude=lat, longitude=lng, accuracy=None, source=FixSource.SYNTHETIC)
