import json
import random
from datetime import datetime, timedelta, timezone as dt_timezone

from django.test import SimpleTestCase
from websocket import WebSocketConnectionClosedException

from common.tracking import FixSource, LocationFix, TrackingState
from common.utils.coordinates import InvalidCoordinateError
from common.utils.estimator import FALLBACK_BANNER
from .client import RECONNECT_DELAY_SECONDS, TrackingClient
from .exceptions import (
    AccuracyError,
    ImplausibleFixError,
    LocationPermissionDenied,
    TrackingRejected,
    TransportError,
)
from .sampler import GeolocationSampler

START = datetime(2026, 1, 1, 12, 0, tzinfo=dt_timezone.utc)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def reading(seconds=0, lat=40.7128, lng=-74.0060, **kwargs):
    kwargs.setdefault("accuracy", 10.0)
    return LocationFix(latitude=lat, longitude=lng, captured_at=START + timedelta(seconds=seconds), **kwargs)


class GeolocationSamplerTests(SimpleTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.batches = []
        self.fail_next = 0
        self.sampler = GeolocationSampler(self.flush, clock=self.clock)

    def flush(self, batch):
        if self.fail_next:
            self.fail_next -= 1
            raise TransportError("socket closed")
        self.batches.append(list(batch))

    def feed(self, count, start=0):
        fixes = []
        for i in range(count):
            self.clock.advance(5)
            fix = reading(start + 5 * (i + 1), lat=40.7128 + 0.0001 * (start + i))
            self.sampler.sample(fix)
            fixes.append(fix)
        return fixes

    def test_readings_inside_throttle_window_are_ignored(self):
        self.assertIsNotNone(self.sampler.sample(reading(0)))
        self.clock.advance(3)
        self.assertIsNone(self.sampler.sample(reading(3)))
        self.clock.advance(2)
        self.assertIsNotNone(self.sampler.sample(reading(5, lat=40.7129)))
        self.assertEqual(len(self.sampler.pending), 2)

    def test_flushes_after_three_fixes(self):
        fixes = self.feed(3)
        self.assertEqual(self.batches, [fixes])
        self.assertEqual(self.sampler.pending, [])

    def test_flushes_after_thirty_seconds(self):
        self.sampler.sample(reading(0))
        self.clock.advance(29)
        self.assertFalse(self.sampler.tick())
        self.clock.advance(1)
        self.assertTrue(self.sampler.tick())
        self.assertEqual(len(self.batches[0]), 1)

    def test_failed_fixes_get_exactly_one_retry(self):
        self.fail_next = 2
        first = self.feed(3)
        self.assertEqual(self.sampler.pending, first)

        # Retry fails too: those fixes are dropped, the new one is kept for its own retry
        second = self.feed(1, start=10)
        self.assertEqual(self.sampler.pending, second)

        self.clock.advance(30)
        self.assertTrue(self.sampler.tick())
        self.assertEqual(self.batches, [second])

    def test_retry_is_prepended(self):
        self.fail_next = 1
        first = self.feed(3)
        second = self.feed(1, start=10)
        self.assertEqual(self.batches, [first + second])

    def test_low_accuracy_raises(self):
        with self.assertRaises(AccuracyError) as ctx:
            self.sampler.sample(reading(0, accuracy=150))
        self.assertEqual(ctx.exception.accuracy, 150)
        self.assertEqual(self.sampler.pending, [])

    def test_sentinel_coordinates_raise(self):
        with self.assertRaises(InvalidCoordinateError):
            self.sampler.sample(reading(0, lat=0.0, lng=0.0))

    def test_implausible_fixes_rejected(self):
        with self.assertRaises(ImplausibleFixError):
            self.sampler.sample(reading(0, speed_mph=250))

        self.sampler.sample(reading(0))
        self.clock.advance(5)
        # ~30 miles north in 5 seconds
        with self.assertRaises(ImplausibleFixError):
            self.sampler.sample(reading(5, lat=41.15))

    def test_permission_denied_is_terminal_until_reset(self):
        self.sampler.deny_permission()
        with self.assertRaises(LocationPermissionDenied) as ctx:
            self.sampler.sample(reading(0))
        self.assertEqual(str(ctx.exception), "Location permission denied")

        self.sampler.reset_permission()
        self.assertIsNotNone(self.sampler.sample(reading(0)))

    def test_synthetic_readings_are_never_buffered(self):
        synthetic = LocationFix(latitude=40.7, longitude=-74.0, source=FixSource.SYNTHETIC)
        self.assertIsNone(self.sampler.sample(synthetic))
        self.assertEqual(self.sampler.pending, [])


class FakeSocket:
    def __init__(self, incoming=(), fail_send=False):
        self.incoming = [json.dumps(message) for message in incoming]
        self.sent = []
        self.fail_send = fail_send
        self.closed = False

    def send(self, payload):
        if self.fail_send:
            raise WebSocketConnectionClosedException("Connection is already closed.")
        self.sent.append(json.loads(payload))

    def recv(self):
        if not self.incoming:
            raise WebSocketConnectionClosedException("Connection is already closed.")
        return self.incoming.pop(0)

    def close(self):
        self.closed = True


class FakeTimer:
    created = []

    def __init__(self, interval, callback):
        self.interval = interval
        self.callback = callback
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.callback()


def handshake(ride_id=7):
    return [
        {"type": "connection_established", "userId": 2, "role": "driver"},
        {"type": "tracking_started", "rideId": ride_id, "state": "open"},
    ]


class TrackingClientTests(SimpleTestCase):
    def setUp(self):
        FakeTimer.created = []
        self.sockets = []
        self.connect_plan = []

    def factory(self, url, timeout=None):
        self.urls = getattr(self, "urls", []) + [url]
        outcome = self.connect_plan.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        self.sockets.append(outcome)
        return outcome

    def make_client(self, **kwargs):
        kwargs.setdefault("pickup", (40.7128, -74.0060))
        kwargs.setdefault("dropoff", (40.7580, -73.9855))
        return TrackingClient(
            "ws://localhost:8000/ws/ride/",
            "token-abc",
            ride_id=7,
            user_id=2,
            role="driver",
            connection_factory=self.factory,
            timer_factory=FakeTimer,
            rng=random.Random(1),
            **kwargs
        )

    def test_handshake_opens_channel(self):
        socket = FakeSocket(handshake())
        self.connect_plan = [socket]
        client = self.make_client()

        self.assertTrue(client.connect())
        self.assertEqual(client.machine.state, TrackingState.OPEN)
        self.assertEqual(socket.sent[0], {"type": "start_tracking", "role": "driver", "userId": 2, "rideId": 7})
        self.assertEqual(self.urls[0], "ws://localhost:8000/ws/ride/?token=token-abc")

    def test_server_error_rejects_tracking(self):
        self.connect_plan = [FakeSocket([{"type": "error", "message": "Ride not found"}])]
        client = self.make_client()
        with self.assertRaises(TrackingRejected):
            client.connect()
        self.assertEqual(client.machine.state, TrackingState.CLOSED)
        self.assertEqual(FakeTimer.created, [])

    def test_send_fixes_skips_synthetic_and_activates(self):
        socket = FakeSocket(handshake())
        self.connect_plan = [socket]
        client = self.make_client()
        client.connect()

        device = reading(0)
        synthetic = LocationFix(latitude=40.72, longitude=-74.0, source=FixSource.SYNTHETIC)
        client.send_fixes([synthetic, device])

        updates = [m for m in socket.sent if m["type"] == "location_update"]
        self.assertEqual(len(updates), 1)
        self.assertEqual(updates[0]["location"]["lat"], 40.7128)
        self.assertEqual(updates[0]["driverId"], 2)
        self.assertEqual(client.machine.state, TrackingState.TRACKING_ACTIVE)

    def test_transport_error_schedules_single_reconnect(self):
        broken = FakeSocket(handshake(), fail_send=False)
        self.connect_plan = [broken]
        client = self.make_client()
        client.connect()
        client.last_fix = reading(0)
        broken.fail_send = True

        with self.assertRaises(TransportError):
            client.send_fixes([reading(5)])

        self.assertEqual(client.machine.state, TrackingState.CLOSED)
        self.assertEqual(client.banner, FALLBACK_BANNER)
        self.assertEqual(len(FakeTimer.created), 1)
        self.assertEqual(FakeTimer.created[0].interval, RECONNECT_DELAY_SECONDS)
        self.assertTrue(FakeTimer.created[0].started)

        # Reconnect succeeds with a new state machine
        closed_machine = client.machine
        self.connect_plan = [FakeSocket(handshake())]
        FakeTimer.created[0].fire()
        self.assertTrue(client.is_open)
        self.assertIsNot(client.machine, closed_machine)
        self.assertIsNone(client.banner)

    def test_gives_up_after_failed_reconnect(self):
        self.connect_plan = [ConnectionRefusedError("refused"), ConnectionRefusedError("refused")]
        client = self.make_client()

        self.assertFalse(client.connect())
        self.assertEqual(len(FakeTimer.created), 1)
        FakeTimer.created[0].fire()

        self.assertTrue(client.gave_up)
        self.assertEqual(len(FakeTimer.created), 1)
        self.assertEqual(client.banner, FALLBACK_BANNER)

        self.connect_plan = [FakeSocket(handshake())]
        self.assertTrue(client.retry())
        self.assertFalse(client.gave_up)

    def test_synthetic_position_moves_toward_pickup(self):
        self.connect_plan = [ConnectionRefusedError("refused")]
        client = self.make_client(ride_status="en_route")
        client.last_fix = reading(0, lat=40.70, lng=-74.02)
        client.connect()

        fix = client.synthetic_position()
        self.assertTrue(fix.is_synthetic)
        self.assertIsNone(fix.accuracy)
        self.assertGreater(fix.latitude, 40.70)
        self.assertLess(fix.latitude, 40.7128)

        client.ride_status = "in_progress"
        later = client.synthetic_position()
        self.assertGreater(later.latitude, fix.latitude - 0.001)

    def test_no_synthetic_position_while_connected(self):
        self.connect_plan = [FakeSocket(handshake())]
        client = self.make_client()
        client.connect()
        client.last_fix = reading(0)
        self.assertIsNone(client.synthetic_position())

    def test_poll_applies_server_messages(self):
        socket = FakeSocket(handshake() + [
            {"type": "location_history", "rideId": 7, "locations": [{"lat": 40.71, "lng": -74.0}]},
            {"type": "ride_status", "rideId": 7, "status": "completed", "message": ""},
            {"type": "tracking_stopped", "rideId": 7, "reason": "ride_completed"},
        ])
        self.connect_plan = [socket]
        client = self.make_client()
        client.connect()

        client.poll()
        self.assertEqual(client.history, [{"lat": 40.71, "lng": -74.0}])
        client.poll()
        self.assertEqual(client.ride_status, "completed")
        client.poll()
        self.assertEqual(client.machine.close_reason, "ride_completed")
        self.assertTrue(socket.closed)
        with self.assertRaises(TransportError):
            client.send_fixes([reading(5)])

    def test_stop_sends_stop_tracking(self):
        socket = FakeSocket(handshake())
        self.connect_plan = [socket]
        client = self.make_client()
        client.connect()
        client.stop()

        self.assertEqual(socket.sent[-1]["type"], "stop_tracking")
        self.assertEqual(client.machine.close_reason, "stopped")
        self.assertTrue(socket.closed)

    def test_poll_marks_idle_tracking(self):
        socket = FakeSocket(handshake() + [
            {"type": "location_update", "rideId": 7, "driverId": 2, "location": {"lat": 40.71, "lng": -74.0}},
            {"type": "tracking_state", "rideId": 7, "state": "tracking_idle"},
        ])
        self.connect_plan = [socket]
        client = self.make_client()
        client.connect()

        client.poll()
        self.assertEqual(client.machine.state, TrackingState.TRACKING_ACTIVE)
        client.poll()
        self.assertEqual(client.machine.state, TrackingState.TRACKING_IDLE)
        self.assertTrue(client.is_open)
