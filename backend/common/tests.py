import math
from unittest.mock import MagicMock

import requests
from django.test import SimpleTestCase

from common.tracking import (
    FixSource,
    InvalidTransitionError,
    LocationFix,
    TrackingState,
    TrackingStateMachine,
)
from common.utils.coordinates import InvalidCoordinateError, is_valid_coordinate, validate_coordinates
from common.utils.directions import DirectionsClient, route_estimate
from common.utils.estimator import FALLBACK_BANNER, estimate, format_duration
from common.utils.geo import calculate_distance_miles

NYC_PICKUP = {"lat": 40.7128, "lng": -74.0060}
NYC_DROPOFF = {"lat": 40.7580, "lng": -73.9855}


class CoordinateValidatorTests(SimpleTestCase):
    def test_accepts_in_range_pairs(self):
        for lat, lng in [(90, 180), (-90, -180), (40.7, -74.0), (0, 1), (1, 0), (0.5, 0.5), (-1, -1)]:
            self.assertTrue(is_valid_coordinate(lat, lng), (lat, lng))

    def test_rejects_out_of_range_and_sentinels(self):
        for lat, lng in [(90.1, 0), (-91, 10), (10, 180.5), (10, -181), (0, 0), (1, 1), (0.0, -0.0)]:
            self.assertFalse(is_valid_coordinate(lat, lng), (lat, lng))

    def test_rejects_missing_and_nan(self):
        for lat, lng in [(None, 1), ("abc", 2), (float("nan"), 3)]:
            with self.assertRaises(InvalidCoordinateError) as ctx:
                validate_coordinates(lat, lng)
            self.assertIn("Invalid location coordinates", ctx.exception.user_message)

    def test_numeric_strings_are_converted(self):
        self.assertEqual(validate_coordinates("40.5", "-73.25"), (40.5, -73.25))


class EstimatorTests(SimpleTestCase):
    def test_nyc_estimate(self):
        result = estimate(NYC_PICKUP, NYC_DROPOFF)
        self.assertTrue(result.is_fallback)
        self.assertTrue(3.2 <= result.distance_miles <= 3.5)
        self.assertIn("min", result.duration_text)
        self.assertEqual(result.message, FALLBACK_BANNER)

    def test_distance_is_symmetric_haversine(self):
        forward = estimate(NYC_PICKUP, NYC_DROPOFF).distance_miles
        backward = estimate(NYC_DROPOFF, NYC_PICKUP).distance_miles
        self.assertTrue(math.isclose(forward, backward))
        self.assertTrue(math.isclose(
            forward, calculate_distance_miles(40.7128, -74.0060, 40.7580, -73.9855)
        ))

    def test_duration_is_thirty_mph(self):
        result = estimate({"lat": 40.0, "lng": -74.0}, {"lat": 40.5, "lng": -74.0})
        self.assertAlmostEqual(result.duration_minutes, result.distance_miles * 2)

    def test_format_duration(self):
        self.assertEqual(format_duration(0.4), "less than a minute")
        self.assertEqual(format_duration(1), "1 min")
        self.assertEqual(format_duration(12.2), "12 mins")
        self.assertEqual(format_duration(75), "1h 15m")
        self.assertEqual(format_duration(119.8), "2h 0m")

    def test_sentinel_endpoint_is_unavailable(self):
        result = estimate({"lat": 0, "lng": 0}, NYC_DROPOFF)
        self.assertFalse(result.is_available)
        self.assertIsNone(result.distance_miles)
        self.assertEqual(result.distance_text, "Unavailable")


def directions_session(payload=None, error=None):
    session = MagicMock()
    if error is not None:
        session.get.side_effect = error
    else:
        response = MagicMock()
        response.json.return_value = payload
        session.get.return_value = response
    return session


class RouteEstimateTests(SimpleTestCase):
    def test_live_route_used_when_provider_answers(self):
        session = directions_session({
            "status": "OK",
            "routes": [{"legs": [{
                "distance": {"text": "4.1 mi", "value": 6598},
                "duration": {"text": "18 mins", "value": 1080},
            }]}],
        })
        result = route_estimate(NYC_PICKUP, NYC_DROPOFF, DirectionsClient("key", session=session))
        self.assertFalse(result.is_fallback)
        self.assertEqual(result.duration_text, "18 mins")
        self.assertEqual(session.get.call_args[1]["timeout"], 8)

    def test_quota_exceeded_falls_back(self):
        session = directions_session({"status": "OVER_QUERY_LIMIT", "routes": []})
        result = route_estimate(NYC_PICKUP, NYC_DROPOFF, DirectionsClient("key", session=session))
        self.assertTrue(result.is_fallback)
        self.assertTrue(3.2 <= result.distance_miles <= 3.5)

    def test_timeout_falls_back(self):
        session = directions_session(error=requests.Timeout("read timed out"))
        result = route_estimate(NYC_PICKUP, NYC_DROPOFF, DirectionsClient("key", session=session, timeout=2))
        self.assertTrue(result.is_fallback)

    def test_invalid_endpoint_skips_provider(self):
        session = directions_session({"status": "OK"})
        result = route_estimate({"lat": 1, "lng": 1}, NYC_DROPOFF, DirectionsClient("key", session=session))
        self.assertFalse(result.is_available)
        session.get.assert_not_called()


class TrackingStateMachineTests(SimpleTestCase):
    def test_happy_path(self):
        machine = TrackingStateMachine()
        machine.connect()
        machine.acknowledge()
        self.assertEqual(machine.state, TrackingState.OPEN)
        self.assertTrue(machine.record_fix())
        self.assertEqual(machine.state, TrackingState.TRACKING_ACTIVE)
        self.assertTrue(machine.mark_idle())
        self.assertEqual(machine.state, TrackingState.TRACKING_IDLE)
        self.assertTrue(machine.record_fix())
        self.assertEqual(machine.state, TrackingState.TRACKING_ACTIVE)

    def test_any_state_can_close_and_closed_is_terminal(self):
        for steps in ([], ["connect"], ["connect", "acknowledge"]):
            machine = TrackingStateMachine()
            for step in steps:
                getattr(machine, step)()
            machine.close("stop_tracking")
            self.assertTrue(machine.is_closed)
            self.assertEqual(machine.close_reason, "stop_tracking")
            self.assertFalse(machine.record_fix())
            with self.assertRaises(InvalidTransitionError):
                machine.connect()

    def test_cannot_skip_handshake(self):
        machine = TrackingStateMachine()
        with self.assertRaises(InvalidTransitionError):
            machine.acknowledge()
        self.assertFalse(machine.record_fix())


class LocationFixTests(SimpleTestCase):
    def test_wire_format_is_camel_case(self):
        fix = LocationFix.from_wire({
            "lat": 40.7, "lng": -74.0, "accuracy": 12, "speedMph": 31.5, "batteryPercent": 64,
            "timestamp": "2026-01-01T12:00:00Z",
        })
        wire = fix.to_wire()
        self.assertEqual(wire["speedMph"], 31.5)
        self.assertEqual(wire["batteryPercent"], 64)
        self.assertEqual(wire["timestamp"], "2026-01-01T12:00:00+00:00")
        self.assertEqual(wire["source"], "device")

    def test_invalid_coordinates_raise(self):
        with self.assertRaises(InvalidCoordinateError):
            LocationFix.from_wire({"lat": 0, "lng": 0})

    def test_synthetic_fix_has_no_accuracy(self):
        fix = LocationFix(latitude=40.7, longitude=-74.0, source=FixSource.SYNTHETIC)
        self.assertTrue(fix.is_synthetic)
        self.assertNotIn("accuracy", fix.to_wire())
        self.assertFalse(fix.exceeds_accuracy_limit)

    def test_accuracy_limit(self):
        self.assertFalse(LocationFix(latitude=40.7, longitude=-74.0, accuracy=100).exceeds_accuracy_limit)
        self.assertTrue(LocationFix(latitude=40.7, longitude=-74.0, accuracy=100.5).exceeds_accuracy_limit)
