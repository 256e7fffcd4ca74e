from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

from channels.db import database_sync_to_async
from channels.layers import get_channel_layer
from channels.testing import ApplicationCommunicator, WebsocketCommunicator
from django.contrib.auth.models import AnonymousUser
from django.test import SimpleTestCase, TestCase, TransactionTestCase

from accounts.models import User
from common.tracking import FixSource, LocationFix, TrackingState
from common.utils.coordinates import INVALID_COORDINATES_MESSAGE
from drivers.models import DriverProfile
from rides import services
from rides.models import Ride
from .alerts import evaluate_fix
from .consumers.event_stream import RideEventStreamConsumer
from .consumers.ride_consumer import RideConsumer
from .relay import NOT_RIDE_DRIVER, RELAYED, SYNTHETIC_FIX, relay_driver_fix
from .sessions import HISTORY_SIZE, TrackingSessionRegistry, session_registry


def device_fix(lat=40.72, lng=-74.0, **kwargs):
    kwargs.setdefault("accuracy", 10.0)
    return LocationFix(latitude=lat, longitude=lng, **kwargs)


class TrackingSessionRegistryTests(SimpleTestCase):
    def setUp(self):
        self.registry = TrackingSessionRegistry()

    def test_open_acknowledges_session(self):
        session = self.registry.open(1, rider_id=10, driver_id=20)
        self.assertEqual(session.state, TrackingState.OPEN)
        self.assertIs(self.registry.open(1, rider_id=10, driver_id=20), session)

    def test_first_fix_activates_and_history_is_bounded(self):
        self.registry.open(1, 10, 20)
        for i in range(HISTORY_SIZE + 5):
            self.registry.record(1, device_fix(lat=40.0 + i / 1000))
        session = self.registry.get(1)
        self.assertEqual(session.state, TrackingState.TRACKING_ACTIVE)
        self.assertEqual(len(session.history()), HISTORY_SIZE)
        self.assertAlmostEqual(session.history()[-1]["lat"], 40.0 + (HISTORY_SIZE + 4) / 1000)

    def test_idle_after_two_minutes_without_fix(self):
        self.registry.open(1, 10, 20)
        session = self.registry.record(1, device_fix())
        self.assertFalse(session.refresh_idle(session.last_fix_at + timedelta(seconds=30)))
        self.assertEqual(self.registry.sweep_idle(session.last_fix_at + timedelta(minutes=3)), [session])
        self.assertEqual(session.state, TrackingState.TRACKING_IDLE)
        self.assertEqual(self.registry.sweep_idle(session.last_fix_at + timedelta(minutes=4)), [])

        self.registry.record(1, device_fix())
        self.assertEqual(session.state, TrackingState.TRACKING_ACTIVE)

    def test_silent_driver_reads_as_idle_and_is_announced_once(self):
        self.registry.open(1, 10, 20)
        session = self.registry.record(1, device_fix())
        session.last_fix_at -= timedelta(minutes=10)

        self.assertEqual(self.registry.get(1).state, TrackingState.TRACKING_IDLE)
        self.assertEqual(self.registry.sweep_idle(ride_ids=[1]), [session])
        self.assertEqual(self.registry.sweep_idle(ride_ids=[1]), [])

    def test_last_subscriber_leaving_closes_session(self):
        session = self.registry.open(1, 10, 20)
        self.registry.subscribe(1, "a")
        self.registry.subscribe(1, "b")
        self.registry.unsubscribe(1, "a")
        self.assertFalse(session.is_closed)
        self.registry.unsubscribe(1, "b")
        self.assertTrue(session.is_closed)
        self.assertIsNone(self.registry.get(1))

    def test_closed_session_drops_fixes(self):
        self.registry.open(1, 10, 20)
        session = self.registry.close(1, "ride_completed")
        self.assertEqual(session.machine.close_reason, "ride_completed")
        self.assertIsNone(self.registry.record(1, device_fix()))
        self.assertIsNone(self.registry.subscribe(1, "late"))


class RideAlertTests(SimpleTestCase):
    def test_speeding_is_high_severity(self):
        alerts = evaluate_fix(device_fix(speed_mph=92))
        self.assertEqual([(a.alert_type, a.severity) for a in alerts], [("speeding", "high")])

    def test_battery_thresholds(self):
        self.assertEqual(evaluate_fix(device_fix(battery_percent=15))[0].severity, "medium")
        self.assertEqual(evaluate_fix(device_fix(battery_percent=5))[0].severity, "critical")
        self.assertEqual(evaluate_fix(device_fix(battery_percent=50, speed_mph=40)), [])

    def test_already_raised_types_are_skipped(self):
        self.assertEqual(evaluate_fix(device_fix(speed_mph=95), frozenset({"speeding"})), [])


class RelayTests(TestCase):
    def setUp(self):
        session_registry.clear()
        self.rider = User.objects.create_user(username='rider', password='x')
        self.driver = User.objects.create_user(username='driver', password='x', role='driver')
        DriverProfile.objects.create(user=self.driver, vehicle_number='NY-1')
        self.ride = Ride.objects.create(rider=self.rider, driver=self.driver, status='in_progress')

    def tearDown(self):
        session_registry.clear()

    def test_synthetic_fix_never_relayed(self):
        fix = LocationFix(latitude=40.7, longitude=-74.0, source=FixSource.SYNTHETIC)
        self.assertEqual(relay_driver_fix(self.ride.id, self.driver.id, fix).outcome, SYNTHETIC_FIX)
        self.assertIsNone(session_registry.get(self.ride.id))

    def test_other_driver_rejected(self):
        self.assertEqual(relay_driver_fix(self.ride.id, self.rider.id, device_fix()).outcome, NOT_RIDE_DRIVER)

    def test_alert_sent_once_per_session(self):
        dispatcher = MagicMock()
        with patch('notifications.dispatcher.get_dispatcher', return_value=dispatcher):
            first = relay_driver_fix(self.ride.id, self.driver.id, device_fix(speed_mph=90))
            second = relay_driver_fix(self.ride.id, self.driver.id, device_fix(speed_mph=91))

        self.assertEqual(first.outcome, RELAYED)
        self.assertEqual([a.alert_type for a in first.alerts], ["speeding"])
        self.assertEqual(second.alerts, [])
        dispatcher.send_ride_alert_notification.assert_called_once()
        args = dispatcher.send_ride_alert_notification.call_args[0]
        self.assertEqual(args[0], self.rider.id)
        self.assertEqual(args[2], "speeding")
        self.assertEqual(args[4], "high")

    def test_fix_after_idle_announces_resumed_tracking(self):
        relay_driver_fix(self.ride.id, self.driver.id, device_fix())
        session_registry.get(self.ride.id).last_fix_at -= timedelta(minutes=5)

        with patch('realtime.relay.broadcast_tracking_state') as announce:
            result = relay_driver_fix(self.ride.id, self.driver.id, device_fix(lat=40.73))
            relay_driver_fix(self.ride.id, self.driver.id, device_fix(lat=40.74))

        self.assertEqual(result.outcome, RELAYED)
        announce.assert_called_once_with(self.ride.id, "tracking_active")
        self.assertEqual(session_registry.get(self.ride.id).state, TrackingState.TRACKING_ACTIVE)


class RideConsumerTests(TransactionTestCase):
    def setUp(self):
        session_registry.clear()
        self.rider = User.objects.create_user(username='rider', password='x', role='rider')
        self.driver = User.objects.create_user(username='driver', password='x', role='driver')
        self.stranger = User.objects.create_user(username='stranger', password='x', role='rider')
        DriverProfile.objects.create(user=self.driver, vehicle_number='NY-1')
        self.ride = Ride.objects.create(
            rider=self.rider,
            driver=self.driver,
            status='in_progress',
            pickup_latitude=Decimal('40.712800'),
            pickup_longitude=Decimal('-74.006000'),
        )

    def tearDown(self):
        session_registry.clear()

    async def connect(self, user):
        communicator = WebsocketCommunicator(RideConsumer.as_asgi(), "/ws/ride/")
        communicator.scope["user"] = user
        connected, _ = await communicator.connect()
        self.assertTrue(connected)
        welcome = await communicator.receive_json_from()
        self.assertEqual(welcome["type"], "connection_established")
        return communicator

    async def start(self, communicator, user):
        await communicator.send_json_to({
            "type": "start_tracking", "role": user.role, "userId": user.id, "rideId": self.ride.id,
        })
        started = await communicator.receive_json_from()
        history = await communicator.receive_json_from()
        return started, history

    async def test_anonymous_connection_is_closed(self):
        communicator = WebsocketCommunicator(RideConsumer.as_asgi(), "/ws/ride/")
        communicator.scope["user"] = AnonymousUser()
        connected, _ = await communicator.connect()
        self.assertFalse(connected)

    async def test_start_tracking_requires_ride_id(self):
        communicator = await self.connect(self.rider)
        await communicator.send_json_to({"type": "start_tracking", "role": "rider", "userId": self.rider.id})
        response = await communicator.receive_json_from()
        self.assertEqual(response, {"type": "error", "message": "start_tracking requires rideId"})
        await communicator.disconnect()

    async def test_stranger_cannot_subscribe(self):
        communicator = await self.connect(self.stranger)
        await communicator.send_json_to({"type": "start_tracking", "rideId": self.ride.id})
        response = await communicator.receive_json_from()
        self.assertEqual(response["type"], "error")
        self.assertIsNone(session_registry.get(self.ride.id))
        await communicator.disconnect()

    async def test_driver_fix_reaches_rider(self):
        rider = await self.connect(self.rider)
        driver = await self.connect(self.driver)
        started, history = await self.start(rider, self.rider)
        self.assertEqual(started["type"], "tracking_started")
        self.assertEqual(started["rideId"], self.ride.id)
        self.assertEqual(history, {"type": "location_history", "rideId": self.ride.id, "locations": []})

        await driver.send_json_to({
            "type": "location_update",
            "driverId": self.driver.id,
            "rideId": self.ride.id,
            "location": {"lat": 40.7300, "lng": -73.9950, "accuracy": 8, "speedMph": 24, "timestamp": 1767268800000},
        })
        update = await rider.receive_json_from()
        self.assertEqual(update["type"], "location_update")
        self.assertEqual(update["driverId"], self.driver.id)
        self.assertEqual(update["location"]["lat"], 40.73)
        self.assertEqual(update["location"]["speedMph"], 24)
        self.assertEqual(update["location"]["source"], "device")

        await rider.disconnect()
        await driver.disconnect()

    async def test_placeholder_fix_is_not_transmitted(self):
        rider = await self.connect(self.rider)
        driver = await self.connect(self.driver)
        await self.start(rider, self.rider)

        await driver.send_json_to({
            "type": "location_update", "rideId": self.ride.id, "location": {"lat": 0, "lng": 0, "accuracy": 5},
        })
        error = await driver.receive_json_from()
        self.assertEqual(error, {"type": "error", "message": INVALID_COORDINATES_MESSAGE})
        self.assertTrue(await rider.receive_nothing())

        await rider.disconnect()
        await driver.disconnect()

    async def test_riders_cannot_send_locations(self):
        rider = await self.connect(self.rider)
        await rider.send_json_to({"type": "location_update", "rideId": self.ride.id, "location": {"lat": 40.7, "lng": -74}})
        response = await rider.receive_json_from()
        self.assertEqual(response["message"], "Only drivers can send location updates")
        await rider.disconnect()

    async def test_low_accuracy_signals_degraded(self):
        rider = await self.connect(self.rider)
        driver = await self.connect(self.driver)
        await self.start(rider, self.rider)

        await driver.send_json_to({
            "type": "location_update", "rideId": self.ride.id, "location": {"lat": 40.73, "lng": -73.99, "accuracy": 400},
        })
        signal = await rider.receive_json_from()
        self.assertEqual(signal, {"type": "accuracy_degraded", "rideId": self.ride.id, "accuracy": 400.0})
        self.assertEqual(session_registry.get(self.ride.id).history(), [])

        await rider.disconnect()
        await driver.disconnect()

    async def test_completed_ride_stops_tracking(self):
        rider = await self.connect(self.rider)
        driver = await self.connect(self.driver)
        await self.start(rider, self.rider)

        with patch('notifications.dispatcher.get_dispatcher', return_value=MagicMock()):
            await database_sync_to_async(services.update_ride_status)(self.ride.id, 'completed')

        status = await rider.receive_json_from()
        self.assertEqual(status["type"], "ride_status")
        self.assertEqual(status["status"], "completed")
        stopped = await rider.receive_json_from()
        self.assertEqual(stopped, {"type": "tracking_stopped", "rideId": self.ride.id, "reason": "ride_completed"})

        await driver.send_json_to({
            "type": "location_update", "rideId": self.ride.id, "location": {"lat": 40.73, "lng": -73.99, "accuracy": 5},
        })
        error = await driver.receive_json_from()
        self.assertEqual(error["message"], "Ride is not being tracked")
        self.assertTrue(await rider.receive_nothing())

        await rider.disconnect()
        await driver.disconnect()

    async def test_stop_tracking_closes_session_for_last_subscriber(self):
        rider = await self.connect(self.rider)
        await self.start(rider, self.rider)
        self.assertIsNotNone(session_registry.get(self.ride.id))

        await rider.send_json_to({"type": "stop_tracking", "role": "rider", "userId": self.rider.id, "rideId": self.ride.id})
        response = await rider.receive_json_from()
        self.assertEqual(response, {"type": "tracking_stopped", "rideId": self.ride.id, "reason": "stopped"})
        self.assertIsNone(session_registry.get(self.ride.id))
        await rider.disconnect()

    async def test_late_subscriber_receives_history(self):
        driver = await self.connect(self.driver)
        await self.start(driver, self.driver)
        await driver.send_json_to({
            "type": "location_update", "rideId": self.ride.id, "location": {"lat": 40.74, "lng": -73.99, "accuracy": 5},
        })
        await driver.receive_json_from()

        rider = await self.connect(self.rider)
        started, history = await self.start(rider, self.rider)
        self.assertEqual(started["state"], "tracking_active")
        self.assertEqual([fix["lat"] for fix in history["locations"]], [40.74])

        await rider.disconnect()
        await driver.disconnect()

    async def test_silent_driver_is_announced_idle_then_active(self):
        with patch('realtime.consumers.ride_consumer.IDLE_CHECK_SECONDS', 0.01):
            rider = await self.connect(self.rider)
            driver = await self.connect(self.driver)
            await self.start(rider, self.rider)

            fix = {"type": "location_update", "rideId": self.ride.id, "location": {"lat": 40.73, "lng": -73.99, "accuracy": 5}}
            await driver.send_json_to(fix)
            self.assertEqual((await rider.receive_json_from())["type"], "location_update")

            session_registry.get(self.ride.id).last_fix_at -= timedelta(minutes=3)
            idle = await rider.receive_json_from()
            self.assertEqual(idle, {"type": "tracking_state", "rideId": self.ride.id, "state": "tracking_idle"})

            await driver.send_json_to(fix)
            self.assertEqual((await rider.receive_json_from())["type"], "location_update")
            active = await rider.receive_json_from()
            self.assertEqual(active, {"type": "tracking_state", "rideId": self.ride.id, "state": "tracking_active"})

            await rider.disconnect()
            await driver.disconnect()


class RideEventStreamTests(TransactionTestCase):
    def setUp(self):
        self.rider = User.objects.create_user(username='rider', password='x')
        self.ride = Ride.objects.create(rider=self.rider, status='en_route')

    def scope(self, user):
        return {
            "type": "http",
            "method": "GET",
            "path": f"/events/rides/{self.ride.id}/",
            "query_string": b"",
            "headers": [],
            "url_route": {"args": (), "kwargs": {"ride_id": self.ride.id}},
            "user": user,
        }

    async def test_anonymous_is_rejected(self):
        communicator = ApplicationCommunicator(RideEventStreamConsumer.as_asgi(), self.scope(AnonymousUser()))
        await communicator.send_input({"type": "http.request", "body": b"", "more_body": False})
        start = await communicator.receive_output(timeout=1)
        self.assertEqual(start["status"], 401)

    async def test_streams_ride_events(self):
        communicator = ApplicationCommunicator(RideEventStreamConsumer.as_asgi(), self.scope(self.rider))
        await communicator.send_input({"type": "http.request", "body": b"", "more_body": False})

        start = await communicator.receive_output(timeout=1)
        self.assertEqual(start["status"], 200)
        self.assertIn((b"Content-Type", b"text/event-stream"), start["headers"])
        connected = await communicator.receive_output(timeout=1)
        self.assertIn(b"event: connected", connected["body"])

        await get_channel_layer().group_send(
            f"ride_{self.ride.id}",
            {"type": "ride.status", "ride_id": self.ride.id, "status": "arrived", "message": ""},
        )
        chunk = await communicator.receive_output(timeout=1)
        self.assertIn(b"event: ride_status", chunk["body"])
        self.assertIn(b'"status": "arrived"', chunk["body"])

        await communicator.send_input({"type": "http.disconnect"})
        await communicator.wait(timeout=1)


class BroadcastTests(TestCase):
    def test_close_ride_tracking_without_session(self):
        from .broadcast import close_ride_tracking
        session_registry.clear()
        self.assertFalse(close_ride_tracking(12345, "ride_cancelled"))

    def test_close_ride_tracking_closes_open_session(self):
        from .broadcast import close_ride_tracking
        session = session_registry.open(777, 1, 2)
        self.assertTrue(close_ride_tracking(777, "ride_cancelled"))
        self.assertTrue(session.is_closed)
        session_registry.clear()
