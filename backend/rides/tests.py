from decimal import Decimal
from unittest.mock import patch, MagicMock

from django.test import TestCase
from rest_framework.test import APIRequestFactory, force_authenticate

from accounts.models import User
from common.tracking import LocationFix, TrackingState
from drivers.models import DriverProfile
from notifications.models import NotificationLog
from realtime.relay import NOT_TRACKABLE, relay_driver_fix
from realtime.sessions import session_registry
from . import services
from .exceptions import InvalidStatusTransitionError, RideNotFoundError
from .models import Ride
from .views import ride_estimate, update_ride_status, upload_locations


class RideTestMixin:
    def setUp(self):
        session_registry.clear()
        self.factory = APIRequestFactory()
        self.rider = User.objects.create_user(
            username='rider',
            password='pass1234',
            role='rider',
            email='rider@example.com',
            phone_number='+15550000001'
        )
        self.driver = User.objects.create_user(
            username='driver',
            password='driver1234',
            role='driver',
            first_name='Dana',
            last_name='Driver',
            phone_number='+15550000002'
        )
        DriverProfile.objects.create(user=self.driver, vehicle_number='NY-1001', verified=True)

        self.ride = Ride.objects.create(
            rider=self.rider,
            driver=self.driver,
            reference_number='MA-000100',
            pickup_address='City Hall, New York',
            pickup_latitude=Decimal('40.712800'),
            pickup_longitude=Decimal('-74.006000'),
            dropoff_address='Times Square, New York',
            dropoff_latitude=Decimal('40.758000'),
            dropoff_longitude=Decimal('-73.985500'),
            status='en_route',
            estimated_price=Decimal('42.50'),
        )

    def tearDown(self):
        session_registry.clear()

    def fix(self, lat=40.7200, lng=-74.0000, **kwargs):
        return LocationFix(latitude=lat, longitude=lng, accuracy=kwargs.pop('accuracy', 12.0), **kwargs)


class RideLifecycleServiceTests(RideTestMixin, TestCase):
    def test_book_ride_assigns_reference_and_confirms(self):
        result = services.book_ride(
            self.rider,
            pickup_address='Home',
            dropoff_address='Clinic',
        )
        self.assertTrue(result.success)
        self.assertEqual(result.ride.status, 'pending')
        self.assertEqual(result.ride.reference_number, f"MA-{result.ride.id:06d}")
        self.assertTrue(NotificationLog.objects.filter(template_id='ride_booked', user=self.rider).exists())

    def test_assign_driver_accepts_pending_ride(self):
        pending = Ride.objects.create(rider=self.rider, status='pending')
        result = services.assign_driver(pending.id, self.driver)

        pending.refresh_from_db()
        self.assertEqual(pending.status, 'accepted')
        self.assertEqual(pending.driver, self.driver)
        self.assertIsNotNone(pending.accepted_at)
        self.assertEqual(result.message, "Driver assigned")
        self.assertTrue(NotificationLog.objects.filter(template_id='driver_assigned').exists())

    def test_assign_driver_rejects_non_pending_ride(self):
        with self.assertRaises(InvalidStatusTransitionError):
            services.assign_driver(self.ride.id, self.driver)

    def test_invalid_transition_raises(self):
        with self.assertRaises(InvalidStatusTransitionError):
            services.update_ride_status(self.ride.id, 'completed')

    def test_only_assigned_driver_may_update(self):
        other = User.objects.create_user(username='other', password='x', role='driver')
        with self.assertRaises(RideNotFoundError):
            services.update_ride_status(self.ride.id, 'arrived', actor=other)

    def test_arrival_sends_pickup_tracking_event(self):
        dispatcher = MagicMock()
        with patch('notifications.dispatcher.get_dispatcher', return_value=dispatcher):
            services.update_ride_status(self.ride.id, 'arrived', actor=self.driver)

        args, kwargs = dispatcher.send_ride_tracking_notification.call_args
        self.assertEqual(args[:3], (self.rider.id, self.ride.id, 'pickup'))
        self.assertEqual(kwargs['data']['pickupAddress'], 'City Hall, New York')

    def test_completion_closes_tracking_and_drops_later_updates(self):
        session_registry.open(self.ride.id, self.rider.id, self.driver.id)
        session_registry.subscribe(self.ride.id, 'rider-channel')
        first = relay_driver_fix(self.ride.id, self.driver.id, self.fix())
        self.assertTrue(first.relayed)
        session = session_registry.get(self.ride.id)
        self.assertEqual(session.state, TrackingState.TRACKING_ACTIVE)

        services.update_ride_status(self.ride.id, 'arrived')
        services.update_ride_status(self.ride.id, 'in_progress')
        result = services.update_ride_status(self.ride.id, 'completed')

        self.assertIsNotNone(result.ride.completed_at)
        self.assertEqual(result.ride.final_price, Decimal('42.50'))
        self.assertIsNone(session_registry.get(self.ride.id))
        self.assertEqual(session.state, TrackingState.CLOSED)
        self.assertEqual(session.machine.close_reason, 'ride_completed')

        later = relay_driver_fix(self.ride.id, self.driver.id, self.fix())
        self.assertEqual(later.outcome, NOT_TRACKABLE)
        self.assertIsNone(session_registry.get(self.ride.id))

    def test_completion_sends_dropoff_and_completed(self):
        Ride.objects.filter(id=self.ride.id).update(status='in_progress')
        dispatcher = MagicMock()
        with patch('notifications.dispatcher.get_dispatcher', return_value=dispatcher):
            services.update_ride_status(self.ride.id, 'completed')

        self.assertEqual(dispatcher.send_ride_tracking_notification.call_args[0][2], 'dropoff')
        self.assertEqual(dispatcher.send.call_args[0][:2], (self.rider.id, 'ride_completed'))

    def test_notification_failure_does_not_break_booking(self):
        dispatcher = MagicMock()
        dispatcher.send.side_effect = RuntimeError("provider exploded")
        with patch('notifications.dispatcher.get_dispatcher', return_value=dispatcher):
            result = services.book_ride(self.rider, pickup_address='Home')
        self.assertTrue(result.success)


class RideStatusViewTests(RideTestMixin, TestCase):
    def test_rider_cannot_update_status(self):
        request = self.factory.patch(f'/api/rides/{self.ride.id}/status/', {'status': 'arrived'}, format='json')
        force_authenticate(request, user=self.rider)
        response = update_ride_status(request, ride_id=self.ride.id)
        self.assertEqual(response.status_code, 403)

    def test_driver_updates_status(self):
        request = self.factory.patch(f'/api/rides/{self.ride.id}/status/', {'status': 'arrived'}, format='json')
        force_authenticate(request, user=self.driver)
        response = update_ride_status(request, ride_id=self.ride.id)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['ride']['status'], 'arrived')

    def test_invalid_transition_is_bad_request(self):
        request = self.factory.patch(f'/api/rides/{self.ride.id}/status/', {'status': 'pending'}, format='json')
        force_authenticate(request, user=self.driver)
        response = update_ride_status(request, ride_id=self.ride.id)
        self.assertEqual(response.status_code, 400)

    def test_unknown_ride_is_not_found(self):
        request = self.factory.patch('/api/rides/9999/status/', {'status': 'arrived'}, format='json')
        force_authenticate(request, user=self.driver)
        response = update_ride_status(request, ride_id=9999)
        self.assertEqual(response.status_code, 404)


class LocationUploadViewTests(RideTestMixin, TestCase):
    def post(self, locations, user=None):
        request = self.factory.post(
            f'/api/rides/{self.ride.id}/locations/', {'locations': locations}, format='json'
        )
        force_authenticate(request, user=user or self.driver)
        return upload_locations(request, ride_id=self.ride.id)

    def test_placeholder_coordinates_are_never_relayed(self):
        response = self.post([
            {'lat': 0, 'lng': 0, 'accuracy': 5},
            {'lat': 40.7200, 'lng': -74.0000, 'accuracy': 5, 'timestamp': '2026-01-01T12:00:00Z'},
        ])
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['relayed'], 1)
        self.assertEqual(response.data['rejected'][0]['index'], 0)

        history = session_registry.get(self.ride.id).history()
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]['lat'], 40.72)

    def test_low_accuracy_fix_is_dropped(self):
        response = self.post([{'lat': 40.7200, 'lng': -74.0000, 'accuracy': 250}])
        self.assertEqual(response.data['relayed'], 0)
        self.assertIn('accuracy', response.data['rejected'][0]['reason'].lower())

    def test_updates_driver_position(self):
        self.post([{'lat': 40.7300, 'lng': -73.9950, 'accuracy': 8}])
        profile = DriverProfile.objects.get(user=self.driver)
        self.assertEqual(profile.current_latitude, Decimal('40.730000'))

    def test_completed_ride_rejects_batch(self):
        Ride.objects.filter(id=self.ride.id).update(status='completed')
        response = self.post([{'lat': 40.7200, 'lng': -74.0000, 'accuracy': 5}])
        self.assertEqual(response.data['relayed'], 0)
        self.assertEqual(response.data['rejected'][0]['reason'], 'Ride is not being tracked')

    def test_other_driver_gets_not_found(self):
        other = User.objects.create_user(username='other', password='x', role='driver')
        response = self.post([{'lat': 40.72, 'lng': -74.0}], user=other)
        self.assertEqual(response.status_code, 404)

    def test_empty_batch_is_bad_request(self):
        response = self.post([])
        self.assertEqual(response.status_code, 400)


class RideEstimateViewTests(RideTestMixin, TestCase):
    def get(self, user):
        request = self.factory.get(f'/api/rides/{self.ride.id}/estimate/')
        force_authenticate(request, user=user)
        return ride_estimate(request, ride_id=self.ride.id)

    def test_estimate_falls_back_without_maps_key(self):
        response = self.get(self.rider)
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data['is_fallback'])
        self.assertTrue(3.2 <= response.data['distance_miles'] <= 3.5)
        self.assertIn('min', response.data['duration_text'])

    def test_placeholder_pickup_is_unavailable(self):
        Ride.objects.filter(id=self.ride.id).update(pickup_latitude=0, pickup_longitude=0)
        response = self.get(self.rider)
        self.assertFalse(response.data['is_available'])
        self.assertEqual(response.data['distance_text'], 'Unavailable')

    def test_strangers_cannot_see_estimate(self):
        stranger = User.objects.create_user(username='stranger', password='x')
        self.assertEqual(self.get(stranger).status_code, 404)
