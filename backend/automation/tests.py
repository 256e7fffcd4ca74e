from datetime import datetime, time, timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core.cache import cache
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from accounts.models import User
from drivers.models import DriverProfile
from notifications.results import Delivered, DispatchResult, Failed
from rides.models import Ride
from . import jobs
from .models import ReminderSchedule
from .scheduler import LOCK_KEY, run_automation_tick
from .tasks import run_automation_checks


class FakeDispatcher:
    """Records sends; delivers by email unless told otherwise."""

    def __init__(self, delivered=True):
        self.delivered = delivered
        self.sent = []

    def send(self, user_id, template_id, data=None, options=None):
        self.sent.append((user_id, template_id, data))
        email = Delivered("msg-1") if self.delivered else Failed("mailbox unavailable")
        return DispatchResult(email=email, realtime=Delivered())

    def templates(self):
        return [template_id for _, template_id, _ in self.sent]


def local_noon(days=0):
    day = timezone.localdate() + timedelta(days=days)
    return timezone.make_aware(datetime.combine(day, time(12, 0)))


class DocumentExpiryJobTests(TestCase):
    def setUp(self):
        self.now = local_noon()
        self.driver = User.objects.create_user(username='driver', password='x', role='driver', first_name='Dana')
        self.profile = DriverProfile.objects.create(
            user=self.driver,
            license_expiry=timezone.localdate(self.now) + timedelta(days=10),
            insurance_expiry=timezone.localdate(self.now) + timedelta(days=45),
        )

    def test_warns_only_for_documents_within_thirty_days(self):
        dispatcher = FakeDispatcher()
        report = jobs.check_document_expiry(dispatcher, self.now)

        self.assertEqual(report.sent, 1)
        user_id, template_id, data = dispatcher.sent[0]
        self.assertEqual((user_id, template_id), (self.driver.id, 'document_expiry'))
        self.assertEqual(data["documentName"], "Driver's License")
        self.assertEqual(data["daysUntilExpiry"], 10)

    def test_expired_and_expiring_today_are_skipped(self):
        self.profile.license_expiry = timezone.localdate(self.now)
        self.profile.insurance_expiry = timezone.localdate(self.now) - timedelta(days=3)
        self.profile.save()
        dispatcher = FakeDispatcher()
        jobs.check_document_expiry(dispatcher, self.now)
        self.assertEqual(dispatcher.sent, [])

    def test_once_per_document_per_day(self):
        dispatcher = FakeDispatcher()
        jobs.check_document_expiry(dispatcher, self.now)
        report = jobs.check_document_expiry(dispatcher, self.now + timedelta(hours=3))
        self.assertEqual(report.skipped, 1)
        self.assertEqual(len(dispatcher.sent), 1)

        jobs.check_document_expiry(dispatcher, local_noon(days=1))
        self.assertEqual(len(dispatcher.sent), 2)
        self.assertEqual(dispatcher.sent[1][2]["daysUntilExpiry"], 9)

    def test_undelivered_warning_is_retried(self):
        dispatcher = FakeDispatcher(delivered=False)
        report = jobs.check_document_expiry(dispatcher, self.now)
        self.assertEqual(report.failed, 1)
        self.assertFalse(ReminderSchedule.objects.exists())

        jobs.check_document_expiry(dispatcher, self.now + timedelta(minutes=5))
        self.assertEqual(len(dispatcher.sent), 2)


class UnverifiedDriverJobTests(TestCase):
    def setUp(self):
        self.now = timezone.now()
        self.driver = User.objects.create_user(username='driver', password='x', role='driver')
        User.objects.filter(id=self.driver.id).update(date_joined=self.now - timedelta(hours=30))

    def test_reminds_after_a_day_then_every_72_hours(self):
        recent = User.objects.create_user(username='new', password='x', role='driver')
        verified = User.objects.create_user(username='ok', password='x', role='driver', email_verified=True)
        rider = User.objects.create_user(username='rider', password='x', role='rider')
        User.objects.filter(id=recent.id).update(date_joined=self.now - timedelta(hours=1))
        User.objects.filter(id__in=[verified.id, rider.id]).update(date_joined=self.now - timedelta(days=5))

        dispatcher = FakeDispatcher()
        jobs.remind_unverified_drivers(dispatcher, self.now)
        self.assertEqual([s[0] for s in dispatcher.sent], [self.driver.id])
        self.assertEqual(dispatcher.sent[0][2]["hoursSinceSignup"], 30)

        # The recent signup crosses its own 24 hour grace period here
        jobs.remind_unverified_drivers(dispatcher, self.now + timedelta(hours=24))
        self.assertEqual([s[0] for s in dispatcher.sent], [self.driver.id, recent.id])

        jobs.remind_unverified_drivers(dispatcher, self.now + timedelta(hours=72))
        reminded = [s[0] for s in dispatcher.sent]
        self.assertEqual(reminded.count(self.driver.id), 2)
        self.assertEqual(reminded.count(recent.id), 1)
        self.assertNotIn(verified.id, reminded)
        self.assertNotIn(rider.id, reminded)
        schedule = ReminderSchedule.objects.get(user=self.driver, kind='verification_reminder')
        self.assertEqual(schedule.send_count, 2)


class StalePendingRideJobTests(TestCase):
    def setUp(self):
        self.now = timezone.now()
        self.rider = User.objects.create_user(username='rider', password='x', first_name='Rae')
        self.ride = Ride.objects.create(rider=self.rider, reference_number='MA-000007', pickup_address='Home')
        Ride.objects.filter(id=self.ride.id).update(created_at=self.now - timedelta(hours=2))

    def test_notifies_rider_hourly(self):
        fresh = Ride.objects.create(rider=self.rider, pickup_address='Clinic')

        dispatcher = FakeDispatcher()
        jobs.notify_stale_pending_rides(dispatcher, self.now)
        self.assertEqual(dispatcher.templates(), ['ride_still_pending'])
        data = dispatcher.sent[0][2]
        self.assertEqual(data["rideReference"], 'MA-000007')
        self.assertEqual(data["hoursPending"], 2)
        self.assertNotEqual(data["rideId"], fresh.id)

        jobs.notify_stale_pending_rides(dispatcher, self.now + timedelta(minutes=30))
        self.assertEqual(len(dispatcher.sent), 1)
        jobs.notify_stale_pending_rides(dispatcher, self.now + timedelta(minutes=61))
        self.assertEqual([s[2]["rideId"] for s in dispatcher.sent].count(self.ride.id), 2)

    def test_assigned_ride_is_not_stale(self):
        driver = User.objects.create_user(username='driver', password='x', role='driver')
        Ride.objects.filter(id=self.ride.id).update(driver=driver, status='accepted')
        dispatcher = FakeDispatcher()
        jobs.notify_stale_pending_rides(dispatcher, self.now)
        self.assertEqual(dispatcher.sent, [])


class DailySummaryJobTests(TestCase):
    def setUp(self):
        self.evening = timezone.make_aware(datetime.combine(timezone.localdate(), time(18, 30)))
        self.driver = User.objects.create_user(username='driver', password='x', role='driver')
        DriverProfile.objects.create(user=self.driver, verified=True)
        rider = User.objects.create_user(username='rider', password='x')
        done = Ride.objects.create(rider=rider, driver=self.driver, status='completed', final_price=Decimal('40.00'))
        open_ride = Ride.objects.create(rider=rider, driver=self.driver, status='en_route')
        Ride.objects.filter(id__in=[done.id, open_ride.id]).update(created_at=self.evening - timedelta(minutes=30))

    def test_summary_in_configured_hour(self):
        dispatcher = FakeDispatcher()
        jobs.send_daily_summaries(dispatcher, self.evening, summary_hour=18)

        self.assertEqual(dispatcher.templates(), ['daily_summary'])
        data = dispatcher.sent[0][2]
        self.assertEqual(data["totalRides"], 2)
        self.assertEqual(data["completedRides"], 1)
        self.assertEqual(data["completionRate"], 50)
        self.assertEqual(data["earnings"], "40.00")

        jobs.send_daily_summaries(dispatcher, self.evening + timedelta(minutes=20), summary_hour=18)
        self.assertEqual(len(dispatcher.sent), 1)

    def test_nothing_outside_the_hour(self):
        dispatcher = FakeDispatcher()
        report = jobs.send_daily_summaries(dispatcher, self.evening - timedelta(hours=3), summary_hour=18)
        self.assertEqual(report.checked, 0)

    def test_unverified_drivers_get_no_summary(self):
        DriverProfile.objects.filter(user=self.driver).update(verified=False)
        dispatcher = FakeDispatcher()
        jobs.send_daily_summaries(dispatcher, self.evening, summary_hour=18)
        self.assertEqual(dispatcher.sent, [])


class ReengagementJobTests(TestCase):
    def test_role_specific_copy_for_inactive_users(self):
        now = timezone.now()
        rider = User.objects.create_user(username='rider', password='x', role='rider')
        driver = User.objects.create_user(username='driver', password='x', role='driver')
        admin = User.objects.create_user(username='admin', password='x', role='admin')
        active = User.objects.create_user(username='active', password='x', role='rider')
        User.objects.filter(id=rider.id).update(last_activity_at=now - timedelta(days=8))
        User.objects.filter(id=driver.id).update(last_login=now - timedelta(days=10))
        User.objects.filter(id=admin.id).update(last_activity_at=now - timedelta(days=30))
        User.objects.filter(id=active.id).update(last_activity_at=now - timedelta(hours=12))

        dispatcher = FakeDispatcher()
        jobs.send_reengagement(dispatcher, now)

        sent = {user_id: template_id for user_id, template_id, _ in dispatcher.sent}
        self.assertEqual(sent, {rider.id: 'reengagement_rider', driver.id: 'reengagement_driver'})
        self.assertEqual(dict((s[0], s[2]["daysInactive"]) for s in dispatcher.sent)[driver.id], 10)

        jobs.send_reengagement(dispatcher, now + timedelta(days=6))
        self.assertEqual(len(dispatcher.sent), 2)
        jobs.send_reengagement(dispatcher, now + timedelta(days=7))
        self.assertTrue({rider.id, driver.id} <= {s[0] for s in dispatcher.sent[2:]})


def _broken_job(dispatcher, now):
    raise RuntimeError("database went away")


def _counting_job(dispatcher, now):
    report = jobs.JobReport(checked=1, sent=1)
    dispatcher.send(1, 'system_notice', {})
    return report


class AutomationTickTests(TestCase):
    def tearDown(self):
        cache.delete(LOCK_KEY)

    def test_failing_job_does_not_stop_the_others(self):
        fake_jobs = (("broken", _broken_job), ("counting", _counting_job))
        dispatcher = FakeDispatcher()
        with patch('automation.scheduler.JOBS', fake_jobs):
            summary = run_automation_tick(dispatcher=dispatcher)

        self.assertFalse(summary["skipped"])
        self.assertEqual(summary["jobs"]["broken"], {"error": "database went away"})
        self.assertEqual(summary["jobs"]["counting"]["sent"], 1)
        self.assertEqual(len(dispatcher.sent), 1)

    def test_overlapping_tick_is_skipped(self):
        cache.add(LOCK_KEY, "running")
        dispatcher = FakeDispatcher()
        summary = run_automation_tick(dispatcher=dispatcher)
        self.assertTrue(summary["skipped"])
        self.assertEqual(dispatcher.sent, [])

    def test_lock_released_after_tick(self):
        run_automation_tick(dispatcher=FakeDispatcher())
        self.assertIsNone(cache.get(LOCK_KEY))

    def test_only_restricts_jobs(self):
        summary = run_automation_tick(dispatcher=FakeDispatcher(), only=["inactivity"])
        self.assertEqual(list(summary["jobs"]), ["inactivity"])

    def test_celery_task_runs_every_job(self):
        summary = run_automation_checks.delay().get()
        self.assertFalse(summary["skipped"])
        self.assertEqual(set(summary["jobs"]), {name for name, _ in jobs.JOBS})

    def test_management_command(self):
        out = StringIO()
        call_command('run_automation', '--job', 'stale_pending_rides', stdout=out)
        self.assertIn("stale_pending_rides: checked 0, sent 0", out.getvalue())
