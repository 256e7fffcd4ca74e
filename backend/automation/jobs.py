"""
Periodic scan jobs run by the automation scheduler.

Each job takes the dispatcher and the tick time, finds qualifying records and
sends one templated notification per record. A reminder's ``ReminderSchedule``
only advances when the dispatch reached the user on at least one provider
channel, so undelivered reminders are retried on the next tick.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db.models import Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from .models import ReminderSchedule

logger = logging.getLogger(__name__)

DOCUMENT_WARNING_DAYS = 30
VERIFICATION_GRACE = timedelta(hours=24)
VERIFICATION_INTERVAL = timedelta(hours=72)
STALE_PENDING_AFTER = timedelta(hours=1)
STALE_PENDING_INTERVAL = timedelta(hours=1)
INACTIVITY_AFTER = timedelta(days=7)
INACTIVITY_INTERVAL = timedelta(days=7)


@dataclass
class JobReport:
    """Per-job counters returned to the scheduler."""
    checked: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def local_day_bounds(now: datetime):
    """(start, end) of the local calendar day containing ``now``."""
    today = timezone.localdate(now)
    start = timezone.make_aware(datetime.combine(today, time.min))
    end = timezone.make_aware(datetime.combine(today + timedelta(days=1), time.min))
    return start, end


def next_local_midnight(now: datetime) -> datetime:
    return local_day_bounds(now)[1]


def days_until_expiry(expires_on: date, now: datetime) -> int:
    """Local calendar days left before a document expires; expiring tomorrow is 1, today is 0."""
    return (expires_on - timezone.localdate(now)).days


def _is_due(user_id: int, kind: str, subject_key: str, now: datetime) -> bool:
    schedule = ReminderSchedule.objects.filter(user_id=user_id, kind=kind, subject_key=subject_key).first()
    return schedule is None or schedule.is_due(now)


def _mark_sent(user_id: int, kind: str, subject_key: str, now: datetime, next_eligible_at: datetime):
    schedule, _ = ReminderSchedule.objects.get_or_create(user_id=user_id, kind=kind, subject_key=subject_key)
    schedule.last_sent_at = now
    schedule.next_eligible_at = next_eligible_at
    schedule.send_count += 1
    schedule.save(update_fields=['last_sent_at', 'next_eligible_at', 'send_count', 'updated_at'])


def _send_reminder(
    dispatcher,
    report: JobReport,
    *,
    user_id: int,
    kind: str,
    template_id: str,
    data: Dict[str, Any],
    now: datetime,
    next_eligible_at: datetime,
    subject_key: str = '',
):
    """Dispatch one reminder if its schedule is due and advance the schedule on delivery."""
    report.checked += 1
    if not _is_due(user_id, kind, subject_key, now):
        report.skipped += 1
        return

    try:
        result = dispatcher.send(user_id, template_id, data)
    except Exception:
        logger.exception("Failed to dispatch %s to user %s", template_id, user_id)
        report.failed += 1
        return

    if result.delivered_on_provider:
        _mark_sent(user_id, kind, subject_key, now, next_eligible_at)
        report.sent += 1
    else:
        logger.info("%s for user %s was not delivered on any provider channel", template_id, user_id)
        report.failed += 1


# ---------------------- Jobs ----------------------

def check_document_expiry(dispatcher, now: datetime) -> JobReport:
    """Warn drivers whose license or insurance expires within 30 days (once per document per day)."""
    from drivers.models import DriverProfile

    report = JobReport()
    profiles = DriverProfile.objects.select_related('user').exclude(
        license_expiry__isnull=True, insurance_expiry__isnull=True
    )
    for profile in profiles:
        for key, label, expires_on in profile.expiring_documents():
            days = days_until_expiry(expires_on, now)
            if not 0 < days <= DOCUMENT_WARNING_DAYS:
                continue
            _send_reminder(
                dispatcher,
                report,
                user_id=profile.user_id,
                kind='document_expiry',
                subject_key=key,
                template_id='document_expiry',
                data={
                    "firstName": profile.user.first_name,
                    "documentName": label,
                    "daysUntilExpiry": days,
                    "expiryDate": expires_on.strftime("%b %d, %Y"),
                },
                now=now,
                next_eligible_at=next_local_midnight(now),
            )
    return report


def remind_unverified_drivers(dispatcher, now: datetime) -> JobReport:
    """Drivers registered more than 24 hours ago without a verified email, every 72 hours."""
    User = get_user_model()

    report = JobReport()
    drivers = User.objects.filter(
        role='driver',
        is_active=True,
        email_verified=False,
        date_joined__lte=now - VERIFICATION_GRACE,
    )
    for driver in drivers:
        hours = int((now - driver.date_joined).total_seconds() // 3600)
        _send_reminder(
            dispatcher,
            report,
            user_id=driver.id,
            kind='verification_reminder',
            template_id='verification_reminder',
            data={"firstName": driver.first_name, "hoursSinceSignup": hours},
            now=now,
            next_eligible_at=now + VERIFICATION_INTERVAL,
        )
    return report


def notify_stale_pending_rides(dispatcher, now: datetime) -> JobReport:
    """Tell riders we are still searching when a ride has waited an hour without a driver."""
    from rides.models import Ride
    from rides.services import ride_template_data

    report = JobReport()
    rides = Ride.objects.select_related('rider').filter(
        status='pending',
        driver__isnull=True,
        created_at__lte=now - STALE_PENDING_AFTER,
    )
    for ride in rides:
        data = ride_template_data(ride)
        data["hoursPending"] = int((now - ride.created_at).total_seconds() // 3600)
        _send_reminder(
            dispatcher,
            report,
            user_id=ride.rider_id,
            kind='ride_still_pending',
            subject_key=f"ride:{ride.id}",
            template_id='ride_still_pending',
            data=data,
            now=now,
            next_eligible_at=now + STALE_PENDING_INTERVAL,
        )
    return report


def send_daily_summaries(dispatcher, now: datetime, summary_hour: Optional[int] = None) -> JobReport:
    """
    Earnings summary for verified drivers with rides today.

    Only runs during the configured local hour; the per-day schedule keeps it
    to one summary per driver per day.
    """
    from drivers.models import DriverProfile
    from rides.models import Ride

    report = JobReport()
    if summary_hour is None:
        summary_hour = settings.AUTOMATION_DAILY_SUMMARY_HOUR
    local_now = timezone.localtime(now)
    if local_now.hour != summary_hour:
        return report

    day_start, day_end = local_day_bounds(now)
    driver_ids = DriverProfile.objects.filter(verified=True, user__is_active=True).values_list('user_id', flat=True)
    for driver_id in driver_ids:
        rides = Ride.objects.filter(driver_id=driver_id, created_at__gte=day_start, created_at__lt=day_end)
        total = rides.count()
        if not total:
            continue
        completed = rides.filter(status='completed')
        completed_count = completed.count()
        earnings = completed.aggregate(total=Sum('final_price'))['total'] or Decimal('0')
        _send_reminder(
            dispatcher,
            report,
            user_id=driver_id,
            kind='daily_summary',
            subject_key=local_now.date().isoformat(),
            template_id='daily_summary',
            data={
                "date": local_now.strftime("%b %d, %Y"),
                "totalRides": total,
                "completedRides": completed_count,
                "completionRate": round(completed_count * 100 / total),
                "earnings": f"{earnings:.2f}",
            },
            now=now,
            next_eligible_at=day_end,
        )
    return report


def send_reengagement(dispatcher, now: datetime) -> JobReport:
    """Re-engage riders and drivers with no activity for a week."""
    User = get_user_model()

    report = JobReport()
    users = (
        User.objects.filter(is_active=True, role__in=['rider', 'driver'])
        .annotate(seen_at=Coalesce('last_activity_at', 'last_login', 'date_joined'))
        .filter(seen_at__lte=now - INACTIVITY_AFTER)
    )
    for user in users:
        _send_reminder(
            dispatcher,
            report,
            user_id=user.id,
            kind='reengagement',
            template_id=f"reengagement_{user.role}",
            data={"firstName": user.first_name, "daysInactive": (now - user.seen_at).days},
            now=now,
            next_eligible_at=now + INACTIVITY_INTERVAL,
        )
    return report


# Run in this order every tick
JOBS = (
    ("document_expiry", check_document_expiry),
    ("unverified_accounts", remind_unverified_drivers),
    ("stale_pending_rides", notify_stale_pending_rides),
    ("daily_summary", send_daily_summaries),
    ("inactivity", send_reengagement),
)
