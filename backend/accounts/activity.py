"""Last-activity bookkeeping used by the inactivity re-engagement scan."""

from datetime import timedelta

from django.utils import timezone

# Writes are coalesced so an active session does not update the row on every request
ACTIVITY_WRITE_INTERVAL = timedelta(minutes=5)


def touch_last_activity(user, now=None) -> bool:
    """Record that ``user`` was active. Returns True when the row was written."""
    if user is None or not getattr(user, "is_authenticated", False):
        return False
    now = now or timezone.now()
    if user.last_activity_at and now - user.last_activity_at < ACTIVITY_WRITE_INTERVAL:
        return False
    user.last_activity_at = now
    type(user).objects.filter(pk=user.pk).update(last_activity_at=now)
    return True
