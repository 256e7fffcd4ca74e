"""
One automation tick: run every scan job in order, each fault-isolated.

Ticks are fired by Celery beat on a fixed interval and may overlap when a tick
runs long, so a cache lock makes a second concurrent tick skip.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from django.conf import settings
from django.core.cache import cache
from django.utils import timezone

from .jobs import JOBS

logger = logging.getLogger(__name__)

LOCK_KEY = "automation:tick-in-progress"


def run_automation_tick(
    dispatcher=None,
    now: Optional[datetime] = None,
    only: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """
    Run the automation jobs once.

    Args:
        dispatcher: NotificationDispatcher to send through (defaults to the app's)
        now: Tick time (defaults to timezone.now())
        only: Restrict the tick to these job names

    Returns:
        {"skipped": bool, "jobs": {name: counters}}; a job that raised reports {"error": "..."}
    """
    lock_timeout = getattr(settings, "AUTOMATION_LOCK_TIMEOUT", 15 * 60)
    if not cache.add(LOCK_KEY, timezone.now().isoformat(), timeout=lock_timeout):
        logger.warning("Automation tick skipped: previous tick still running")
        return {"skipped": True, "jobs": {}}

    try:
        if dispatcher is None:
            from notifications.dispatcher import get_dispatcher
            dispatcher = get_dispatcher()
        now = now or timezone.now()
        selected = set(only) if only else None

        results: Dict[str, Any] = {}
        for name, job in JOBS:
            if selected is not None and name not in selected:
                continue
            try:
                report = job(dispatcher, now)
            except Exception as e:
                logger.exception("Automation job %s failed", name)
                results[name] = {"error": str(e)}
                continue
            results[name] = report.as_dict()
            if report.sent or report.failed:
                logger.info("Automation job %s: %s", name, results[name])

        return {"skipped": False, "jobs": results}
    finally:
        cache.delete(LOCK_KEY)
