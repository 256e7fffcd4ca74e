"""Celery tasks for the automation scheduler."""

from celery import shared_task
import logging

logger = logging.getLogger(__name__)


@shared_task
def run_automation_checks():
    """
    Celery beat entry point (every 5 minutes, see CELERY_BEAT_SCHEDULE).

    Runs the scan jobs once and returns the per-job counters.
    """
    from automation.scheduler import run_automation_tick

    summary = run_automation_tick()
    if summary["skipped"]:
        logger.info("Automation checks skipped; another tick holds the lock")
    return summary
