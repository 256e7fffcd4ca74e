"""Safety alerts raised from relayed driver fixes (speeding, low device battery)."""

from dataclasses import dataclass
from typing import List

from django.conf import settings

from common.tracking import LocationFix

SPEED_ALERT_MPH = getattr(settings, "TRACKING_SPEED_ALERT_MPH", 80)
BATTERY_LOW_PERCENT = 20
BATTERY_CRITICAL_PERCENT = 10


@dataclass(frozen=True)
class RideAlert:
    alert_type: str
    severity: str
    message: str


def evaluate_fix(fix: LocationFix, already_raised=frozenset()) -> List[RideAlert]:
    """
    Alerts this fix triggers, skipping types already raised for the session.

    Each alert type fires at most once per tracking session.
    """
    alerts = []

    if fix.speed_mph is not None and fix.speed_mph > SPEED_ALERT_MPH:
        alerts.append(RideAlert(
            "speeding",
            "high",
            f"Driver is travelling at {fix.speed_mph:.0f} mph",
        ))

    if fix.battery_percent is not None:
        if fix.battery_percent < BATTERY_CRITICAL_PERCENT:
            alerts.append(RideAlert(
                "battery_critical",
                "critical",
                f"Driver device battery critically low ({fix.battery_percent}%). Tracking may stop soon.",
            ))
        elif fix.battery_percent < BATTERY_LOW_PERCENT:
            alerts.append(RideAlert(
                "battery_low",
                "medium",
                f"Driver device battery low ({fix.battery_percent}%)",
            ))

    return [alert for alert in alerts if alert.alert_type not in already_raised]
