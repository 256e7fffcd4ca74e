"""
Notification templates and the registry that serves them.

Templates are immutable. The registry is built once when the app loads and is
handed to the dispatcher, so tests can build a dispatcher around their own
registry.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional

from .exceptions import TemplateNotFoundError

PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


class Category(str, enum.Enum):
    RIDE_UPDATE = "ride_update"
    PAYMENT = "payment"
    SYSTEM = "system"
    ALERT = "alert"


class Priority(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


def render(text: str, data: Optional[Mapping[str, Any]]) -> str:
    """
    Substitute ``{{key}}`` placeholders from ``data``.

    Keys that are missing, None or empty are left in place verbatim so a
    half-filled message is visibly incomplete rather than silently blank.
    """
    if not text:
        return text
    data = data or {}

    def _replace(match):
        value = data.get(match.group(1))
        if value is None or value == "":
            return match.group(0)
        return str(value)

    return PLACEHOLDER_RE.sub(_replace, text)


@dataclass(frozen=True)
class NotificationTemplate:
    id: str
    name: str
    subject: str
    email_body: str
    sms_body: str
    push_body: str
    category: Category
    priority: Priority

    def render_subject(self, data=None) -> str:
        return render(self.subject, data)

    def render_email(self, data=None) -> str:
        return render(self.email_body, data)

    def render_sms(self, data=None) -> str:
        return render(self.sms_body, data)

    def render_push(self, data=None) -> str:
        return render(self.push_body, data)


class TemplateRegistry:
    """Read-only lookup of templates by id."""

    def __init__(self, templates: Iterable[NotificationTemplate]):
        self._templates: Dict[str, NotificationTemplate] = {}
        for template in templates:
            if template.id in self._templates:
                raise ValueError(f"Duplicate notification template id '{template.id}'")
            self._templates[template.id] = template

    def resolve(self, template_id: str) -> NotificationTemplate:
        try:
            return self._templates[template_id]
        except KeyError:
            raise TemplateNotFoundError(template_id)

    def __contains__(self, template_id) -> bool:
        return template_id in self._templates

    def __iter__(self) -> Iterator[NotificationTemplate]:
        return iter(self._templates.values())

    def __len__(self) -> int:
        return len(self._templates)


DEFAULT_TEMPLATES = (
    # ---------------------- Ride lifecycle ----------------------
    NotificationTemplate(
        id="ride_booked",
        name="Ride Booked",
        subject="Your MyAmbulex ride {{rideReference}} is booked",
        email_body="<p>Hi {{firstName}}, your ride from {{pickupAddress}} to {{dropoffAddress}} "
                   "is booked for {{scheduledTime}}. We will let you know when a driver accepts it.</p>",
        sms_body="MyAmbulex: ride {{rideReference}} booked for {{scheduledTime}}.",
        push_body="Your ride is booked",
        category=Category.RIDE_UPDATE,
        priority=Priority.NORMAL,
    ),
    NotificationTemplate(
        id="driver_assigned",
        name="Driver Assigned",
        subject="A driver accepted your MyAmbulex ride",
        email_body="<p>{{driverName}} will drive you for ride {{rideReference}} ({{vehicle}}).</p>",
        sms_body="MyAmbulex: {{driverName}} accepted ride {{rideReference}}.",
        push_body="{{driverName}} accepted your ride",
        category=Category.RIDE_UPDATE,
        priority=Priority.HIGH,
    ),
    NotificationTemplate(
        id="ride_started",
        name="Ride Started",
        subject="Your MyAmbulex ride has started",
        email_body="<p>Your ride {{rideId}} has started. Track your driver in real-time.</p>",
        sms_body="Your MyAmbulex ride has started. Track at: {{trackingUrl}}",
        push_body="Your ride has started",
        category=Category.RIDE_UPDATE,
        priority=Priority.HIGH,
    ),
    NotificationTemplate(
        id="ride_pickup",
        name="Driver Arrived",
        subject="Your driver has arrived",
        email_body="<p>Your driver has arrived at the pickup location for ride {{rideId}}.</p>",
        sms_body="Your MyAmbulex driver has arrived at {{pickupAddress}}",
        push_body="Your driver has arrived",
        category=Category.RIDE_UPDATE,
        priority=Priority.HIGH,
    ),
    NotificationTemplate(
        id="ride_dropoff",
        name="Arrived at Destination",
        subject="You have arrived at your destination",
        email_body="<p>Ride {{rideId}} reached {{dropoffAddress}}.</p>",
        sms_body="MyAmbulex: you have arrived at {{dropoffAddress}}.",
        push_body="You have arrived at your destination",
        category=Category.RIDE_UPDATE,
        priority=Priority.HIGH,
    ),
    NotificationTemplate(
        id="ride_completed",
        name="Ride Completed",
        subject="Your MyAmbulex ride is complete",
        email_body="<p>Thanks for riding with MyAmbulex. Ride {{rideReference}} is complete. "
                   "Total: ${{finalPrice}}.</p>",
        sms_body="MyAmbulex: ride {{rideReference}} complete. Thank you!",
        push_body="Your ride is complete",
        category=Category.RIDE_UPDATE,
        priority=Priority.LOW,
    ),
    NotificationTemplate(
        id="ride_alert",
        name="Ride Alert",
        subject="Important alert for your ride",
        email_body="<p>Alert: {{message}} for ride {{rideId}}</p>",
        sms_body="MyAmbulex Alert: {{message}}",
        push_body="{{message}}",
        category=Category.ALERT,
        priority=Priority.URGENT,
    ),
    NotificationTemplate(
        id="ride_still_pending",
        name="Ride Still Pending",
        subject="We are still looking for a driver",
        email_body="<p>Your ride {{rideReference}} from {{pickupAddress}} has been waiting "
                   "{{hoursPending}} hour(s) for a driver. You can raise your offer or contact support.</p>",
        sms_body="MyAmbulex: still looking for a driver for ride {{rideReference}}.",
        push_body="Still looking for a driver for your ride",
        category=Category.RIDE_UPDATE,
        priority=Priority.NORMAL,
    ),
    # ---------------------- Payments ----------------------
    NotificationTemplate(
        id="payment_failed",
        name="Payment Failed",
        subject="Payment issue with your MyAmbulex ride",
        email_body="<p>We could not charge ${{amount}} for ride {{rideReference}}: {{reason}}. "
                   "Please update your payment method.</p>",
        sms_body="MyAmbulex: payment of ${{amount}} failed. Please update your payment method.",
        push_body="Payment failed for your ride",
        category=Category.PAYMENT,
        priority=Priority.HIGH,
    ),
    # ---------------------- Account automation ----------------------
    NotificationTemplate(
        id="document_expiry",
        name="Document Expiring",
        subject="Your {{documentName}} expires in {{daysUntilExpiry}} days",
        email_body="<p>Hi {{firstName}}, your {{documentName}} expires on {{expiryDate}} "
                   "({{daysUntilExpiry}} days). Upload a renewed copy to keep receiving rides.</p>",
        sms_body="MyAmbulex: your {{documentName}} expires in {{daysUntilExpiry}} days.",
        push_body="{{documentName}} expires in {{daysUntilExpiry}} days",
        category=Category.SYSTEM,
        priority=Priority.HIGH,
    ),
    NotificationTemplate(
        id="verification_reminder",
        name="Verify Your Email",
        subject="Please verify your MyAmbulex email address",
        email_body="<p>Hi {{firstName}}, you signed up {{hoursSinceSignup}} hours ago but have not "
                   "verified your email yet. Verify it to start accepting rides.</p>",
        sms_body="MyAmbulex: please verify your email to start accepting rides.",
        push_body="Verify your email to start accepting rides",
        category=Category.SYSTEM,
        priority=Priority.NORMAL,
    ),
    NotificationTemplate(
        id="daily_summary",
        name="Daily Summary",
        subject="Your MyAmbulex summary for {{date}}",
        email_body="<p>Today you completed {{completedRides}} of {{totalRides}} rides "
                   "({{completionRate}}%) and earned ${{earnings}}.</p>",
        sms_body="MyAmbulex {{date}}: {{completedRides}} rides, ${{earnings}} earned.",
        push_body="{{completedRides}} rides completed today",
        category=Category.SYSTEM,
        priority=Priority.LOW,
    ),
    NotificationTemplate(
        id="reengagement_driver",
        name="Driver Re-engagement",
        subject="We Miss You! Start Earning Again with MyAmbulex",
        email_body="<p>Hi {{firstName}}, it has been {{daysInactive}} days since your last visit. "
                   "Riders near you are booking trips. Go online to start earning again.</p>",
        sms_body="MyAmbulex: riders near you need a driver. Go online to start earning again.",
        push_body="Riders near you need a driver",
        category=Category.SYSTEM,
        priority=Priority.LOW,
    ),
    NotificationTemplate(
        id="reengagement_rider",
        name="Rider Re-engagement",
        subject="Come Back! Book Your Next Ride with MyAmbulex",
        email_body="<p>Hi {{firstName}}, it has been {{daysInactive}} days since your last visit. "
                   "Book your next medical appointment ride in a few taps.</p>",
        sms_body="MyAmbulex: book your next ride in a few taps.",
        push_body="Book your next ride with MyAmbulex",
        category=Category.SYSTEM,
        priority=Priority.LOW,
    ),
)


def build_default_registry() -> TemplateRegistry:
    return TemplateRegistry(DEFAULT_TEMPLATES)
