"""
Multi-channel notification dispatch.

The dispatcher is built once by the notifications AppConfig with the template
registry and the channel senders; use ``get_dispatcher()`` to reach it.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from django.apps import apps
from django.contrib.auth import get_user_model
from django.utils import timezone

from .exceptions import InvalidSubscriptionError, RecipientNotFoundError
from .preferences import ChannelOverrides, PreferenceSnapshot, decide
from .results import DispatchResult, Failed, NotConfigured
from .templates import Priority, TemplateRegistry

logger = logging.getLogger(__name__)

PROVIDER_CHANNELS = ("email", "sms", "push")

# Tracking events that also get a templated message
TRACKING_TEMPLATE_EVENTS = {"started", "pickup", "dropoff"}
ESCALATED_ALERT_SEVERITIES = {"high", "critical"}


@dataclass(frozen=True)
class NotificationOptions:
    force_email: bool = False
    force_sms: bool = False
    force_push: bool = False
    priority: Optional[Priority] = None

    def overrides(self) -> ChannelOverrides:
        return ChannelOverrides(
            force_email=self.force_email,
            force_sms=self.force_sms,
            force_push=self.force_push,
        )


@dataclass(frozen=True)
class NotificationEvent:
    template_id: str
    user_id: int
    category: str
    priority: str
    data: Dict[str, str] = field(default_factory=dict)


def normalize_data(data: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Template data is a flat string map; None values are dropped so their placeholders stay visible."""
    return {str(key): str(value) for key, value in (data or {}).items() if value is not None}


def load_preferences(user) -> PreferenceSnapshot:
    from .models import NotificationPreference

    preference = NotificationPreference.objects.filter(user_id=user.id).first()
    return PreferenceSnapshot.from_model(preference)


class NotificationDispatcher:
    """Sends one templated notification over every eligible channel."""

    def __init__(
        self,
        registry: TemplateRegistry,
        senders: Mapping[str, Any],
        preference_loader: Callable[[Any], PreferenceSnapshot] = load_preferences,
    ):
        self.registry = registry
        self.senders = dict(senders)
        self.preference_loader = preference_loader

    def _load_user(self, user_id):
        User = get_user_model()
        try:
            return User.objects.get(id=user_id)
        except User.DoesNotExist:
            raise RecipientNotFoundError(f"User {user_id} not found")

    def _attempt(self, channel, user, template, data):
        sender = self.senders.get(channel)
        if sender is None:
            return NotConfigured()
        try:
            return sender.send(user, template, data)
        except Exception as exc:
            logger.warning("%s delivery of %s to user %s failed: %s", channel, template.id, user.id, exc)
            return Failed(str(exc) or exc.__class__.__name__)

    def _record(self, event: NotificationEvent, result: DispatchResult):
        from .models import NotificationLog

        try:
            NotificationLog.objects.create(
                user_id=event.user_id,
                template_id=event.template_id,
                priority=event.priority,
                results=result.as_dict(),
                succeeded=result.succeeded,
            )
        except Exception:
            logger.exception("Failed to write notification log for %s", event.template_id)

    def send(self, user_id, template_id: str, data=None, options: Optional[NotificationOptions] = None) -> DispatchResult:
        """
        Deliver a templated notification to one user.

        Args:
            user_id: Recipient's user ID
            template_id: Registry key of the template
            data: Placeholder values for the template
            options: Force flags and an optional priority override

        Returns:
            DispatchResult with an entry for every attempted channel

        Raises:
            TemplateNotFoundError: Unknown template id
            RecipientNotFoundError: Unknown user id
        """
        template = self.registry.resolve(template_id)
        user = self._load_user(user_id)
        options = options or NotificationOptions()
        data = normalize_data(data)
        priority = Priority(options.priority) if options.priority else template.priority

        event = NotificationEvent(
            template_id=template.id,
            user_id=user.id,
            category=template.category.value,
            priority=priority.value,
            data=data,
        )

        decision = decide(template, self.preference_loader(user), options.overrides(), priority)

        result = DispatchResult()
        for channel in PROVIDER_CHANNELS:
            if getattr(decision, channel):
                setattr(result, channel, self._attempt(channel, user, template, data))
        # Real-time is cheap and non-intrusive, so it is always attempted
        result.realtime = self._attempt("realtime", user, template, data)

        logger.info(
            "Notification %s to user %s (%s): %s",
            template.id, user.id, priority.value,
            {name: outcome.__class__.__name__ for name, outcome in result.attempted().items()},
        )
        self._record(event, result)
        return result

    # ---------------------- Ride entry points ----------------------

    def _push_realtime(self, user_id, notification: Dict[str, Any]):
        sender = self.senders.get("realtime")
        if sender is None or not sender.configured:
            return
        sender.push_event(user_id, notification)

    def send_ride_tracking_notification(self, user_id, ride_id, event: str, message: str, location=None, data=None) -> bool:
        """
        Tell a rider about a tracking event.

        ``started``, ``pickup`` and ``dropoff`` also dispatch the matching
        ``ride_<event>`` template at high priority.
        """
        try:
            self._push_realtime(user_id, {
                "type": "ride_tracking",
                "rideId": ride_id,
                "event": event,
                "message": message,
                "location": location,
                "timestamp": timezone.now().isoformat(),
            })
            if event in TRACKING_TEMPLATE_EVENTS:
                template_data = {"rideId": ride_id, "message": message, **(data or {})}
                self.send(
                    user_id,
                    f"ride_{event}",
                    template_data,
                    NotificationOptions(priority=Priority.HIGH),
                )
            return True
        except Exception:
            logger.exception("Tracking notification %s for ride %s failed", event, ride_id)
            return False

    def send_ride_alert_notification(self, user_id, ride_id, alert_type: str, message: str, severity: str) -> bool:
        """Raise a ride alert; high and critical alerts also go out as an urgent forced SMS."""
        try:
            self._push_realtime(user_id, {
                "type": "ride_alert",
                "rideId": ride_id,
                "alertType": alert_type,
                "severity": severity,
                "message": message,
                "timestamp": timezone.now().isoformat(),
            })
            if severity in ESCALATED_ALERT_SEVERITIES:
                self.send(
                    user_id,
                    "ride_alert",
                    {"rideId": ride_id, "message": message, "alertType": alert_type, "severity": severity},
                    NotificationOptions(force_sms=True, priority=Priority.URGENT),
                )
            return True
        except Exception:
            logger.exception("Ride alert %s for ride %s failed", alert_type, ride_id)
            return False

    # ---------------------- Push subscriptions ----------------------

    def register_push_subscription(self, user, subscription: Mapping[str, Any]):
        """Store a browser push subscription; re-registering an endpoint updates it."""
        from .models import PushSubscription

        endpoint = subscription.get("endpoint")
        keys = subscription.get("keys") or {}
        if not endpoint or not keys.get("p256dh") or not keys.get("auth"):
            raise InvalidSubscriptionError("Subscription requires endpoint, keys.p256dh and keys.auth")

        record, created = PushSubscription.objects.update_or_create(
            endpoint=endpoint,
            defaults={"user": user, "p256dh": keys["p256dh"], "auth": keys["auth"]},
        )
        logger.info("%s push subscription %s for user %s", "Registered" if created else "Refreshed", record.id, user.id)
        return record


def get_dispatcher() -> NotificationDispatcher:
    return apps.get_app_config("notifications").dispatcher
