"""
Channel senders: one object per delivery channel.

Each sender decides at construction time whether its provider credentials are
usable. An unconfigured sender stays disabled for the lifetime of the process
and answers every attempt with ``NotConfigured`` instead of raising.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.conf import settings
from django.core.mail import EmailMultiAlternatives, get_connection
from django.core.mail.message import make_msgid
from django.utils import timezone
from django.utils.html import strip_tags

from .results import ChannelResult, Delivered, Failed, NotConfigured
from .templates import NotificationTemplate

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_TIMEOUT = 10

# Push endpoints answering with these statuses are gone for good
EXPIRED_PUSH_STATUSES = (404, 410)


def credential_present(value: Optional[str]) -> bool:
    """Blank values and copied placeholders ("your_api_key") count as absent."""
    return bool(value) and "your_" not in str(value)


class ChannelSender(ABC):
    """Base class for a delivery channel."""

    channel = ""

    def __init__(self, configured: bool):
        self.configured = configured

    def __repr__(self):
        state = "configured" if self.configured else "disabled"
        return f"<{self.__class__.__name__} {state}>"

    def send(self, user, template: NotificationTemplate, data: Mapping[str, Any]) -> ChannelResult:
        """Attempt delivery. Provider errors propagate to the dispatcher."""
        if not self.configured:
            return NotConfigured()
        return self.deliver(user, template, data)

    @abstractmethod
    def deliver(self, user, template: NotificationTemplate, data: Mapping[str, Any]) -> ChannelResult:
        raise NotImplementedError


class EmailSender(ChannelSender):
    """Email over the Django mail framework (SendGrid SMTP relay in production)."""

    channel = "email"

    def __init__(self, api_key: Optional[str], from_email: Optional[str], timeout: float = DEFAULT_PROVIDER_TIMEOUT):
        super().__init__(credential_present(api_key) and bool(from_email))
        self.from_email = from_email
        self.timeout = timeout

    def deliver(self, user, template, data):
        if not user.email:
            return Failed("user has no email address")

        html_body = template.render_email(data)
        message_id = make_msgid(domain="myambulex.com")
        message = EmailMultiAlternatives(
            subject=template.render_subject(data),
            body=strip_tags(html_body),
            from_email=self.from_email,
            to=[user.email],
            headers={"Message-ID": message_id},
            connection=get_connection(timeout=self.timeout),
        )
        message.attach_alternative(html_body, "text/html")
        sent = message.send(fail_silently=False)
        if not sent:
            return Failed("email backend accepted no messages")
        return Delivered(provider_id=message_id)


class SmsSender(ChannelSender):
    """SMS through the Twilio REST API."""

    channel = "sms"

    def __init__(
        self,
        account_sid: Optional[str],
        auth_token: Optional[str],
        from_number: Optional[str],
        timeout: float = DEFAULT_PROVIDER_TIMEOUT,
        client=None,
    ):
        configured = (
            credential_present(account_sid)
            and str(account_sid).startswith("AC")
            and credential_present(auth_token)
            and credential_present(from_number)
        )
        super().__init__(configured)
        self.from_number = from_number
        self.client = client
        if configured and client is None:
            from twilio.http.http_client import TwilioHttpClient
            from twilio.rest import Client

            self.client = Client(account_sid, auth_token, http_client=TwilioHttpClient(timeout=timeout))

    def deliver(self, user, template, data):
        if not user.phone_number:
            return Failed("user has no phone number")
        message = self.client.messages.create(
            body=template.render_sms(data),
            from_=self.from_number,
            to=user.phone_number,
        )
        return Delivered(provider_id=message.sid)


class PushSender(ChannelSender):
    """Web push to every subscription the user registered; expired endpoints are pruned."""

    channel = "push"

    def __init__(self, vapid_private_key: Optional[str], vapid_subject: Optional[str], timeout: float = DEFAULT_PROVIDER_TIMEOUT):
        super().__init__(credential_present(vapid_private_key) and bool(vapid_subject))
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject
        self.timeout = timeout

    def _payload(self, template, data) -> Dict[str, Any]:
        return {
            "title": template.render_subject(data),
            "body": template.render_push(data)[:200],
            "tag": template.id,
            "data": {"templateId": template.id, "rideId": data.get("rideId")},
        }

    def deliver(self, user, template, data):
        from pywebpush import WebPushException, webpush

        from .models import PushSubscription

        subscriptions = list(PushSubscription.objects.filter(user_id=user.id))
        if not subscriptions:
            return Failed("user has no push subscriptions")

        payload = json.dumps(self._payload(template, data))
        sent_count = 0
        for subscription in subscriptions:
            try:
                webpush(
                    subscription_info=subscription.subscription_info(),
                    data=payload,
                    vapid_private_key=self.vapid_private_key,
                    vapid_claims={"sub": self.vapid_subject},
                    timeout=self.timeout,
                )
                sent_count += 1
            except WebPushException as exc:
                status = getattr(exc.response, "status_code", None)
                if status in EXPIRED_PUSH_STATUSES:
                    logger.info("Pruning expired push endpoint %s for user %s", subscription.id, user.id)
                    subscription.delete()
                else:
                    logger.warning("Push to endpoint %s failed: %s", subscription.id, exc)

        if not sent_count:
            return Failed(f"push failed for all {len(subscriptions)} subscriptions")
        return Delivered(sent_count=sent_count)


class RealtimeSender(ChannelSender):
    """In-app notification over the user's channel group (``user_<id>``)."""

    channel = "realtime"

    def __init__(self, channel_layer=None):
        self.channel_layer = channel_layer or get_channel_layer()
        super().__init__(self.channel_layer is not None)

    def push_event(self, user_id, notification: Dict[str, Any]):
        async_to_sync(self.channel_layer.group_send)(
            f"user_{user_id}",
            {"type": "notification", "notification": notification},
        )

    def deliver(self, user, template, data):
        self.push_event(user.id, {
            "templateId": template.id,
            "title": template.render_subject(data),
            "message": template.render_push(data),
            "category": template.category.value,
            "priority": template.priority.value,
            "data": dict(data),
            "timestamp": timezone.now().isoformat(),
        })
        return Delivered()


def build_senders() -> Dict[str, ChannelSender]:
    """Build the process-wide senders from settings, warning about disabled channels."""
    timeout = getattr(settings, "NOTIFICATION_PROVIDER_TIMEOUT", DEFAULT_PROVIDER_TIMEOUT)
    senders = {
        "email": EmailSender(
            getattr(settings, "SENDGRID_API_KEY", ""),
            getattr(settings, "NOTIFICATION_FROM_EMAIL", ""),
            timeout=timeout,
        ),
        "sms": SmsSender(
            getattr(settings, "TWILIO_ACCOUNT_SID", ""),
            getattr(settings, "TWILIO_AUTH_TOKEN", ""),
            getattr(settings, "TWILIO_PHONE_NUMBER", ""),
            timeout=timeout,
        ),
        "push": PushSender(
            getattr(settings, "VAPID_PRIVATE_KEY", ""),
            getattr(settings, "VAPID_SUBJECT", ""),
            timeout=timeout,
        ),
        "realtime": RealtimeSender(),
    }

    for name, sender in senders.items():
        if not sender.configured:
            logger.warning("Notification channel '%s' is not configured; it stays disabled", name)
    return senders
