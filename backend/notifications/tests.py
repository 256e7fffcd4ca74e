from unittest.mock import MagicMock, patch

from django.core import mail
from django.test import SimpleTestCase, TestCase
from rest_framework.test import APIRequestFactory, force_authenticate

from accounts.models import User
from .dispatcher import NotificationDispatcher, NotificationOptions, get_dispatcher
from .exceptions import RecipientNotFoundError, TemplateNotFoundError
from .models import NotificationLog, NotificationPreference, PushSubscription
from .preferences import ChannelOverrides, PreferenceSnapshot, decide
from .results import Delivered, DispatchResult, Failed, NotConfigured
from .senders import EmailSender, PushSender, RealtimeSender, SmsSender, build_senders, credential_present
from .templates import (
    Category,
    NotificationTemplate,
    Priority,
    TemplateRegistry,
    build_default_registry,
    render,
)
from .views import notification_preferences, register_push_subscription


def make_template(category=Category.RIDE_UPDATE, priority=Priority.NORMAL, template_id="sample"):
    return NotificationTemplate(
        id=template_id,
        name="Sample",
        subject="Ride {{rideId}}",
        email_body="<p>Hello {{firstName}}</p>",
        sms_body="Hi {{firstName}}",
        push_body="Push {{rideId}}",
        category=category,
        priority=priority,
    )


class RecordingSender:
    """Stands in for a channel sender and remembers what it was asked to send."""

    def __init__(self, channel, result=None, error=None):
        self.channel = channel
        self.configured = True
        self.result = result or Delivered(provider_id=f"{channel}-1")
        self.error = error
        self.calls = []
        self.events = []

    def send(self, user, template, data):
        self.calls.append((user.id, template.id, dict(data)))
        if self.error:
            raise self.error
        return self.result

    def push_event(self, user_id, notification):
        self.events.append((user_id, notification))


class TemplateRenderingTests(SimpleTestCase):
    def test_substitutes_known_keys(self):
        self.assertEqual(render("Ride {{rideId}} at {{time}}", {"rideId": 7, "time": "9am"}), "Ride 7 at 9am")

    def test_unresolved_placeholders_stay_verbatim(self):
        self.assertEqual(render("Hi {{firstName}}, ride {{rideId}}", {"rideId": "3"}), "Hi {{firstName}}, ride 3")
        self.assertEqual(render("Hi {{firstName}}", {"firstName": ""}), "Hi {{firstName}}")
        self.assertEqual(render("Hi {{firstName}}", None), "Hi {{firstName}}")

    def test_registry_resolves_and_rejects_unknown_ids(self):
        registry = build_default_registry()
        self.assertEqual(registry.resolve("ride_started").subject, "Your MyAmbulex ride has started")
        self.assertIn("ride_alert", registry)
        with self.assertRaises(TemplateNotFoundError):
            registry.resolve("does_not_exist")

    def test_registry_rejects_duplicate_ids(self):
        with self.assertRaises(ValueError):
            TemplateRegistry([make_template(), make_template()])

    def test_default_catalog_covers_lifecycle_and_automation(self):
        ids = {template.id for template in build_default_registry()}
        for template_id in (
            "ride_booked", "driver_assigned", "ride_started", "ride_pickup", "ride_dropoff",
            "ride_completed", "ride_alert", "ride_still_pending", "payment_failed",
            "document_expiry", "verification_reminder", "daily_summary",
            "reengagement_driver", "reengagement_rider",
        ):
            self.assertIn(template_id, ids)

    def test_ride_alert_sms_copy(self):
        template = build_default_registry().resolve("ride_alert")
        self.assertEqual(template.render_sms({"message": "Driver speeding"}), "MyAmbulex Alert: Driver speeding")
        self.assertEqual(template.priority, Priority.URGENT)


class PreferenceResolverTests(SimpleTestCase):
    def test_decide_is_pure(self):
        template = make_template()
        prefs = PreferenceSnapshot(sms_enabled=False)
        first = decide(template, prefs)
        second = decide(template, prefs)
        self.assertEqual(first, second)
        self.assertEqual(prefs, PreferenceSnapshot(sms_enabled=False))

    def test_urgent_ignores_category_switches(self):
        template = make_template(category=Category.SYSTEM, priority=Priority.URGENT)
        prefs = PreferenceSnapshot(system_alerts=False, push_enabled=False)
        decision = decide(template, prefs)
        self.assertEqual((decision.email, decision.sms, decision.push), (True, True, False))

    def test_emergency_only_uses_global_switches(self):
        template = make_template(category=Category.RIDE_UPDATE, priority=Priority.HIGH)
        prefs = PreferenceSnapshot(ride_updates=False, emergency_only=True, email_enabled=False)
        decision = decide(template, prefs)
        self.assertEqual((decision.email, decision.sms, decision.push), (False, True, True))

    def test_email_off_ride_update_normal(self):
        template = make_template(category=Category.RIDE_UPDATE, priority=Priority.NORMAL)
        decision = decide(template, PreferenceSnapshot(email_enabled=False))
        self.assertEqual((decision.email, decision.sms, decision.push), (False, True, True))

    def test_low_priority_skips_sms_on_category_path(self):
        template = make_template(priority=Priority.LOW)
        self.assertFalse(decide(template, PreferenceSnapshot()).sms)

    def test_emergency_only_keeps_sms_for_low_priority(self):
        template = make_template(category=Category.RIDE_UPDATE, priority=Priority.LOW)
        decision = decide(template, PreferenceSnapshot(emergency_only=True))
        self.assertEqual((decision.email, decision.sms, decision.push), (True, True, True))

    def test_category_switch_off_blocks_all_channels(self):
        template = make_template(category=Category.PAYMENT, priority=Priority.HIGH)
        decision = decide(template, PreferenceSnapshot(payment_alerts=False))
        self.assertEqual(decision.enabled_channels(), [])

    def test_ride_update_with_rides_off_and_push_off(self):
        template = make_template(category=Category.RIDE_UPDATE, priority=Priority.HIGH)
        decision = decide(template, PreferenceSnapshot(ride_updates=False, push_enabled=False))
        self.assertEqual((decision.email, decision.sms, decision.push), (False, False, False))

    def test_alert_category_has_no_opt_out(self):
        template = make_template(category=Category.ALERT, priority=Priority.HIGH)
        decision = decide(template, PreferenceSnapshot(system_alerts=False, ride_updates=False))
        self.assertEqual(decision.enabled_channels(), ["email", "sms", "push"])

    def test_force_flags_override_single_channel(self):
        template = make_template(priority=Priority.LOW)
        decision = decide(template, PreferenceSnapshot(sms_enabled=False), ChannelOverrides(force_sms=True))
        self.assertTrue(decision.sms)

    def test_priority_override_replaces_template_priority(self):
        template = make_template(priority=Priority.LOW)
        self.assertTrue(decide(template, PreferenceSnapshot(), priority=Priority.HIGH).sms)

    def test_snapshot_from_missing_row_uses_defaults(self):
        snapshot = PreferenceSnapshot.from_model(None)
        self.assertTrue(snapshot.email_enabled)
        self.assertFalse(snapshot.marketing_emails)
        self.assertFalse(snapshot.emergency_only)


class DispatchResultTests(SimpleTestCase):
    def test_succeeded_needs_one_delivery(self):
        self.assertFalse(DispatchResult(email=Failed("boom"), sms=NotConfigured()).succeeded)
        self.assertTrue(DispatchResult(email=Failed("boom"), push=Delivered(sent_count=1)).succeeded)

    def test_realtime_alone_is_not_a_provider_delivery(self):
        result = DispatchResult(email=Failed("boom"), realtime=Delivered())
        self.assertTrue(result.succeeded)
        self.assertFalse(result.delivered_on_provider)

    def test_as_dict_skips_unattempted_channels(self):
        payload = DispatchResult(sms=NotConfigured(), realtime=Delivered()).as_dict()
        self.assertEqual(set(payload), {"sms", "realtime"})
        self.assertEqual(payload["sms"]["error"], "channel not configured")


class DispatcherTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(
            username='rider', password='pass1234', email='rider@example.com', phone_number='+15550001111'
        )
        self.senders = {
            "email": RecordingSender("email"),
            "sms": RecordingSender("sms"),
            "push": RecordingSender("push"),
            "realtime": RecordingSender("realtime"),
        }
        self.dispatcher = NotificationDispatcher(build_default_registry(), self.senders)

    def test_failing_channel_does_not_block_others(self):
        self.senders["sms"].error = RuntimeError("Twilio down")
        result = self.dispatcher.send(self.user.id, "driver_assigned", {"driverName": "Sam"})

        self.assertIsInstance(result.email, Delivered)
        self.assertIsInstance(result.sms, Failed)
        self.assertEqual(result.sms.reason, "Twilio down")
        self.assertIsInstance(result.push, Delivered)
        self.assertIsInstance(result.realtime, Delivered)

    def test_not_configured_channel_reports_reason(self):
        senders = dict(self.senders, sms=SmsSender("", "", ""))
        dispatcher = NotificationDispatcher(build_default_registry(), senders)
        result = dispatcher.send(self.user.id, "driver_assigned", {})
        self.assertEqual(result.sms, NotConfigured("channel not configured"))
        self.assertIsInstance(result.email, Delivered)
        self.assertEqual(self.senders["sms"].calls, [])

    def test_realtime_always_attempted(self):
        NotificationPreference.objects.create(
            user=self.user, email_enabled=False, sms_enabled=False, push_enabled=False
        )
        result = self.dispatcher.send(self.user.id, "ride_booked", {})
        self.assertIsNone(result.email)
        self.assertIsNone(result.sms)
        self.assertIsNone(result.push)
        self.assertIsInstance(result.realtime, Delivered)

    def test_low_priority_template_skips_sms(self):
        result = self.dispatcher.send(self.user.id, "ride_completed", {"rideReference": "R-1"})
        self.assertIsNone(result.sms)
        self.assertEqual(self.senders["sms"].calls, [])

    def test_emergency_only_user_gets_sms_for_low_priority_template(self):
        NotificationPreference.objects.create(user=self.user, emergency_only=True, ride_updates=False)
        result = self.dispatcher.send(self.user.id, "ride_completed", {"rideReference": "R-1"})
        self.assertIsInstance(result.sms, Delivered)
        self.assertEqual(len(self.senders["sms"].calls), 1)

    def test_data_values_are_stringified_and_none_dropped(self):
        self.dispatcher.send(self.user.id, "ride_booked", {"rideReference": 12, "scheduledTime": None})
        _, _, data = self.senders["email"].calls[0]
        self.assertEqual(data, {"rideReference": "12"})

    def test_writes_audit_log(self):
        self.dispatcher.send(self.user.id, "ride_booked", {})
        log = NotificationLog.objects.get()
        self.assertEqual(log.template_id, "ride_booked")
        self.assertTrue(log.succeeded)
        self.assertEqual(log.results["email"]["status"], "delivered")

    def test_unknown_template_and_user_raise(self):
        with self.assertRaises(TemplateNotFoundError):
            self.dispatcher.send(self.user.id, "nope", {})
        with self.assertRaises(RecipientNotFoundError):
            self.dispatcher.send(999999, "ride_booked", {})

    def test_tracking_event_with_template_dispatches_high_priority(self):
        ok = self.dispatcher.send_ride_tracking_notification(self.user.id, 5, "started", "Your ride has started")
        self.assertTrue(ok)
        self.assertEqual(self.senders["realtime"].events[0][1]["event"], "started")
        log = NotificationLog.objects.get()
        self.assertEqual(log.template_id, "ride_started")
        self.assertEqual(log.priority, "high")

    def test_tracking_event_without_template_only_pushes_realtime(self):
        ok = self.dispatcher.send_ride_tracking_notification(self.user.id, 5, "location_update", "moving", {"lat": 1})
        self.assertTrue(ok)
        self.assertEqual(NotificationLog.objects.count(), 0)

    def test_tracking_notification_for_unknown_user_returns_false(self):
        self.assertFalse(self.dispatcher.send_ride_tracking_notification(424242, 5, "pickup", "Arrived"))

    def test_critical_alert_forces_sms_at_urgent_priority(self):
        NotificationPreference.objects.create(user=self.user, sms_enabled=False)
        ok = self.dispatcher.send_ride_alert_notification(self.user.id, 9, "battery_low", "Battery 5%", "critical")
        self.assertTrue(ok)
        self.assertEqual(len(self.senders["sms"].calls), 1)
        self.assertEqual(NotificationLog.objects.get().priority, "urgent")

    def test_medium_alert_stays_realtime_only(self):
        ok = self.dispatcher.send_ride_alert_notification(self.user.id, 9, "battery_low", "Battery 15%", "medium")
        self.assertTrue(ok)
        self.assertEqual(self.senders["sms"].calls, [])
        self.assertEqual(self.senders["realtime"].events[0][1]["severity"], "medium")

    def test_register_push_subscription_is_idempotent(self):
        payload = {"endpoint": "https://push.example.com/abc", "keys": {"p256dh": "key", "auth": "secret"}}
        first = self.dispatcher.register_push_subscription(self.user, payload)
        second = self.dispatcher.register_push_subscription(self.user, payload)
        self.assertEqual(first.id, second.id)
        self.assertEqual(PushSubscription.objects.count(), 1)

    def test_app_config_builds_a_dispatcher(self):
        dispatcher = get_dispatcher()
        self.assertIn("ride_alert", dispatcher.registry)
        self.assertEqual(set(dispatcher.senders), {"email", "sms", "push", "realtime"})


class SenderConfigurationTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(
            username='rider', password='pass1234', email='rider@example.com', phone_number='+15550001111'
        )
        self.template = build_default_registry().resolve("ride_started")

    def test_placeholder_credentials_count_as_absent(self):
        self.assertFalse(credential_present("your_sendgrid_key"))
        self.assertFalse(credential_present(""))
        self.assertTrue(credential_present("SG.real"))

    def test_twilio_sid_must_start_with_ac(self):
        self.assertFalse(SmsSender("SK123", "token", "+15550000000", client=MagicMock()).configured)
        self.assertTrue(SmsSender("AC123", "token", "+15550000000", client=MagicMock()).configured)

    def test_unconfigured_sender_never_raises(self):
        result = EmailSender("", "noreply@myambulex.com").send(self.user, self.template, {})
        self.assertEqual(result, NotConfigured())

    def test_email_sender_uses_django_mail(self):
        sender = EmailSender("SG.test", "noreply@myambulex.com")
        result = sender.send(self.user, self.template, {"rideId": "12"})
        self.assertIsInstance(result, Delivered)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].subject, "Your MyAmbulex ride has started")
        self.assertIn("12", mail.outbox[0].alternatives[0][0])

    def test_sms_sender_returns_provider_sid(self):
        client = MagicMock()
        client.messages.create.return_value = MagicMock(sid="SM123")
        sender = SmsSender("AC123", "token", "+15550000000", client=client)
        result = sender.send(self.user, self.template, {"trackingUrl": "https://t/1"})
        self.assertEqual(result, Delivered(provider_id="SM123"))
        client.messages.create.assert_called_once_with(
            body="Your MyAmbulex ride has started. Track at: https://t/1",
            from_="+15550000000",
            to="+15550001111",
        )

    def test_push_sender_prunes_expired_endpoints(self):
        from pywebpush import WebPushException

        live = PushSubscription.objects.create(user=self.user, endpoint="https://push.example.com/live", p256dh="k", auth="a")
        PushSubscription.objects.create(user=self.user, endpoint="https://push.example.com/gone", p256dh="k", auth="a")

        def fake_webpush(subscription_info, **kwargs):
            if subscription_info["endpoint"].endswith("gone"):
                raise WebPushException("Gone", response=MagicMock(status_code=410))

        with patch("pywebpush.webpush", side_effect=fake_webpush):
            result = PushSender("private-key", "mailto:ops@myambulex.com").send(self.user, self.template, {})

        self.assertEqual(result, Delivered(sent_count=1))
        self.assertEqual(list(PushSubscription.objects.values_list("id", flat=True)), [live.id])

    def test_realtime_sender_publishes_to_user_group(self):
        layer = MagicMock()

        async def group_send(group, message):
            layer.sent.append((group, message))

        layer.sent = []
        layer.group_send = group_send
        result = RealtimeSender(channel_layer=layer).send(self.user, self.template, {"rideId": "4"})
        self.assertEqual(result, Delivered())
        group, message = layer.sent[0]
        self.assertEqual(group, f"user_{self.user.id}")
        self.assertEqual(message["notification"]["templateId"], "ride_started")

    def test_test_settings_leave_providers_disabled(self):
        senders = build_senders()
        self.assertFalse(senders["email"].configured)
        self.assertFalse(senders["sms"].configured)
        self.assertFalse(senders["push"].configured)
        self.assertTrue(senders["realtime"].configured)


class NotificationViewTests(TestCase):
    def setUp(self):
        self.factory = APIRequestFactory()
        self.user = User.objects.create_user(username='rider', password='pass1234')

    def test_get_returns_defaults_without_row(self):
        request = self.factory.get('/api/notifications/preferences/')
        force_authenticate(request, user=self.user)
        response = notification_preferences(request)
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data['ride_updates'])
        self.assertFalse(response.data['emergency_only'])

    def test_put_updates_switches(self):
        request = self.factory.put('/api/notifications/preferences/', {'sms_enabled': False}, format='json')
        force_authenticate(request, user=self.user)
        response = notification_preferences(request)
        self.assertEqual(response.status_code, 200)
        self.assertFalse(NotificationPreference.objects.get(user=self.user).sms_enabled)

    def test_push_subscription_requires_keys(self):
        request = self.factory.post(
            '/api/notifications/push-subscriptions/', {'endpoint': 'https://push.example.com/x'}, format='json'
        )
        force_authenticate(request, user=self.user)
        response = register_push_subscription(request)
        self.assertEqual(response.status_code, 400)

    def test_push_subscription_created(self):
        request = self.factory.post(
            '/api/notifications/push-subscriptions/',
            {'endpoint': 'https://push.example.com/x', 'keys': {'p256dh': 'k', 'auth': 'a'}},
            format='json'
        )
        force_authenticate(request, user=self.user)
        response = register_push_subscription(request)
        self.assertEqual(response.status_code, 201)
        self.assertTrue(PushSubscription.objects.filter(user=self.user).exists())
