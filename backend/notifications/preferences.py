"""
Channel eligibility for one notification.

``decide`` is a pure function of the template, a preference snapshot, the
caller's overrides and an optional priority override. It never touches the
database; callers load the snapshot first.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Optional

from .templates import Category, NotificationTemplate, Priority

CATEGORY_SWITCHES = {
    Category.RIDE_UPDATE: "ride_updates",
    Category.PAYMENT: "payment_alerts",
    Category.SYSTEM: "system_alerts",
}


@dataclass(frozen=True)
class PreferenceSnapshot:
    email_enabled: bool = True
    sms_enabled: bool = True
    push_enabled: bool = True
    ride_updates: bool = True
    payment_alerts: bool = True
    system_alerts: bool = True
    marketing_emails: bool = False
    emergency_only: bool = False

    @classmethod
    def defaults(cls) -> "PreferenceSnapshot":
        return cls()

    @classmethod
    def from_model(cls, preference) -> "PreferenceSnapshot":
        """Snapshot a NotificationPreference row (None means defaults)."""
        if preference is None:
            return cls.defaults()
        return cls(**{f.name: getattr(preference, f.name) for f in fields(cls)})

    def category_enabled(self, category: Category) -> bool:
        switch = CATEGORY_SWITCHES.get(Category(category))
        if switch is None:
            # alerts have no opt-out switch
            return True
        return getattr(self, switch)


@dataclass(frozen=True)
class ChannelOverrides:
    force_email: bool = False
    force_sms: bool = False
    force_push: bool = False


@dataclass(frozen=True)
class ChannelDecision:
    email: bool
    sms: bool
    push: bool

    def enabled_channels(self):
        return [name for name in ("email", "sms", "push") if getattr(self, name)]


def decide(
    template: NotificationTemplate,
    preferences: PreferenceSnapshot,
    overrides: Optional[ChannelOverrides] = None,
    priority: Optional[Priority] = None,
) -> ChannelDecision:
    """
    Decide which of email/SMS/push may fire.

    Args:
        template: Template being sent (supplies category and default priority)
        preferences: Immutable snapshot of the recipient's switches
        overrides: Per-channel force flags from the caller
        priority: Replaces the template priority when given

    Returns:
        ChannelDecision with one flag per channel
    """
    overrides = overrides or ChannelOverrides()
    effective_priority = Priority(priority) if priority else template.priority

    if effective_priority is Priority.URGENT or preferences.emergency_only:
        email = preferences.email_enabled
        sms = preferences.sms_enabled
        push = preferences.push_enabled
    else:
        category_on = preferences.category_enabled(template.category)
        email = preferences.email_enabled and category_on
        sms = preferences.sms_enabled and category_on and effective_priority is not Priority.LOW
        push = preferences.push_enabled and category_on

    return ChannelDecision(
        email=email or overrides.force_email,
        sms=sms or overrides.force_sms,
        push=push or overrides.force_push,
    )
