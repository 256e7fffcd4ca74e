"""Per-channel delivery outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional, Union

NOT_CONFIGURED_REASON = "channel not configured"


@dataclass(frozen=True)
class Delivered:
    provider_id: Optional[str] = None
    sent_count: Optional[int] = None
    success: ClassVar[bool] = True

    def as_dict(self) -> Dict[str, Any]:
        return {"status": "delivered", "success": True, "provider_id": self.provider_id, "sent_count": self.sent_count}


@dataclass(frozen=True)
class Failed:
    reason: str
    success: ClassVar[bool] = False

    def as_dict(self) -> Dict[str, Any]:
        return {"status": "failed", "success": False, "error": self.reason}


@dataclass(frozen=True)
class NotConfigured:
    reason: str = NOT_CONFIGURED_REASON
    success: ClassVar[bool] = False

    def as_dict(self) -> Dict[str, Any]:
        return {"status": "not_configured", "success": False, "error": self.reason}


ChannelResult = Union[Delivered, Failed, NotConfigured]


@dataclass
class DispatchResult:
    """Outcome of one dispatch. Channels that were not attempted stay None."""
    email: Optional[ChannelResult] = None
    sms: Optional[ChannelResult] = None
    push: Optional[ChannelResult] = None
    realtime: Optional[ChannelResult] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    CHANNELS: ClassVar[tuple] = ("email", "sms", "push", "realtime")

    def attempted(self) -> Dict[str, ChannelResult]:
        return {name: getattr(self, name) for name in self.CHANNELS if getattr(self, name) is not None}

    @property
    def succeeded(self) -> bool:
        """True when at least one channel delivered."""
        return any(isinstance(result, Delivered) for result in self.attempted().values())

    @property
    def delivered_on_provider(self) -> bool:
        """True when email, SMS or push delivered (real-time alone does not count)."""
        return any(isinstance(getattr(self, name), Delivered) for name in ("email", "sms", "push"))

    def as_dict(self) -> Dict[str, Any]:
        return {name: result.as_dict() for name, result in self.attempted().items()}
