"""
In-process registry of live ride tracking sessions.

One session exists per ride while the ride is trackable and somebody is
subscribed (or the driver is relaying). Sync views and async consumers both
touch the registry, so every mutation goes through one lock.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Deque, Dict, Iterable, List, Optional, Set

from django.conf import settings
from django.utils import timezone

from common.tracking import LocationFix, TrackingStateMachine

logger = logging.getLogger(__name__)

HISTORY_SIZE = getattr(settings, "TRACKING_HISTORY_SIZE", 50)
IDLE_AFTER_SECONDS = getattr(settings, "TRACKING_IDLE_SECONDS", 120)


@dataclass
class TrackingSession:
    ride_id: int
    rider_id: int
    driver_id: Optional[int]
    machine: TrackingStateMachine = field(default_factory=TrackingStateMachine)
    subscribers: Set[str] = field(default_factory=set)
    recent_fixes: Deque[LocationFix] = field(default_factory=lambda: deque(maxlen=HISTORY_SIZE))
    last_fix_at: Optional[datetime] = None
    raised_alerts: Set[str] = field(default_factory=set)
    # Went idle but subscribers have not been told yet
    idle_unannounced: bool = False

    @property
    def state(self):
        return self.machine.state

    @property
    def is_closed(self) -> bool:
        return self.machine.is_closed

    def history(self) -> List[dict]:
        return [fix.to_wire() for fix in self.recent_fixes]

    def refresh_idle(self, now: Optional[datetime] = None) -> bool:
        """Move to tracking_idle when no fix arrived within the idle window."""
        if self.last_fix_at is None:
            return False
        now = now or timezone.now()
        if now - self.last_fix_at >= timedelta(seconds=IDLE_AFTER_SECONDS) and self.machine.mark_idle():
            self.idle_unannounced = True
            return True
        return False


class TrackingSessionRegistry:
    def __init__(self):
        self._sessions: Dict[int, TrackingSession] = {}
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._sessions)

    def get(self, ride_id) -> Optional[TrackingSession]:
        with self._lock:
            session = self._sessions.get(int(ride_id))
            if session is not None:
                session.refresh_idle()
            return session

    def open(self, ride_id, rider_id, driver_id) -> TrackingSession:
        """Return the live session for a ride, creating it (handshake + ack) if needed."""
        ride_id = int(ride_id)
        with self._lock:
            session = self._sessions.get(ride_id)
            if session is None or session.is_closed:
                session = TrackingSession(ride_id=ride_id, rider_id=rider_id, driver_id=driver_id)
                session.machine.connect()
                session.machine.acknowledge()
                self._sessions[ride_id] = session
                logger.info("Tracking session opened for ride %s", ride_id)
            else:
                session.refresh_idle()
                if driver_id is not None and session.driver_id != driver_id:
                    session.driver_id = driver_id
            return session

    def subscribe(self, ride_id, channel_name: str) -> Optional[TrackingSession]:
        with self._lock:
            session = self._sessions.get(int(ride_id))
            if session is None or session.is_closed:
                return None
            session.subscribers.add(channel_name)
            return session

    def unsubscribe(self, ride_id, channel_name: str) -> Optional[TrackingSession]:
        """Drop a subscriber; the session closes when its last subscriber leaves."""
        ride_id = int(ride_id)
        with self._lock:
            session = self._sessions.get(ride_id)
            if session is None:
                return None
            session.subscribers.discard(channel_name)
            if not session.subscribers:
                session.machine.close("no_subscribers")
                del self._sessions[ride_id]
                logger.info("Tracking session for ride %s closed: no subscribers left", ride_id)
            return session

    def record(self, ride_id, fix: LocationFix) -> Optional[TrackingSession]:
        """Append a relayed fix. Returns None when the ride has no live session."""
        with self._lock:
            session = self._sessions.get(int(ride_id))
            if session is None or not session.machine.record_fix():
                return None
            session.recent_fixes.append(fix)
            session.last_fix_at = timezone.now()
            session.idle_unannounced = False
            return session

    def close(self, ride_id, reason: str = "closed") -> Optional[TrackingSession]:
        ride_id = int(ride_id)
        with self._lock:
            session = self._sessions.pop(ride_id, None)
            if session is not None:
                session.machine.close(reason)
                logger.info("Tracking session for ride %s closed: %s", ride_id, reason)
            return session

    def sweep_idle(self, now: Optional[datetime] = None, ride_ids: Optional[Iterable[int]] = None) -> List[TrackingSession]:
        """
        Move stale sessions to tracking_idle.

        Returns:
            Idle sessions whose subscribers have not been told yet. Each
            transition is reported once, including ones first noticed by get().
        """
        with self._lock:
            if ride_ids is None:
                candidates = list(self._sessions.values())
            else:
                candidates = [self._sessions[r] for r in ride_ids if r in self._sessions]
            went_idle = []
            for session in candidates:
                session.refresh_idle(now)
                if session.idle_unannounced:
                    session.idle_unannounced = False
                    went_idle.append(session)
            return went_idle

    def clear(self):
        with self._lock:
            self._sessions.clear()


session_registry = TrackingSessionRegistry()
