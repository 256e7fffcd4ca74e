"""
Geolocation sampler for driver devices.

Raw readings from the platform location API go through ``sample()``; accepted
fixes are buffered and handed to a flush callback (usually
``TrackingClient.send_fixes``) in small batches.
"""

import logging
import time
from typing import Callable, List, Optional

from common.tracking import LocationFix
from common.utils.coordinates import validate_coordinates
from common.utils.geo import calculate_distance_miles
from .exceptions import AccuracyError, ImplausibleFixError, LocationPermissionDenied, TransportError

logger = logging.getLogger(__name__)

THROTTLE_SECONDS = 5
BATCH_SIZE = 3
FLUSH_INTERVAL_SECONDS = 30

# Plausibility limits
MAX_REPORTED_SPEED_MPH = 200
MAX_IMPLIED_SPEED_MPH = 100


class GeolocationSampler:
    """
    Throttles, validates and batches device fixes.

    - at most one accepted fix every 5 seconds; earlier readings are ignored
    - a batch is flushed at 3 fixes or 30 seconds after the oldest buffered fix
    - fixes from a failed flush get exactly one retry on the next flush
    """

    def __init__(self, flush: Callable[[List[LocationFix]], None], clock: Callable[[], float] = time.monotonic):
        self._flush = flush
        self._clock = clock
        self._buffer: List[LocationFix] = []
        self._retry: List[LocationFix] = []
        self._oldest_at: Optional[float] = None
        self._last_accepted_at: Optional[float] = None
        self._last_fix: Optional[LocationFix] = None
        self.permission_denied = False

    @property
    def pending(self) -> List[LocationFix]:
        """Fixes waiting for the next flush, retries first."""
        return self._retry + self._buffer

    @property
    def last_fix(self) -> Optional[LocationFix]:
        return self._last_fix

    # ---------------------- Permission ----------------------

    def deny_permission(self):
        """The platform reported that location access was refused."""
        if not self.permission_denied:
            logger.warning("Location permission denied; sampling stopped")
        self.permission_denied = True

    def reset_permission(self):
        """Manual retry after the user re-granted access."""
        self.permission_denied = False

    # ---------------------- Sampling ----------------------

    def sample(self, fix: LocationFix) -> Optional[LocationFix]:
        """
        Offer a reading to the sampler.

        Returns:
            The accepted fix, or None when the reading was throttled

        Raises:
            LocationPermissionDenied: Sampling stopped until reset_permission()
            InvalidCoordinateError: Unusable coordinates
            AccuracyError: Accuracy worse than 100 m
            ImplausibleFixError: Impossible speed or jump
        """
        if self.permission_denied:
            raise LocationPermissionDenied()

        if fix.is_synthetic:
            # Placeholder positions are display-only
            return None

        validate_coordinates(fix.latitude, fix.longitude)

        now = self._clock()
        if self._last_accepted_at is not None and now - self._last_accepted_at < THROTTLE_SECONDS:
            return None

        if fix.exceeds_accuracy_limit:
            raise AccuracyError(fix.accuracy)

        self._check_plausible(fix)

        self._buffer.append(fix)
        if self._oldest_at is None:
            self._oldest_at = now
        self._last_accepted_at = now
        self._last_fix = fix

        self.tick(now)
        return fix

    def _check_plausible(self, fix: LocationFix):
        if fix.speed_mph is not None and fix.speed_mph > MAX_REPORTED_SPEED_MPH:
            raise ImplausibleFixError(f"Reported speed {fix.speed_mph:.0f} mph is not plausible")

        previous = self._last_fix
        if previous is None:
            return
        hours = (fix.captured_at - previous.captured_at).total_seconds() / 3600
        if hours <= 0:
            return
        miles = calculate_distance_miles(previous.latitude, previous.longitude, fix.latitude, fix.longitude)
        if miles / hours > MAX_IMPLIED_SPEED_MPH:
            raise ImplausibleFixError(f"Jump of {miles:.2f} miles implies {miles / hours:.0f} mph")

    # ---------------------- Flushing ----------------------

    def tick(self, now: Optional[float] = None) -> bool:
        """Flush if the batch is full or has waited long enough. Returns True when a flush succeeded."""
        if not self._buffer and not self._retry:
            return False
        now = self._clock() if now is None else now
        if len(self.pending) >= BATCH_SIZE or now - self._oldest_at >= FLUSH_INTERVAL_SECONDS:
            return self.flush(now)
        return False

    def flush(self, now: Optional[float] = None) -> bool:
        """Hand every pending fix to the flush callback."""
        batch = self.pending
        retried = len(self._retry)
        self._buffer = []
        self._retry = []
        self._oldest_at = None
        if not batch:
            return True

        try:
            self._flush(batch)
        except TransportError as e:
            dropped = batch[:retried]
            self._retry = batch[retried:]
            if self._retry:
                self._oldest_at = self._clock() if now is None else now
            if dropped:
                logger.warning("Dropping %d fixes that failed their retry", len(dropped))
            logger.warning("Flush of %d fixes failed: %s", len(batch), e)
            return False
        return True
