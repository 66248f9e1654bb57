"""
Clocks and identifiers.

Everything time-sensitive in the router (cache expiry, the rolling budget
window, health-check caching, batch submission times) reads time through a
``Clock`` so tests can drive it deterministically.

Example:
    clock = ManualClock(datetime(2025, 8, 1, 9, 0, tzinfo=timezone.utc))
    cache = ResponseCache(settings, clock=clock)

    clock.advance(hours=13)  # every 12h entry is now expired
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock:
    """Source of the current time (timezone-aware UTC)."""

    def now(self) -> datetime:
        raise NotImplementedError

    def timestamp(self) -> float:
        """Current time as POSIX seconds."""
        return self.now().timestamp()


class SystemClock(Clock):
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    Attributes:
        current: The time ``now()`` returns until advanced
    """

    def __init__(self, start_time: Optional[datetime] = None):
        if start_time is None:
            start_time = datetime(2025, 1, 1, tzinfo=timezone.utc)
        # Ensure timezone-aware
        if start_time.tzinfo is None:
            start_time = start_time.replace(tzinfo=timezone.utc)
        self.current = start_time
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self.current

    def advance(self, seconds: float = 0.0, **kwargs: float) -> datetime:
        """Move forward by ``seconds`` plus any timedelta keyword (hours=...)."""
        with self._lock:
            self.current = self.current + timedelta(seconds=seconds, **kwargs)
            return self.current

    def jump_to(self, target: datetime) -> None:
        if target.tzinfo is None:
            target = target.replace(tzinfo=timezone.utc)
        with self._lock:
            self.current = target


def generate_request_id() -> str:
    """Short unique request ID."""
    return str(uuid.uuid4())[:8]


def generate_batch_id(clock: Clock) -> str:
    """Batch request ID: submission millis plus a random suffix."""
    return f"batch_{int(clock.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"
