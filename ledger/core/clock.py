"""
Clock sources for the timer core.

Every timer reads time through a Clock so that running intervals are measured
on a monotonic source (immune to wall-clock changes) while start/end stamps
stay human-readable UTC datetimes for persistence.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock:
    """Real clock: time.monotonic() for intervals, UTC wall time for stamps."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(Clock):
    """
    A clock that only moves when told to.

    Both the monotonic reading and the wall time advance together, so a
    session driven by this clock behaves exactly like one driven by the real
    clock, just without waiting.
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._wall = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        if self._wall.tzinfo is None:
            self._wall = self._wall.replace(tzinfo=timezone.utc)
        self._mono = 0.0

    def monotonic(self) -> float:
        return self._mono

    def now(self) -> datetime:
        return self._wall

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("ManualClock cannot move backwards.")
        self._mono += seconds
        self._wall += timedelta(seconds=seconds)

    def set_wall(self, when: datetime) -> None:
        """Jump the wall clock only (simulates an OS clock change)."""
        self._wall = when if when.tzinfo else when.replace(tzinfo=timezone.utc)


SYSTEM_CLOCK = Clock()
