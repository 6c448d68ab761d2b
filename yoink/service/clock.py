from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from yoink.config import ClockMode, Settings


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Timezone-aware UTC wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FakeClock:
    """Manually driven clock for tests and deterministic local runs.

    ``auto_advance`` moves time forward after every ``now()`` call, which keeps
    ordering assertions meaningful without explicit ``advance`` calls.
    """

    def __init__(
        self,
        start: Optional[datetime] = None,
        *,
        auto_advance: Optional[timedelta] = None,
    ) -> None:
        start = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start
        self._auto_advance = auto_advance
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            current = self._now
            if self._auto_advance:
                self._now = self._now + self._auto_advance
            return current

    def advance(self, delta: timedelta) -> datetime:
        with self._lock:
            self._now = self._now + delta
            return self._now

    def set(self, instant: datetime) -> None:
        with self._lock:
            self._now = instant


def build_clock(settings: Settings) -> Clock:
    if settings.clock == ClockMode.FAKE:
        return FakeClock(settings.fake_clock_start)
    return SystemClock()
