"""
jerkyrank.engine.clock - Injectable Clock
==========================================

Streak day boundaries, period windows and throttles all read time through
a :class:`Clock` so tests can advance it deterministically.
"""

from __future__ import annotations

import threading
import time
from datetime import UTC, date, datetime, timedelta
from typing import Protocol

from jerkyrank.constants import PERIOD_WINDOW_DAYS


class Clock(Protocol):
    def now(self) -> datetime:
        """Timezone-aware current time (UTC)."""
        ...

    def monotonic(self) -> float:
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()


class FrozenClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = ensure_utc(start or datetime(2025, 3, 1, tzinfo=UTC))
        self._mono = 0.0
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def monotonic(self) -> float:
        with self._lock:
            return self._mono

    def set(self, when: datetime) -> None:
        with self._lock:
            when = ensure_utc(when)
            self._mono += max(0.0, (when - self._now).total_seconds())
            self._now = when

    def advance(self, **delta: float) -> None:
        step = timedelta(**delta)
        with self._lock:
            self._now += step
            self._mono += step.total_seconds()


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utc_day(value: datetime) -> date:
    return ensure_utc(value).date()


def admitted_periods(timestamp: datetime, now: datetime) -> list[str]:
    """Period buckets a change at *timestamp* belongs to, as seen at *now*.

    ``all_time`` always; ``week`` / ``month`` when *timestamp* is within
    the rolling 7 / 30 day window ending at *now*.
    """
    ts = ensure_utc(timestamp)
    periods: list[str] = []
    for period, days in PERIOD_WINDOW_DAYS.items():
        if days is None or ts >= ensure_utc(now) - timedelta(days=days):
            periods.append(period)
    return periods


def window_start(period: str, now: datetime) -> datetime | None:
    """Start of the rolling window for *period*; None for ``all_time``."""
    days = PERIOD_WINDOW_DAYS[period]
    if days is None:
        return None
    return ensure_utc(now) - timedelta(days=days)
