# followup_engine/common/clock.py
from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock, always timezone-aware UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """
    Manually advanced clock for tests and simulations.

        clock = FrozenClock(t0)
        clock.advance(minutes=1440)
    """

    def __init__(self, start: datetime | None = None):
        start = start or datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)
        self._now = as_utc(start)

    def now(self) -> datetime:
        return self._now

    def advance(self, *, minutes: int = 0, seconds: int = 0) -> datetime:
        self._now = self._now + timedelta(minutes=minutes, seconds=seconds)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = as_utc(value)


def add_minutes(ts: datetime, minutes: int) -> datetime:
    """Delay arithmetic is in whole minutes."""
    return ts + timedelta(minutes=int(minutes))


def as_utc(ts: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps are taken as UTC; aware ones pass through."""
    if ts is None or ts.tzinfo is not None:
        return ts
    return ts.replace(tzinfo=timezone.utc)
