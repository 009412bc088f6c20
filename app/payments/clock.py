"""
Injectable time sources.

Trial, grace-period, cache freshness and retry timing all read time through
a Clock so tests can pin it without sleeping.

Usage:
    from payments.clock import FrozenClock

    clock = FrozenClock(datetime(2026, 1, 1, tzinfo=timezone.utc))
    clock.advance(timedelta(days=14))
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


class FrozenClock:
    """
    Clock that only moves when told to.

    monotonic() advances in lockstep with now() so freshness windows
    measured either way agree.
    """

    def __init__(self, start: datetime | None = None):
        if start is None:
            start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start
        self._monotonic = 0.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def set(self, value: datetime) -> None:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        self._monotonic += (value - self._now).total_seconds()
        self._now = value

    def advance(self, delta: timedelta | float) -> None:
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        self.set(self._now + delta)
