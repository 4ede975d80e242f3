from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Protocol

from gradeportal.core.errors import ClockSkew


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to. Used by tests and simulations."""

    def __init__(self, start: datetime | None = None):
        self._now = as_utc(start or datetime(2026, 1, 1, tzinfo=timezone.utc))
        self._lock = Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = as_utc(value)

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> datetime:
        step = delta if delta is not None else timedelta(**kwargs)
        with self._lock:
            self._now = self._now + step
            return self._now


def ensure_forward(observed: datetime, last_recorded: datetime) -> datetime:
    """Return `observed` unless it lies before `last_recorded`, in which case raise ClockSkew."""
    observed = as_utc(observed)
    if observed < as_utc(last_recorded):
        raise ClockSkew(observed, last_recorded)
    return observed
