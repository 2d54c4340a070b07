from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_dt(v) -> Optional[datetime]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return ensure_aware(v)
    if isinstance(v, (int, float)):
        return datetime.fromtimestamp(float(v), tz=timezone.utc)
    s = str(v).replace("Z", "+00:00")
    return ensure_aware(datetime.fromisoformat(s))


class Clock:
    """Wall clock for the engine.

    ``SCHEDULER_TEST_NOW_EPOCH`` pins ``now()`` to a fixed instant so that
    scheduling decisions are reproducible in tests.
    """

    def __init__(self):
        try:
            _env = os.getenv("SCHEDULER_TEST_NOW_EPOCH")
            self._fixed_epoch = float(_env) if _env else None
        except Exception:
            self._fixed_epoch = None

    def now(self) -> datetime:
        if self._fixed_epoch is not None:
            return datetime.fromtimestamp(self._fixed_epoch, tz=timezone.utc)
        return utcnow()


class ManualClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        super().__init__()
        self._now = ensure_aware(start) or utcnow()

    def now(self) -> datetime:
        return self._now

    def set(self, when: datetime) -> None:
        self._now = ensure_aware(when)

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now
