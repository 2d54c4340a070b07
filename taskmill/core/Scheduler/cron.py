"""
Five-field cron expressions evaluated with APScheduler's ``CronTrigger``.

``minute hour day-of-month month day-of-week`` in crontab notation. Weekdays
follow crontab numbering (0 or 7 is Sunday) and are rewritten to weekday names
before they reach APScheduler, which counts from Monday. The usual
``@hourly``/``@daily``/``@weekly``/``@monthly``/``@yearly`` aliases are
expanded first.

When both day-of-month and day-of-week are restricted a day matches if either
one does (classic cron semantics); that case is an ``OrTrigger`` of two
triggers.

Expressions are evaluated in an IANA timezone; results are returned in UTC.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone, tzinfo
from functools import lru_cache
from typing import Iterable, List, Optional, Sequence

from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .clock import ensure_aware
from .exceptions import InvalidCronExpressionError


ALIASES = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

WEEKDAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]

_TICK = timedelta(microseconds=1)


def get_timezone(name: Optional[str]) -> tzinfo:
    if not name or name.upper() in {"UTC", "Z", "ETC/UTC"}:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidCronExpressionError(f"Unknown timezone: {name}") from e


def _weekday(token: str) -> int:
    if token in WEEKDAYS:
        return WEEKDAYS.index(token)
    if token.isdigit() and int(token) <= 7:
        return int(token)
    raise InvalidCronExpressionError(f"Invalid day_of_week value: {token!r}")


def weekday_names(raw: str) -> str:
    """Rewrite a crontab day-of-week field as a list of weekday names."""
    raw = raw.strip().lower()
    if raw == "*":
        return raw
    days = set()
    for part in raw.split(","):
        base, _, step_s = part.partition("/")
        try:
            step = int(step_s) if step_s else 1
        except ValueError:
            raise InvalidCronExpressionError(f"Invalid step in day_of_week field: {part!r}")
        if step <= 0:
            raise InvalidCronExpressionError(f"Step must be positive in day_of_week field: {part!r}")
        if base == "*":
            first, last = 0, 6
        else:
            first_s, _, last_s = base.partition("-")
            first = _weekday(first_s)
            last = _weekday(last_s) if last_s else (6 if step_s else first)
        if first > last:
            raise InvalidCronExpressionError(f"Invalid range in day_of_week field: {part!r}")
        days.update(d % 7 for d in range(first, last + 1, step))
    return ",".join(WEEKDAYS[d] for d in sorted(days))


class CronExpression:
    """A cron expression bound to a timezone."""

    def __init__(self, expression: str, tz: Optional[str] = "UTC"):
        if not isinstance(expression, str):
            raise InvalidCronExpressionError(f"Cron expression must be a string, got {type(expression).__name__}")
        text = expression.strip()
        if text.lower() == "@reboot":
            raise InvalidCronExpressionError("@reboot is a schedule type, not a cron expression")
        text = ALIASES.get(text.lower(), text)
        parts = text.split()
        if len(parts) != 5:
            raise InvalidCronExpressionError(
                f"Cron expression must have 5 fields, got {len(parts)}: {expression!r}"
            )
        self.expression = expression.strip()
        self.timezone_name = tz or "UTC"
        self.tz = get_timezone(self.timezone_name)
        minute, hour, day, month, day_of_week = parts
        fields = dict(minute=minute, hour=hour, month=month.lower(), day_of_week=weekday_names(day_of_week))
        tz_name = "UTC" if self.tz is timezone.utc else self.timezone_name
        try:
            if day != "*" and day_of_week != "*":
                self.trigger = OrTrigger([
                    CronTrigger(**{**fields, "day_of_week": "*"}, day=day, timezone=tz_name),
                    CronTrigger(**fields, day="*", timezone=tz_name),
                ])
            else:
                self.trigger = CronTrigger(**fields, day=day, timezone=tz_name)
        except (ValueError, TypeError, KeyError) as e:
            raise InvalidCronExpressionError(f"Invalid cron expression {expression!r}: {e}") from e

    def __repr__(self) -> str:
        return f"CronExpression({self.expression!r}, tz={self.timezone_name!r})"

    def _next_fire(self, after: datetime) -> Optional[datetime]:
        nxt = self.trigger.get_next_fire_time(None, ensure_aware(after) + _TICK)
        return nxt.astimezone(timezone.utc) if nxt else None

    def matches(self, dt: datetime) -> bool:
        """True when ``dt`` falls inside a minute this expression fires on."""
        minute = ensure_aware(dt).astimezone(timezone.utc).replace(second=0, microsecond=0)
        return self._next_fire(minute - _TICK) == minute

    def next_run(self, after: datetime) -> datetime:
        """First firing strictly after ``after`` (UTC)."""
        nxt = self._next_fire(after)
        if nxt is None:
            raise InvalidCronExpressionError(f"Cron expression never fires: {self.expression!r}")
        return nxt


@lru_cache(maxsize=512)
def parse_cron(expression: str, tz: str = "UTC") -> CronExpression:
    return CronExpression(expression, tz)


def is_valid_cron(expression: str) -> bool:
    try:
        parse_cron(expression)
        return True
    except InvalidCronExpressionError:
        return False


def cron_matches(expressions: Iterable[str], dt: datetime, tz: str = "UTC") -> bool:
    return any(parse_cron(e, tz).matches(dt) for e in expressions)


def next_cron_run(expressions: Sequence[str], after: datetime, tz: str = "UTC") -> Optional[datetime]:
    """Earliest next firing across ``expressions``; None when the list is empty."""
    runs: List[datetime] = [parse_cron(e, tz).next_run(after) for e in expressions]
    return min(runs) if runs else None

# End of cron.py
