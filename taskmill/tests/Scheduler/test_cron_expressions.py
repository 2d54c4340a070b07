from datetime import datetime, timezone

import pytest
from hypothesis import given, settings, strategies as st

from taskmill.core.Scheduler.cron import (
    CronExpression,
    cron_matches,
    is_valid_cron,
    next_cron_run,
    parse_cron,
    weekday_names,
)
from taskmill.core.Scheduler.exceptions import InvalidCronExpressionError


pytestmark = pytest.mark.unit


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.parametrize("expr", [
    "* * * * *",
    "*/15 * * * *",
    "0 6 * * 1-5",
    "30 2 1,15 * *",
    "0 0 * JAN,JUL SUN",
    "@daily",
    "@hourly",
    "0 12 * * 7",
])
def test_valid_expressions(expr):
    assert is_valid_cron(expr)


@pytest.mark.parametrize("expr", [
    "",
    "* * * *",
    "60 * * * *",
    "* 24 * * *",
    "* * 0 * *",
    "* * * 13 *",
    "*/0 * * * *",
    "5-1 * * * *",
    "@reboot",
    "@sometimes",
    "0 0 * * 8",
    "0 0 * * 3-1",
])
def test_invalid_expressions(expr):
    assert not is_valid_cron(expr)


def test_reboot_is_not_a_cron_expression():
    with pytest.raises(InvalidCronExpressionError, match="schedule type"):
        CronExpression("@reboot")


def test_next_run_is_strictly_after():
    expr = parse_cron("0 6 * * *")
    assert expr.next_run(utc(2026, 1, 5, 5, 59, 30)) == utc(2026, 1, 5, 6, 0)
    assert expr.next_run(utc(2026, 1, 5, 6, 0)) == utc(2026, 1, 6, 6, 0)


def test_sunday_is_zero_or_seven():
    # 2026-01-11 is a Sunday
    sunday = utc(2026, 1, 11, 12, 0)
    assert parse_cron("0 12 * * 0").matches(sunday)
    assert parse_cron("0 12 * * 7").matches(sunday)
    assert not parse_cron("0 12 * * 1").matches(sunday)


@pytest.mark.parametrize("raw, names", [
    ("*", "*"),
    ("0", "sun"),
    ("7", "sun"),
    ("1-5", "mon,tue,wed,thu,fri"),
    ("5-7", "sun,fri,sat"),
    ("MON,wed", "mon,wed"),
    ("*/2", "sun,tue,thu,sat"),
])
def test_weekdays_use_crontab_numbering(raw, names):
    assert weekday_names(raw) == names


def test_weekday_range_wraps_to_sunday():
    expr = parse_cron("0 9 * * 5-7")
    # Sunday 2026-01-11 and Monday 2026-01-12
    assert expr.matches(utc(2026, 1, 11, 9, 0))
    assert not expr.matches(utc(2026, 1, 12, 9, 0))
    assert expr.next_run(utc(2026, 1, 11, 9, 0)) == utc(2026, 1, 16, 9, 0)


def test_day_of_month_and_week_use_or_semantics():
    expr = parse_cron("0 0 13 * 5")
    # Friday 2026-01-09, not the 13th
    assert expr.matches(utc(2026, 1, 9, 0, 0))
    # Tuesday 2026-01-13
    assert expr.matches(utc(2026, 1, 13, 0, 0))
    assert not expr.matches(utc(2026, 1, 14, 0, 0))


def test_timezone_is_applied():
    expr = parse_cron("0 9 * * *", "America/New_York")
    # 09:00 EST is 14:00 UTC in January
    assert expr.next_run(utc(2026, 1, 5, 12, 0)) == utc(2026, 1, 5, 14, 0)


def test_unknown_timezone_is_rejected():
    with pytest.raises(InvalidCronExpressionError, match="timezone"):
        CronExpression("* * * * *", "Mars/Olympus")


def test_impossible_date_never_fires():
    with pytest.raises(InvalidCronExpressionError, match="never fires"):
        parse_cron("0 0 30 2 *").next_run(utc(2026, 1, 1))


def test_multiple_expressions_take_the_earliest():
    after = utc(2026, 1, 5, 5, 0)
    assert next_cron_run(["0 7 * * *", "30 5 * * *"], after) == utc(2026, 1, 5, 5, 30)
    assert next_cron_run([], after) is None
    assert cron_matches(["0 7 * * *", "0 5 * * *"], after)


@pytest.mark.property
@settings(max_examples=50, deadline=None)
@given(
    minute=st.integers(min_value=0, max_value=59),
    hour=st.integers(min_value=0, max_value=23),
    start=st.datetimes(min_value=datetime(2020, 1, 1), max_value=datetime(2030, 1, 1)),
)
def test_next_run_always_matches_and_moves_forward(minute, hour, start):
    expr = parse_cron(f"{minute} {hour} * * *")
    after = start.replace(tzinfo=timezone.utc)
    nxt = expr.next_run(after)
    assert nxt > after
    assert expr.matches(nxt)
    assert (nxt - after).total_seconds() <= 24 * 3600
