"""Deadlines for ``wait_and``/``wait_or`` time arguments.

Two forms are understood::

    NOW 15 minute
    EVERY WEEKDAY 1 DAYHOUR 7 HOURMINUTE 30

Calendar expressions are evaluated on local wall-clock time. Fields finer than
the coarsest one given default to zero, coarser ones match anything, and the
first matching whole second after ``now`` is the deadline.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo

from mq_system.core.errors import TimeExpressionError


_DAY = timedelta(days=1)

RELATIVE_UNITS = {
    "second": timedelta(seconds=1),
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": _DAY,
    "week": 7 * _DAY,
    "month": 30 * _DAY,
}

# keyword -> (accepted range, position in the grammar)
_CALENDAR_FIELDS = {
    "MONTHDAY": (range(-31, 32), 0),
    "WEEKDAY": (range(0, 7), 0),
    "DAYHOUR": (range(0, 24), 1),
    "HOURMINUTE": (range(0, 60), 2),
    "MINUTESECOND": (range(0, 60), 3),
}

_INTEGER = re.compile(r"-?[0-9]+")
_COUNT = re.compile(r"[0-9]+")
_SEARCH_HORIZON = timedelta(days=400)


@dataclass(frozen=True)
class CalendarPattern:
    monthday: int | None = None
    weekday: int | None = None
    hour: int | None = None
    minute: int | None = None
    second: int | None = None

    def day_matches(self, moment: datetime) -> bool:
        if self.weekday is not None:
            # 0 is Sunday
            return (moment.weekday() + 1) % 7 == self.weekday
        if self.monthday is not None:
            if self.monthday > 0:
                return moment.day == self.monthday
            days_in_month = calendar.monthrange(moment.year, moment.month)[1]
            return moment.day == days_in_month + self.monthday + 1
        return True


def parse_time_expression(
    text: str,
    *,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> datetime:
    """Return the aware deadline described by ``text``.

    ``tz=None`` means the system local zone. A naive ``now`` is read as wall
    time in that zone.
    """
    if not isinstance(text, str):
        raise TimeExpressionError(f"time expression must be a string, got {type(text).__name__}")
    tokens = text.split()
    if not tokens:
        raise TimeExpressionError("empty time expression")

    wall_now = _wall_clock(now, tz)
    if tokens[0] == "NOW":
        return _attach(wall_now, tz) + _parse_relative(text, tokens[1:])
    if tokens[0] == "EVERY":
        pattern = parse_calendar_pattern(text, tokens[1:])
        return _attach(next_occurrence(pattern, wall_now), tz)
    raise TimeExpressionError(f"unknown time expression: {text!r}")


def _parse_relative(text: str, tokens: list[str]) -> timedelta:
    if len(tokens) != 2 or not _COUNT.fullmatch(tokens[0]) or tokens[1] not in RELATIVE_UNITS:
        raise TimeExpressionError(f"expected 'NOW <count> <unit>' got {text!r}")
    count = int(tokens[0])
    if count <= 0:
        raise TimeExpressionError(f"relative count must be positive: {text!r}")
    return count * RELATIVE_UNITS[tokens[1]]


def parse_calendar_pattern(text: str, tokens: list[str]) -> CalendarPattern:
    if len(tokens) % 2:
        raise TimeExpressionError(f"dangling keyword in {text!r}")

    fields: dict[str, int] = {}
    position = -1
    for keyword, raw in zip(tokens[::2], tokens[1::2]):
        field_rule = _CALENDAR_FIELDS.get(keyword)
        if field_rule is None:
            raise TimeExpressionError(f"unknown calendar keyword {keyword!r} in {text!r}")
        valid, field_position = field_rule
        if field_position <= position:
            raise TimeExpressionError(f"keyword {keyword} out of order in {text!r}")
        position = field_position
        if not _INTEGER.fullmatch(raw):
            raise TimeExpressionError(f"{keyword} expects an integer, got {raw!r}")
        value = int(raw)
        if value not in valid or (keyword == "MONTHDAY" and value == 0):
            raise TimeExpressionError(f"{keyword} value out of range: {value}")
        fields[keyword] = value

    given = [_CALENDAR_FIELDS[keyword][1] for keyword in fields]
    coarsest = min(given) if given else None

    def resolve(keyword: str, field_position: int) -> int | None:
        if keyword in fields:
            return fields[keyword]
        if coarsest is not None and field_position > coarsest:
            return 0
        return None

    return CalendarPattern(
        monthday=fields.get("MONTHDAY"),
        weekday=fields.get("WEEKDAY"),
        hour=resolve("DAYHOUR", 1),
        minute=resolve("HOURMINUTE", 2),
        second=resolve("MINUTESECOND", 3),
    )


def next_occurrence(pattern: CalendarPattern, wall_now: datetime) -> datetime:
    """First naive wall-clock second strictly after ``wall_now`` matching ``pattern``."""
    candidate = wall_now.replace(microsecond=0) + timedelta(seconds=1)
    horizon = candidate + _SEARCH_HORIZON

    while candidate <= horizon:
        if not pattern.day_matches(candidate):
            candidate = _start_of_day(candidate) + _DAY
            continue
        if pattern.hour is not None and candidate.hour != pattern.hour:
            if candidate.hour < pattern.hour:
                candidate = candidate.replace(hour=pattern.hour, minute=0, second=0)
            else:
                candidate = _start_of_day(candidate) + _DAY
            continue
        if pattern.minute is not None and candidate.minute != pattern.minute:
            if candidate.minute < pattern.minute:
                candidate = candidate.replace(minute=pattern.minute, second=0)
            else:
                candidate = candidate.replace(minute=0, second=0) + timedelta(hours=1)
            continue
        if pattern.second is not None and candidate.second != pattern.second:
            if candidate.second < pattern.second:
                candidate = candidate.replace(second=pattern.second)
            else:
                candidate = candidate.replace(second=0) + timedelta(minutes=1)
            continue
        return candidate

    raise TimeExpressionError(f"no occurrence of {pattern} within {_SEARCH_HORIZON.days} days")


def _start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def _wall_clock(now: datetime | None, tz: tzinfo | None) -> datetime:
    if now is None:
        now = datetime.now(tz) if tz is not None else datetime.now()
    if now.tzinfo is not None:
        now = now.astimezone(tz)
    return now.replace(tzinfo=None)


def _attach(wall: datetime, tz: tzinfo | None) -> datetime:
    if tz is None:
        return wall.astimezone()
    return wall.replace(tzinfo=tz)
