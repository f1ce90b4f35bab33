from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest import TestCase

from mq_system.core.errors import TimeExpressionError
from mq_system.services.time_expression import parse_time_expression


def _utc(*args: int, microsecond: int = 0) -> datetime:
    return datetime(*args, microsecond=microsecond, tzinfo=timezone.utc)


def _next(text: str, now: datetime) -> datetime:
    return parse_time_expression(text, now=now, tz=timezone.utc)


class RelativeExpressionTests(TestCase):
    def test_relative_units(self) -> None:
        now = _utc(2026, 1, 1, 12, 0, 0, microsecond=500_000)

        self.assertEqual(_next("NOW 2 second", now), now + timedelta(seconds=2))
        self.assertEqual(_next("NOW 5 minute", now), now + timedelta(minutes=5))
        self.assertEqual(_next("NOW 1 hour", now), now + timedelta(hours=1))
        self.assertEqual(_next("NOW 2 day", now), now + timedelta(days=2))
        self.assertEqual(_next("NOW 1 week", now), now + timedelta(days=7))
        self.assertEqual(_next("NOW 1 month", now), now + timedelta(days=30))

    def test_relative_grammar_errors(self) -> None:
        now = _utc(2026, 1, 1, 12, 0, 0)
        for text in (
            "NOW 0 second",
            "NOW -1 second",
            "NOW 2 seconds",
            "NOW second",
            "NOW 1 2 second",
            "NOW \u00b2 second",
            "NOW \u0663 second",
        ):
            with self.subTest(text=text):
                with self.assertRaises(TimeExpressionError):
                    _next(text, now)

    def test_default_now_is_local_and_aware(self) -> None:
        before = datetime.now(timezone.utc)
        deadline = parse_time_expression("NOW 1 second")
        self.assertIsNotNone(deadline.tzinfo)
        self.assertGreaterEqual(deadline, before + timedelta(seconds=1))
        self.assertLess(deadline, before + timedelta(seconds=3))


class CalendarExpressionTests(TestCase):
    def test_every_alone_is_next_second(self) -> None:
        now = _utc(2026, 1, 1, 12, 0, 0, microsecond=500_000)
        self.assertEqual(_next("EVERY", now), _utc(2026, 1, 1, 12, 0, 1))

    def test_dayhour_later_today_and_tomorrow(self) -> None:
        self.assertEqual(
            _next("EVERY DAYHOUR 7", _utc(2026, 1, 1, 6, 59, 59, microsecond=900_000)),
            _utc(2026, 1, 1, 7, 0, 0),
        )
        self.assertEqual(
            _next("EVERY DAYHOUR 7", _utc(2026, 1, 1, 12, 0, 0)),
            _utc(2026, 1, 2, 7, 0, 0),
        )

    def test_hourminute_leaves_hour_open(self) -> None:
        self.assertEqual(
            _next("EVERY HOURMINUTE 30", _utc(2026, 1, 1, 12, 45, 0)),
            _utc(2026, 1, 1, 13, 30, 0),
        )

    def test_minutesecond_rolls_to_next_minute(self) -> None:
        self.assertEqual(
            _next("EVERY MINUTESECOND 15", _utc(2026, 1, 1, 12, 0, 20)),
            _utc(2026, 1, 1, 12, 1, 15),
        )

    def test_weekday_zero_is_sunday(self) -> None:
        # 2026-01-01 is a Thursday
        self.assertEqual(
            _next("EVERY WEEKDAY 0", _utc(2026, 1, 1, 12, 0, 0)),
            _utc(2026, 1, 4, 0, 0, 0),
        )

    def test_weekday_with_time_of_day(self) -> None:
        self.assertEqual(
            _next("EVERY WEEKDAY 1 DAYHOUR 7 HOURMINUTE 30", _utc(2026, 1, 1, 12, 0, 0)),
            _utc(2026, 1, 5, 7, 30, 0),
        )

    def test_negative_monthday_is_last_day(self) -> None:
        self.assertEqual(
            _next("EVERY MONTHDAY -1", _utc(2026, 2, 10, 8, 0, 0)),
            _utc(2026, 2, 28, 0, 0, 0),
        )
        self.assertEqual(
            _next("EVERY MONTHDAY -1", _utc(2026, 2, 28, 0, 0, 0, microsecond=500_000)),
            _utc(2026, 3, 31, 0, 0, 0),
        )

    def test_monthday_skips_short_months(self) -> None:
        self.assertEqual(
            _next("EVERY MONTHDAY 31", _utc(2026, 4, 5, 8, 0, 0)),
            _utc(2026, 5, 31, 0, 0, 0),
        )
        self.assertEqual(
            _next("EVERY MONTHDAY 30 DAYHOUR 6", _utc(2026, 2, 10, 8, 0, 0)),
            _utc(2026, 3, 30, 6, 0, 0),
        )

    def test_calendar_grammar_errors(self) -> None:
        now = _utc(2026, 1, 1, 12, 0, 0)
        for text in (
            "",
            "LATER",
            "EVERY DAYHOUR",
            "EVERY DAYHOUR x",
            "EVERY DAYHOUR \u0663",
            "EVERY DAYHOUR 24",
            "EVERY HOURMINUTE 60",
            "EVERY MINUTESECOND -1",
            "EVERY MONTHDAY 0",
            "EVERY MONTHDAY 32",
            "EVERY WEEKDAY 7",
            "EVERY DAYHOUR 7 WEEKDAY 1",
            "EVERY MONTHDAY 1 WEEKDAY 1",
            "EVERY DAYHOUR 7 DAYHOUR 8",
            "EVERY YEARDAY 3",
        ):
            with self.subTest(text=text):
                with self.assertRaises(TimeExpressionError):
                    _next(text, now)
