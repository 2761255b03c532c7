"""Tests for date normalization, time buckets and spoken formatting."""

from __future__ import annotations

from datetime import UTC, date, datetime

import pytest

from voice_booking.dates import (
    TimeBucket,
    in_bucket,
    normalize_date,
    parse_time_bucket,
    practice_now,
    spoken_date,
    spoken_list,
    spoken_slot,
    spoken_time,
    to_local,
)

MONDAY = date(2026, 10, 19)


class TestNormalizeDate:
    def test_tomorrow_is_today_plus_one(self):
        assert normalize_date("tomorrow", MONDAY) == date(2026, 10, 20)

    def test_tomorrow_at_month_end(self):
        assert normalize_date("tomorrow morning", date(2026, 10, 31)) == date(2026, 11, 1)

    def test_day_after_tomorrow(self):
        assert normalize_date("the day after tomorrow", MONDAY) == date(2026, 10, 21)

    def test_today(self):
        assert normalize_date("today please", MONDAY) == MONDAY

    def test_next_same_weekday_is_one_week_out(self):
        assert normalize_date("next Monday", MONDAY) == date(2026, 10, 26)

    def test_bare_same_weekday_is_today(self):
        assert normalize_date("Monday", MONDAY) == MONDAY

    def test_next_weekday_later_this_week(self):
        assert normalize_date("next Wednesday", MONDAY) == date(2026, 10, 21)

    def test_this_weekday(self):
        assert normalize_date("this Friday", MONDAY) == date(2026, 10, 23)

    def test_weekday_earlier_in_week_wraps(self):
        assert normalize_date("Sunday", MONDAY) == date(2026, 10, 25)

    def test_in_n_days(self):
        assert normalize_date("in 10 days", MONDAY) == date(2026, 10, 29)

    def test_a_week_from_today(self):
        assert normalize_date("a week from today", MONDAY) == date(2026, 10, 26)

    def test_iso_date(self):
        assert normalize_date("2026-11-03", MONDAY) == date(2026, 11, 3)

    def test_month_day_with_ordinal(self):
        assert normalize_date("November 3rd", MONDAY) == date(2026, 11, 3)

    def test_day_of_month(self):
        assert normalize_date("the 5th of December", MONDAY) == date(2026, 12, 5)

    def test_past_month_day_rolls_to_next_year(self):
        assert normalize_date("January 5", MONDAY) == date(2027, 1, 5)

    def test_slash_date_without_year_rolls_forward(self):
        assert normalize_date("3/14", MONDAY) == date(2027, 3, 14)

    def test_slash_date_with_short_year(self):
        assert normalize_date("11/2/26", MONDAY) == date(2026, 11, 2)

    def test_impossible_date(self):
        assert normalize_date("February 30", MONDAY) is None

    def test_unreadable_phrase(self):
        assert normalize_date("whenever works for the doctor", MONDAY) is None

    def test_empty_phrase(self):
        assert normalize_date("   ", MONDAY) is None


class TestTimeBuckets:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("MORNING", TimeBucket.MORNING),
            ("all day", TimeBucket.ALL_DAY),
            ("mornings are best", TimeBucket.MORNING),
            ("something in the afternoon", TimeBucket.AFTERNOON),
            ("after work", TimeBucket.EVENING),
            ("first thing", TimeBucket.EARLY),
            ("around lunchtime", TimeBucket.MIDDAY),
        ],
    )
    def test_parse_time_bucket(self, text, expected):
        assert parse_time_bucket(text) == expected

    def test_unknown_preference(self):
        assert parse_time_bucket("I am flexible") is None
        assert parse_time_bucket(None) is None

    def test_bucket_start_inclusive_end_exclusive(self):
        assert in_bucket(datetime(2026, 10, 20, 12, 0), TimeBucket.AFTERNOON)
        assert not in_bucket(datetime(2026, 10, 20, 12, 0), TimeBucket.MORNING)

    def test_buckets_overlap(self):
        noonish = datetime(2026, 10, 20, 13, 30)
        assert in_bucket(noonish, TimeBucket.MIDDAY)
        assert in_bucket(noonish, TimeBucket.AFTERNOON)


class TestSpokenFormats:
    def test_to_local_converts_to_practice_timezone(self):
        local = to_local("2026-10-20T14:00:00Z", "America/Chicago")
        assert (local.hour, local.minute) == (9, 0)

    def test_practice_now_crosses_midnight(self):
        now = datetime(2026, 10, 20, 3, 0, tzinfo=UTC)
        assert practice_now("America/Chicago", now).date() == date(2026, 10, 19)

    def test_spoken_time(self):
        assert spoken_time(datetime(2026, 10, 20, 9, 0)) == "9:00 AM"
        assert spoken_time(datetime(2026, 10, 20, 15, 30)) == "3:30 PM"

    def test_spoken_date(self):
        assert spoken_date(date(2026, 10, 20)) == "Tuesday, October 20"

    def test_spoken_slot(self):
        assert spoken_slot(datetime(2026, 10, 20, 10, 30)) == "Tuesday, October 20 at 10:30 AM"

    def test_spoken_list(self):
        assert spoken_list(["a"]) == "a"
        assert spoken_list(["a", "b"]) == "a or b"
        assert spoken_list(["a", "b", "c"], "and") == "a, b, and c"
