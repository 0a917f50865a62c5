"""Tests for UTC time helpers."""
from datetime import datetime, timedelta, timezone

import pytest

from omnisync.timeutil import (
    days_ago,
    days_from_now,
    next_aligned_time,
    parse_iso,
    to_iso_z,
    to_naive_utc,
    to_unix_seconds,
)


class TestParsing:
    def test_z_suffix(self):
        assert parse_iso("2025-03-10T10:00:00Z") == datetime(2025, 3, 10, 10, 0)

    def test_offset_converted_to_utc(self):
        assert parse_iso("2025-03-10T10:00:00+01:00") == datetime(2025, 3, 10, 9, 0)

    def test_empty(self):
        assert parse_iso(None) is None
        assert parse_iso("") is None

    def test_to_naive_utc(self):
        aware = datetime(2025, 3, 10, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        assert to_naive_utc(aware) == datetime(2025, 3, 10, 10, 0)

    def test_to_iso_z_milliseconds(self):
        assert to_iso_z(datetime(2025, 3, 10, 9, 5, 7, 123456)) == "2025-03-10T09:05:07.123Z"


class TestWindows:
    def test_days_ago_is_midnight(self):
        assert days_ago(7, datetime(2025, 3, 10, 15, 45)) == datetime(2025, 3, 3)

    def test_days_from_now_is_end_of_day(self):
        assert days_from_now(30, datetime(2025, 3, 10, 15, 45)) == datetime(
            2025, 4, 9, 23, 59, 59, 999000
        )

    def test_unix_seconds(self):
        assert to_unix_seconds(datetime(1970, 1, 2)) == 86400


class TestNextAlignedTime:
    @pytest.mark.parametrize(
        "now, expected",
        [
            (datetime(2025, 3, 10, 9, 3, 12), datetime(2025, 3, 10, 9, 10)),
            (datetime(2025, 3, 10, 9, 10), datetime(2025, 3, 10, 9, 20)),
            (datetime(2025, 3, 10, 9, 59, 59), datetime(2025, 3, 10, 10, 0)),
            (datetime(2025, 3, 10, 23, 55), datetime(2025, 3, 11, 0, 0)),
        ],
    )
    def test_ten_minute_alignment(self, now, expected):
        assert next_aligned_time(now, 10) == expected

    def test_always_after_now(self):
        now = datetime(2025, 3, 10, 9, 0)
        assert next_aligned_time(now, 10) > now
