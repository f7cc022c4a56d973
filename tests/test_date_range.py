"""
Tests for date range argument parsing.
"""

from datetime import timedelta, timezone

import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from event_export.date_range import DateRange, parse_date, parse_date_range

DAY = 86400


class TestParseDate:
    """Tests for single range bounds."""

    def test_epoch(self):
        assert parse_date("1000") == 1000

    @pytest.mark.parametrize("text", ["", None, "   ", "soon", "1970/13/01", "1970-01-01"])
    def test_invalid(self, text):
        assert parse_date(text) == -1

    def test_date_start_and_end_of_day(self):
        assert parse_date("1970/01/02", is_start=True) == DAY
        assert parse_date("1970/01/02", is_start=False) == 2 * DAY - 1

    def test_minutes_precision(self):
        assert parse_date("1970/01/01/00:16", is_start=True) == 960
        assert parse_date("1970/01/01/00:16", is_start=False) == 1019

    def test_seconds_precision(self):
        assert parse_date("1970/01/01/00:16:40") == 1000
        assert parse_date("1970/01/01 00:16:40", is_start=False) == 1000

    def test_account_timezone(self):
        """Dates are interpreted in the given timezone."""
        est = timezone(timedelta(hours=-5))
        assert parse_date("1970/01/02", est) == DAY + 5 * 3600


class TestParseDateRange:
    """Tests for "<from>,<to>[,<limit>]" ranges."""

    def test_epoch_range(self):
        assert parse_date_range("1000,2000") == DateRange(1000, 2000, None)

    def test_pipe_separator_and_limit(self):
        assert parse_date_range("1000|2000|5") == DateRange(1000, 2000, 5)

    def test_default_limit(self):
        assert parse_date_range("1000,2000", default_limit=30).limit == 30
        assert parse_date_range("1000,2000,7", default_limit=30).limit == 7

    def test_bad_limit_keeps_default(self):
        assert parse_date_range("1000,2000,many", default_limit=30).limit == 30

    def test_open_ended(self):
        rng = parse_date_range("1000")
        assert rng == DateRange(1000, -1, None)
        assert rng.start_time == 1000
        assert rng.end_time is None

    def test_open_start(self):
        rng = parse_date_range(",1970/01/01")
        assert rng.start_time is None
        assert rng.end == DAY - 1

    @pytest.mark.parametrize("text", [None, "", "abc,def", "0,0", ","])
    def test_unusable(self, text):
        assert parse_date_range(text) is None
