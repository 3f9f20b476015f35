"""Tests for duration parsing and window construction."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from obsfly.core.models import TimeWindow
from obsfly.core.timeparse import (
    MAX_INTERVAL_SECONDS,
    MAX_TIME_RANGE_MINUTES,
    bucket_start,
    lookback_window,
    parse_interval,
    parse_time_range,
    split_windows,
)


class TestParseTimeRange:
    """Tests for lookback parsing."""

    @pytest.mark.core
    @pytest.mark.parametrize(
        ("text", "minutes"),
        [("15m", 15), ("1h", 60), ("24h", 1440), ("7d", 10080), (" 30M ", 30)],
    )
    def test_parses_supported_units(self, text: str, minutes: int) -> None:
        assert parse_time_range(text) == minutes

    @pytest.mark.core
    @pytest.mark.parametrize("text", ["", None, "abc", "15", "15w", "0m", "-5m", "1.5h"])
    def test_malformed_input_falls_back_to_default(self, text: str | None) -> None:
        assert parse_time_range(text) == 15
        assert parse_time_range(text, default=60) == 60

    @pytest.mark.core
    @pytest.mark.parametrize("text", ["99999999999999999999m", "31d", "43201m", "721h"])
    def test_lookbacks_beyond_thirty_days_fall_back(self, text: str) -> None:
        assert parse_time_range(text) == 15

    @pytest.mark.core
    def test_thirty_days_is_accepted(self) -> None:
        assert parse_time_range("30d") == MAX_TIME_RANGE_MINUTES == 43200


class TestParseInterval:
    """Tests for bucket width parsing."""

    @pytest.mark.core
    @pytest.mark.parametrize(("text", "seconds"), [("30s", 30), ("1m", 60), ("1h", 3600)])
    def test_parses_supported_units(self, text: str, seconds: int) -> None:
        assert parse_interval(text) == seconds

    @pytest.mark.core
    @pytest.mark.parametrize("text", ["", None, "1d", "fast", "0s"])
    def test_malformed_input_falls_back_to_default(self, text: str | None) -> None:
        assert parse_interval(text) == 60

    @pytest.mark.core
    @pytest.mark.parametrize("text", ["99999999999999999999s", "25h", "86401s"])
    def test_widths_beyond_one_day_fall_back(self, text: str) -> None:
        assert parse_interval(text) == 60

    @pytest.mark.core
    def test_one_day_is_accepted(self) -> None:
        assert parse_interval("24h") == MAX_INTERVAL_SECONDS


class TestBucketStart:
    """Tests for bucket alignment."""

    @pytest.mark.core
    def test_aligns_down_to_interval(self) -> None:
        assert bucket_start(125.0, 60) == 120.0
        assert bucket_start(120.0, 60) == 120.0
        assert bucket_start(179.9, 60) == 120.0

    @pytest.mark.core
    def test_edges_do_not_depend_on_the_request(self) -> None:
        """The same timestamp lands in the same bucket whatever the window."""
        assert bucket_start(1_700_000_041.5, 30) == 1_700_000_040.0


class TestWindows:
    """Tests for lookback and split windows."""

    @pytest.mark.core
    def test_lookback_window(self) -> None:
        assert lookback_window(1000.0, 5) == TimeWindow(start=700.0, end=1000.0)

    @pytest.mark.core
    def test_split_windows_are_adjacent_halves(self) -> None:
        previous, current = split_windows(10_000.0, 15)
        assert current == TimeWindow(start=9_100.0, end=10_000.0)
        assert previous == TimeWindow(start=8_200.0, end=9_100.0)

    @pytest.mark.core
    def test_window_boundaries_are_half_open(self) -> None:
        """A point at the split time belongs to the previous half only."""
        previous, current = split_windows(10_000.0, 15)
        assert previous.contains(9_100.0)
        assert not current.contains(9_100.0)
        assert current.contains(10_000.0)
        assert not previous.contains(8_200.0)

    @pytest.mark.core
    def test_window_seconds(self) -> None:
        assert lookback_window(1000.0, 15).seconds == 900.0


class TestBucketStartProperties:
    """Property-based tests for bucket alignment."""

    @pytest.mark.core
    @given(
        timestamp=st.integers(min_value=0, max_value=2_000_000_000),
        interval=st.integers(min_value=1, max_value=86_400),
    )
    def test_bucket_contains_timestamp(self, timestamp: int, interval: int) -> None:
        """Every timestamp falls inside the bucket that starts at its edge."""
        start = bucket_start(float(timestamp), interval)

        assert start % interval == 0
        assert start <= timestamp < start + interval
