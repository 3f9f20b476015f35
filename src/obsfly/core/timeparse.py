"""Duration parsing, bucket alignment and window construction."""

import math
import re

from obsfly.core.models import TimeWindow

DEFAULT_TIME_RANGE_MINUTES = 15
DEFAULT_INTERVAL_SECONDS = 60
# Lookbacks stop at the default retention; buckets at one day.
MAX_TIME_RANGE_MINUTES = 30 * 24 * 60
MAX_INTERVAL_SECONDS = 24 * 60 * 60

_DURATION = re.compile(r"^\s*(\d{1,9})\s*([a-zA-Z]+)\s*$")

_MINUTES_PER_UNIT = {"m": 1, "h": 60, "d": 60 * 24}
_SECONDS_PER_UNIT = {"s": 1, "m": 60, "h": 3600}


def _split_duration(text: str | None) -> tuple[int, str] | None:
    if not text:
        return None
    match = _DURATION.match(text)
    if match is None:
        return None
    value = int(match.group(1))
    if value <= 0:
        return None
    return value, match.group(2).lower()


def parse_time_range(
    text: str | None, default: int = DEFAULT_TIME_RANGE_MINUTES
) -> int:
    """Parse a lookback like "15m", "1h", "24h" or "7d" into minutes.

    Unparseable input, unknown units and lookbacks longer than
    ``MAX_TIME_RANGE_MINUTES`` fall back to ``default``.
    """
    parsed = _split_duration(text)
    if parsed is None:
        return default
    value, unit = parsed
    if unit not in _MINUTES_PER_UNIT:
        return default
    minutes = value * _MINUTES_PER_UNIT[unit]
    return minutes if minutes <= MAX_TIME_RANGE_MINUTES else default


def parse_interval(text: str | None, default: int = DEFAULT_INTERVAL_SECONDS) -> int:
    """Parse a bucket width like "30s", "1m" or "1h" into seconds.

    Widths beyond ``MAX_INTERVAL_SECONDS`` fall back to ``default``.
    """
    parsed = _split_duration(text)
    if parsed is None:
        return default
    value, unit = parsed
    if unit not in _SECONDS_PER_UNIT:
        return default
    seconds = value * _SECONDS_PER_UNIT[unit]
    return seconds if seconds <= MAX_INTERVAL_SECONDS else default


def bucket_start(timestamp: float, interval_seconds: int) -> float:
    """Align a timestamp to its bucket: ``floor(ts / interval) * interval``.

    Edges depend only on the interval, never on the request start, so
    repeated queries produce the same buckets.
    """
    return float(math.floor(timestamp / interval_seconds) * interval_seconds)


def lookback_window(now: float, minutes: int) -> TimeWindow:
    """The window ``(now - minutes, now]``."""
    return TimeWindow(start=now - minutes * 60, end=now)


def split_windows(now: float, minutes: int) -> tuple[TimeWindow, TimeWindow]:
    """Return ``(previous, current)`` halves of a ``2 * minutes`` lookback.

    ``current`` is ``(now - N, now]`` and ``previous`` is
    ``(now - 2N, now - N]``.
    """
    split_time = now - minutes * 60
    start_time = now - 2 * minutes * 60
    return (
        TimeWindow(start=start_time, end=split_time),
        TimeWindow(start=split_time, end=now),
    )
