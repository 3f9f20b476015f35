"""Shared query parameter parsing utilities for the HTTP adapter.

Malformed values are coerced to documented defaults rather than rejected,
with one exception: a request without a usable ``account_id`` is refused,
since every query must be scoped to an account.
"""

from obsfly.core.exceptions import MissingAccountScopeError
from obsfly.core.timeparse import MAX_TIME_RANGE_MINUTES, parse_time_range

MAX_PAGE_SIZE = 100
# Largest integer SQLite stores
MAX_ACCOUNT_ID = 2**63 - 1
SORT_ORDERS = {"asc", "desc"}


def _parse_positive_int(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    return value if value > 0 else None


def _parse_account_id(raw: str | None) -> int:
    """Parse the mandatory ``account_id`` parameter.

    Raises:
        MissingAccountScopeError: Missing, non-numeric, non-positive or
            beyond ``MAX_ACCOUNT_ID``.
    """
    account_id = _parse_positive_int(raw)
    if account_id is None or account_id > MAX_ACCOUNT_ID:
        raise MissingAccountScopeError("account_id query parameter is required")
    return account_id


def _parse_minutes_param(
    minutes: str | None, time_range: str | None, default: int
) -> int:
    """Resolve the lookback from ``minutes`` or a ``time_range`` duration.

    Args:
        minutes: Preset count of minutes; wins when it is a positive integer
            no larger than ``MAX_TIME_RANGE_MINUTES``.
        time_range: Duration string such as "15m", "1h", "24h" or "7d".
        default: Lookback used when neither parses.

    Returns:
        Lookback in minutes.
    """
    parsed = _parse_positive_int(minutes)
    if parsed is not None and parsed <= MAX_TIME_RANGE_MINUTES:
        return parsed
    return parse_time_range(time_range, default)


def _parse_page_param(raw: str | None) -> int:
    """1-indexed page number, defaulting to 1."""
    return _parse_positive_int(raw) or 1


def _parse_page_size_param(
    raw: str | None, default: int, maximum: int = MAX_PAGE_SIZE
) -> int:
    """Rows per page; values outside ``1..maximum`` fall back to ``default``."""
    parsed = _parse_positive_int(raw)
    if parsed is None or parsed > maximum:
        return default
    return parsed


def _parse_sort_order_param(raw: str | None) -> str:
    if raw and raw.lower() in SORT_ORDERS:
        return raw.lower()
    return "asc"
