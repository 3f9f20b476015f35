"""Dashboard panels that chart or list raw telemetry.

The latency trend, the log volume and log patterns, and the slow trace
tables. Each panel is one store round trip over a lookback ending now.
"""

import logging
import time
from collections.abc import Callable

from obsfly.config import Settings
from obsfly.core import metric_names as names
from obsfly.core.deadline import deadline
from obsfly.core.exceptions import InvalidQueryError
from obsfly.core.filters import FilterBuilder
from obsfly.core.models import (
    Aggregation,
    DataPoint,
    EventKind,
    LogPattern,
    LogVolume,
    TimeWindow,
    TraceSummary,
)
from obsfly.core.ports import EventStorePort, RangeQuery
from obsfly.core.timeparse import lookback_window

logger = logging.getLogger(__name__)

TREND_BUCKET_SECONDS = 60
SLOW_TRACE_MS = 500.0
TRACES_LIMIT = 10
PATTERN_PREFIX_LENGTH = 50
PATTERNS_LIMIT = 5


class TelemetryExplorer:
    """Charts and tables read straight from the event streams."""

    def __init__(
        self,
        store: EventStorePort,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._settings = settings or Settings()
        self._clock = clock

    def _window(self, minutes: int) -> TimeWindow:
        return lookback_window(self._clock(), minutes)

    async def latency_trend(self, account_id: int, minutes: int) -> list[DataPoint]:
        """Mean request duration in milliseconds per one-minute bucket."""
        predicate = (
            FilterBuilder(account_id)
            .where("metric_name", names.HTTP_REQUEST_DURATION)
            .build()
        )
        async with deadline(self._settings.query_timeout_seconds):
            rows = await self._store.aggregate(
                RangeQuery(
                    predicate=predicate,
                    window=self._window(minutes),
                    aggregation=Aggregation.AVG,
                    bucket_seconds=TREND_BUCKET_SECONDS,
                )
            )
        return [
            DataPoint(timestamp=row.bucket or 0.0, value=row.value * 1000)
            for row in rows
        ]

    async def log_volume(self, account_id: int, minutes: int) -> list[LogVolume]:
        """Log record count per severity, ordered by severity."""
        predicate = FilterBuilder(account_id, EventKind.LOG).build()
        async with deadline(self._settings.query_timeout_seconds):
            rows = await self._store.aggregate(
                RangeQuery(
                    predicate=predicate,
                    window=self._window(minutes),
                    aggregation=Aggregation.COUNT,
                    group_by=("severity_text",),
                )
            )
        return [LogVolume(level=row.group[0], count=int(row.value)) for row in rows]

    async def log_patterns(self, account_id: int, minutes: int) -> list[LogPattern]:
        """The most frequent log bodies, compared on their first 50 characters."""
        predicate = FilterBuilder(account_id, EventKind.LOG).build()
        async with deadline(self._settings.query_timeout_seconds):
            return await self._store.log_patterns(
                predicate, self._window(minutes), PATTERN_PREFIX_LENGTH, PATTERNS_LIMIT
            )

    async def slow_traces(self, account_id: int, minutes: int) -> list[TraceSummary]:
        """The ten longest spans over half a second, longest first."""
        predicate = FilterBuilder(account_id, EventKind.TRACE).build()
        async with deadline(self._settings.query_timeout_seconds):
            return await self._store.slowest_spans(
                predicate, self._window(minutes), SLOW_TRACE_MS, TRACES_LIMIT
            )

    async def service_traces(
        self, account_id: int, service_name: str, minutes: int
    ) -> list[TraceSummary]:
        """The ten longest spans of one service, longest first."""
        if not service_name:
            raise InvalidQueryError("service name is required")
        predicate = (
            FilterBuilder(account_id, EventKind.TRACE)
            .where("service_name", service_name)
            .build()
        )
        logger.debug("Listing traces of %s for account %s", service_name, account_id)
        async with deadline(self._settings.query_timeout_seconds):
            return await self._store.slowest_spans(
                predicate, self._window(minutes), None, TRACES_LIMIT
            )
