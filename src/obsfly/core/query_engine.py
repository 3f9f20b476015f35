"""Metric query engine.

Resolves an ordered list of independent ``MetricQuery`` objects into named,
labeled time series with summary statistics, plus the discovery lookups
(metric names, label keys, label values) that feed query builders.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Sequence

from obsfly.config import Settings
from obsfly.core.deadline import deadline
from obsfly.core.exceptions import InvalidQueryError
from obsfly.core.filters import FilterBuilder, Grouping
from obsfly.core.models import (
    DataPoint,
    EventKind,
    LabelValue,
    MetricLabel,
    MetricName,
    MetricQuery,
    MetricQueryRequest,
    MetricQueryResponse,
    MetricSeries,
    SeriesStats,
    TimeWindow,
)
from obsfly.core.ports import AggregateRow, EventStorePort, RangeQuery
from obsfly.core.timeparse import lookback_window, parse_interval, parse_time_range

logger = logging.getLogger(__name__)

DISCOVERY_MINUTES = 24 * 60
LABEL_SAMPLE_VALUES = 10
LABEL_VALUES_LIMIT = 100


def calculate_stats(points: Sequence[DataPoint]) -> SeriesStats:
    """Summarize a series' own data points; all zeros when there are none."""
    if not points:
        return SeriesStats()
    values = [p.value for p in points]
    total = sum(values)
    return SeriesStats(
        avg=total / len(values),
        min=min(values),
        max=max(values),
        sum=total,
        count=len(values),
    )


def fold_series(
    metric: MetricQuery, grouping: Grouping, rows: Sequence[AggregateRow]
) -> list[MetricSeries]:
    """Fold range query rows into one series per group tuple.

    Series are ordered by their group tuple and data points ascend by
    timestamp. Stats are computed once every row has been folded in.
    """
    points_by_group: dict[tuple[str, ...], list[DataPoint]] = {}
    for row in rows:
        points_by_group.setdefault(row.group, []).append(
            DataPoint(timestamp=row.bucket or 0.0, value=row.value)
        )
    series = []
    for group in sorted(points_by_group):
        points = sorted(points_by_group[group], key=lambda p: p.timestamp)
        series.append(
            MetricSeries(
                name=metric.series_name,
                labels=grouping.labels_for(group),
                data_points=points,
                stats=calculate_stats(points),
            )
        )
    return series


class MetricQueryEngine:
    """Resolves metric query requests against an event store.

    The engine holds no state between requests. Queries of one request run
    concurrently and are assembled in request order; any failing query fails
    the whole request.
    """

    def __init__(
        self,
        store: EventStorePort,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._settings = settings or Settings()
        self._clock = clock

    async def query(self, request: MetricQueryRequest) -> MetricQueryResponse:
        """Resolve every query of ``request`` into series.

        Raises:
            InvalidQueryError: No metrics requested, or one without a name.
            DataSourceError: Any range query failed or the deadline expired.
        """
        if not request.metrics:
            raise InvalidQueryError("no metrics specified")
        for metric in request.metrics:
            if not metric.metric_name:
                raise InvalidQueryError("metric_name is required")

        minutes = parse_time_range(request.time_range, self._settings.default_minutes)
        # A bucket never spans more than the window
        interval = min(
            parse_interval(request.interval, self._settings.default_interval_seconds),
            minutes * 60,
        )
        window = lookback_window(self._clock(), minutes)
        logger.debug(
            "Resolving %d metric queries over %d minutes at %ds buckets",
            len(request.metrics),
            minutes,
            interval,
        )

        async with deadline(self._settings.query_timeout_seconds):
            resolved = await asyncio.gather(
                *(
                    self._resolve(request.account_id, metric, window, interval)
                    for metric in request.metrics
                )
            )
        return MetricQueryResponse(
            series=[series for group in resolved for series in group]
        )

    async def _resolve(
        self,
        account_id: int,
        metric: MetricQuery,
        window: TimeWindow,
        interval: int,
    ) -> list[MetricSeries]:
        predicate = (
            FilterBuilder(account_id)
            .where_labels(metric.filters)
            .where("metric_name", metric.metric_name)
            .build()
        )
        grouping = Grouping(EventKind.METRIC, metric.group_by)
        rows = await self._store.aggregate(
            RangeQuery(
                predicate=predicate,
                window=window,
                aggregation=metric.aggregation,
                group_by=grouping.keys,
                bucket_seconds=interval,
            )
        )
        return fold_series(metric, grouping, rows)

    # --- Discovery ---

    def _discovery_window(self) -> TimeWindow:
        return lookback_window(self._clock(), DISCOVERY_MINUTES)

    async def metric_names(self, account_id: int) -> list[MetricName]:
        """Metric names seen in the last 24 hours."""
        predicate = FilterBuilder(account_id).build()
        async with deadline(self._settings.query_timeout_seconds):
            return await self._store.metric_names(predicate, self._discovery_window())

    async def metric_labels(self, account_id: int, metric_name: str) -> list[MetricLabel]:
        """Label keys of a metric with a few sample values each."""
        if not metric_name:
            raise InvalidQueryError("metric_name is required")
        predicate = FilterBuilder(account_id).where("metric_name", metric_name).build()
        window = self._discovery_window()
        async with deadline(self._settings.query_timeout_seconds):
            keys = await self._store.label_keys(predicate, window)
            samples = await asyncio.gather(
                *(
                    self._store.label_values(
                        predicate, key.key, window, LABEL_SAMPLE_VALUES
                    )
                    for key in keys
                )
            )
        return [
            MetricLabel(
                key=key.key,
                value_count=key.count,
                sample_values=[value.value for value in values],
            )
            for key, values in zip(keys, samples, strict=True)
        ]

    async def label_values(
        self, account_id: int, metric_name: str, label_key: str
    ) -> list[LabelValue]:
        """Distinct values of one label of a metric, most frequent first."""
        if not metric_name or not label_key:
            raise InvalidQueryError("metric_name and label key are required")
        predicate = FilterBuilder(account_id).where("metric_name", metric_name).build()
        async with deadline(self._settings.query_timeout_seconds):
            return await self._store.label_values(
                predicate, label_key, self._discovery_window(), LABEL_VALUES_LIMIT
            )
