"""Infrastructure node views: the node list, per-node series and change.

Every figure is a range query over the node metrics of the metric stream,
keyed by ``host_name``.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Sequence

from obsfly.config import Settings
from obsfly.core import metric_names as names
from obsfly.core.comparator import (
    Expression,
    PeriodComparator,
    aggregate,
    aggregate_by,
)
from obsfly.core.deadline import deadline
from obsfly.core.exceptions import DataSourceError, InvalidQueryError
from obsfly.core.filters import FilterBuilder, Predicate
from obsfly.core.health import DEFAULT_THRESHOLDS, HealthThresholds, infra_status
from obsfly.core.models import (
    Aggregation,
    DataPoint,
    MetricSeries,
    NodeChange,
    NodeSummary,
)
from obsfly.core.ports import AggregateRow, EventStorePort, RangeQuery
from obsfly.core.query_engine import calculate_stats
from obsfly.core.timeparse import lookback_window

logger = logging.getLogger(__name__)

NODE_SERIES_METRICS = (
    names.NODE_CPU_USAGE,
    names.NODE_MEMORY_USAGE,
    names.NODE_DISK_USAGE,
    names.NODE_NET_RECEIVED,
    names.NODE_NET_TRANSMITTED,
    names.NODE_GPU_UTILIZATION,
    names.NODE_GPU_MEMORY_UTILIZATION,
    names.NODE_GPU_TEMPERATURE,
)
SERIES_BUCKET_SECONDS = 60
DEFAULT_SERIES_MINUTES = 60
RECENT_MINUTES = 5

# Node list columns: (field, metric, aggregation)
_SUMMARY_COLUMNS: tuple[tuple[str, str, Aggregation], ...] = (
    ("cpu_usage", names.NODE_CPU_USAGE, Aggregation.AVG),
    ("memory_total", names.NODE_MEMORY_TOTAL, Aggregation.MAX),
    ("memory_free", names.NODE_MEMORY_FREE, Aggregation.AVG),
    ("memory_usage_percent", names.NODE_MEMORY_USAGE, Aggregation.AVG),
    ("disk_usage_percent", names.NODE_DISK_USAGE, Aggregation.AVG),
    ("network_transmit", names.NODE_NET_TRANSMITTED, Aggregation.SUM),
    ("network_receive", names.NODE_NET_RECEIVED, Aggregation.SUM),
    ("uptime", names.NODE_UPTIME, Aggregation.MAX),
)


def node_series(
    metric_name: str, group_by: str, rows: Sequence[AggregateRow]
) -> list[MetricSeries]:
    """Fold one node metric's rows into series split by ``group_by``.

    Points without the label land in an unlabeled series, listed first.
    """
    points_by_value: dict[str, list[DataPoint]] = {}
    for row in rows:
        value = row.group[0] if group_by else ""
        points_by_value.setdefault(value, []).append(
            DataPoint(timestamp=row.bucket or 0.0, value=row.value)
        )
    series = []
    for value in sorted(points_by_value):
        points = sorted(points_by_value[value], key=lambda p: p.timestamp)
        series.append(
            MetricSeries(
                name=metric_name,
                labels={group_by: value} if value else {},
                data_points=points,
                stats=calculate_stats(points),
            )
        )
    return series


class NodeRollups:
    """Per-host resource figures for the infrastructure pages."""

    def __init__(
        self,
        store: EventStorePort,
        settings: Settings | None = None,
        thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._settings = settings or Settings()
        self._thresholds = thresholds
        self._clock = clock

    def _metric(
        self, account_id: int, metric_name: str, host_name: str = ""
    ) -> Predicate:
        builder = FilterBuilder(account_id).where("metric_name", metric_name)
        if host_name:
            builder.where("host_name", host_name)
        return builder.build()

    async def nodes(self, account_id: int) -> list[NodeSummary]:
        """Every host that reported a node metric in the last five minutes."""
        window = lookback_window(self._clock(), RECENT_MINUTES)
        async with deadline(self._settings.query_timeout_seconds):
            columns = await asyncio.gather(
                *(
                    aggregate_by(
                        self._store,
                        self._metric(account_id, metric_name),
                        aggregation,
                        "host_name",
                    )(window)
                    for _, metric_name, aggregation in _SUMMARY_COLUMNS
                )
            )
        hosts = sorted(set().union(*(column.keys() for column in columns)))
        result = []
        for host in hosts:
            figures = {
                field: column.get(host, 0.0)
                for (field, _, _), column in zip(
                    _SUMMARY_COLUMNS, columns, strict=True
                )
            }
            result.append(
                NodeSummary(
                    host_name=host,
                    **figures,
                    status=infra_status(
                        figures["cpu_usage"],
                        figures["memory_usage_percent"],
                        self._thresholds,
                        disk_pressure=figures["disk_usage_percent"],
                    ),
                    network_up=bool(
                        figures["network_transmit"] or figures["network_receive"]
                    ),
                )
            )
        return result

    async def timeseries(
        self,
        account_id: int,
        host_name: str,
        minutes: int = DEFAULT_SERIES_MINUTES,
        group_by: str = "",
    ) -> list[MetricSeries]:
        """One-minute averages of every node metric of one host.

        Series come in ``NODE_SERIES_METRICS`` order. Each metric has its own
        deadline; a metric whose query fails or times out is logged and left
        out.
        """
        if not host_name:
            raise InvalidQueryError("host name is required")
        window = lookback_window(self._clock(), minutes)
        group_keys = (group_by,) if group_by else ()

        async def series_for(metric_name: str) -> list[MetricSeries]:
            query = RangeQuery(
                predicate=self._metric(account_id, metric_name, host_name),
                window=window,
                aggregation=Aggregation.AVG,
                group_by=group_keys,
                bucket_seconds=SERIES_BUCKET_SECONDS,
            )
            try:
                async with deadline(self._settings.query_timeout_seconds):
                    rows = await self._store.aggregate(query)
            except DataSourceError:
                logger.warning(
                    "Skipping %s series for host %s", metric_name, host_name,
                    exc_info=True,
                )
                return []
            return node_series(metric_name, group_by, rows)

        per_metric = await asyncio.gather(
            *(series_for(metric_name) for metric_name in NODE_SERIES_METRICS)
        )
        return [series for group in per_metric for series in group]

    async def change(self, account_id: int, host_name: str) -> NodeChange:
        """Last five minutes against the five minutes before, for one host."""
        if not host_name:
            raise InvalidQueryError("host name is required")
        comparator = PeriodComparator(self._clock(), RECENT_MINUTES)

        def node(metric_name: str, aggregation: Aggregation) -> Expression:
            predicate = self._metric(account_id, metric_name, host_name)
            return aggregate(self._store, predicate, aggregation)

        expressions = (
            node(names.NODE_CPU_USAGE, Aggregation.AVG),
            node(names.NODE_MEMORY_USAGE, Aggregation.AVG),
            node(names.NODE_DISK_USAGE, Aggregation.AVG),
            node(names.NODE_NET_RECEIVED, Aggregation.SUM),
            node(names.NODE_NET_TRANSMITTED, Aggregation.SUM),
        )
        async with deadline(self._settings.query_timeout_seconds):
            cpu, memory, disk, receive, transmit = await asyncio.gather(
                *(comparator.compare(e) for e in expressions)
            )
        return NodeChange(
            cpu_usage=cpu,
            memory_usage=memory,
            disk_usage=disk,
            network_receive=receive,
            network_transmit=transmit,
        )
