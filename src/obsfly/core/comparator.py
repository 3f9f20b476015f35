"""Current-vs-previous period comparison and the dashboard rollups built on it.

A lookback of ``N`` minutes is split in two halves: ``current`` covers
``(now - N, now]`` and ``previous`` covers ``(now - 2N, now - N]``. Every
"value and its percent change" pair on the dashboard is one expression
evaluated over both halves by ``PeriodComparator``.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from obsfly.config import Settings
from obsfly.core import metric_names as names
from obsfly.core.deadline import deadline
from obsfly.core.exceptions import DataSourceError
from obsfly.core.filters import FilterBuilder, Predicate
from obsfly.core.models import (
    Aggregation,
    DashboardSummary,
    InfraHotspot,
    PeriodComparison,
    SystemPerformance,
    TimeWindow,
)
from obsfly.core.ports import EventStorePort, RangeQuery
from obsfly.core.timeparse import split_windows

logger = logging.getLogger(__name__)

Expression = Callable[[TimeWindow], Awaitable[float]]
KeyedExpression = Callable[[TimeWindow], Awaitable[dict[str, float]]]

MIB = 1024 * 1024
GIB = 1024 * 1024 * 1024
HOTSPOTS_PER_RESOURCE = 2


def percent_change(current: float, previous: float) -> float:
    """Percent change from ``previous`` to ``current``; 0 when previous is 0."""
    if previous == 0:
        return 0.0
    return (current - previous) / previous * 100


# --- Expressions ---


def aggregate(
    store: EventStorePort,
    predicate: Predicate,
    aggregation: Aggregation,
    measure: str = "value",
) -> Expression:
    """A single aggregate over the window; 0 when nothing matched."""

    async def evaluate(window: TimeWindow) -> float:
        rows = await store.aggregate(
            RangeQuery(
                predicate=predicate,
                window=window,
                aggregation=aggregation,
                measure=measure,
            )
        )
        return rows[0].value if rows else 0.0

    return evaluate


def aggregate_by(
    store: EventStorePort,
    predicate: Predicate,
    aggregation: Aggregation,
    key: str,
) -> KeyedExpression:
    """An aggregate per distinct value of ``key``; empty keys are dropped."""

    async def evaluate(window: TimeWindow) -> dict[str, float]:
        rows = await store.aggregate(
            RangeQuery(
                predicate=predicate,
                window=window,
                aggregation=aggregation,
                group_by=(key,),
            )
        )
        return {row.group[0]: row.value for row in rows if row.group[0]}

    return evaluate


def ratio(numerator: Expression, denominator: Expression) -> Expression:
    """``numerator / denominator`` with ``x / 0 -> 0``."""

    async def evaluate(window: TimeWindow) -> float:
        top, bottom = await asyncio.gather(numerator(window), denominator(window))
        return top / bottom if bottom else 0.0

    return evaluate


def scaled(expression: Expression, factor: float) -> Expression:
    async def evaluate(window: TimeWindow) -> float:
        return await expression(window) * factor

    return evaluate


def scaled_by(expression: KeyedExpression, factor: float) -> KeyedExpression:
    async def evaluate(window: TimeWindow) -> dict[str, float]:
        return {key: value * factor for key, value in (await expression(window)).items()}

    return evaluate


def per_second(expression: Expression) -> Expression:
    """Divide by the window length in seconds."""

    async def evaluate(window: TimeWindow) -> float:
        value = await expression(window)
        return value / window.seconds if window.seconds else 0.0

    return evaluate


class PeriodComparator:
    """Evaluates expressions over the two halves of a lookback window."""

    def __init__(self, now: float, minutes: int) -> None:
        self.previous_window, self.current_window = split_windows(now, minutes)

    async def compare(self, expression: Expression) -> PeriodComparison:
        current, previous = await asyncio.gather(
            expression(self.current_window), expression(self.previous_window)
        )
        return PeriodComparison(
            current=current,
            previous=previous,
            delta_percent=percent_change(current, previous),
        )

    async def compare_keyed(
        self, expression: KeyedExpression
    ) -> dict[str, PeriodComparison]:
        """Compare per key. A key missing from one half counts as 0 there."""
        current, previous = await asyncio.gather(
            expression(self.current_window), expression(self.previous_window)
        )
        result = {}
        for key in sorted(current.keys() | previous.keys()):
            now_value = current.get(key, 0.0)
            then_value = previous.get(key, 0.0)
            result[key] = PeriodComparison(
                current=now_value,
                previous=then_value,
                delta_percent=percent_change(now_value, then_value),
            )
        return result


# Hotspot resources: (resource, label, metric names, aggregation, scale)
_HOTSPOT_RESOURCES: tuple[tuple[str, str, tuple[str, ...], Aggregation, float], ...] = (
    ("CPU", "CPU Usage", (names.NODE_CPU_USAGE,), Aggregation.MAX, 1.0),
    ("MEM", "Memory Usage", (names.NODE_MEMORY_USAGE,), Aggregation.MAX, 1.0),
    ("DISK", "Disk Usage", (names.NODE_DISK_USAGE,), Aggregation.MAX, 1.0),
    (
        "NET",
        "Network I/O",
        (names.NODE_NET_RECEIVED, names.NODE_NET_TRANSMITTED),
        Aggregation.SUM,
        1 / MIB,
    ),
    ("GPU", "GPU Usage", (names.NODE_GPU_UTILIZATION,), Aggregation.MAX, 1.0),
)


class DashboardRollups:
    """Headline dashboard figures, each paired with its period change."""

    def __init__(
        self,
        store: EventStorePort,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._settings = settings or Settings()
        self._clock = clock

    def _metric(self, account_id: int, *metric_names: str) -> FilterBuilder:
        builder = FilterBuilder(account_id)
        if len(metric_names) == 1:
            return builder.where("metric_name", metric_names[0])
        return builder.where_any("metric_name", metric_names)

    async def dashboard_summary(self, account_id: int, minutes: int) -> DashboardSummary:
        comparator = PeriodComparator(self._clock(), minutes)
        everything = FilterBuilder(account_id).build()
        requests = self._metric(account_id, names.HTTP_REQUESTS_TOTAL).build()
        server_errors = (
            self._metric(account_id, names.HTTP_REQUESTS_TOTAL)
            .where(names.STATUS_LABEL, "500")
            .build()
        )
        durations = self._metric(account_id, names.HTTP_REQUEST_DURATION).build()
        log_messages = self._metric(account_id, names.LOG_MESSAGES_TOTAL).build()

        expressions = (
            aggregate(self._store, everything, Aggregation.UNIQ, "service_name"),
            ratio(
                aggregate(self._store, server_errors, Aggregation.COUNT),
                aggregate(self._store, requests, Aggregation.COUNT),
            ),
            scaled(aggregate(self._store, durations, Aggregation.AVG), 1000),
            aggregate(self._store, log_messages, Aggregation.SUM),
            aggregate(self._store, requests, Aggregation.SUM),
            scaled(aggregate(self._store, everything, Aggregation.SUM, "bytes"), 1 / GIB),
        )
        async with deadline(self._settings.query_timeout_seconds):
            results = await asyncio.gather(*(comparator.compare(e) for e in expressions))
        active, errors, latency, logs, throughput, data = results
        return DashboardSummary(
            active_services=active,
            error_rate=errors,
            avg_latency=latency,
            log_volume=logs,
            throughput=throughput,
            data_ingested=data,
        )

    async def system_performance(
        self, account_id: int, minutes: int, host_name: str | None = None
    ) -> SystemPerformance:
        """Average node utilization and network throughput in MB/s."""
        comparator = PeriodComparator(self._clock(), minutes)

        def node(*metric_names: str) -> Predicate:
            builder = self._metric(account_id, *metric_names)
            if host_name:
                builder.where("host_name", host_name)
            return builder.build()

        network = node(names.NODE_NET_RECEIVED, names.NODE_NET_TRANSMITTED)
        expressions = (
            aggregate(self._store, node(names.NODE_CPU_USAGE), Aggregation.AVG),
            aggregate(self._store, node(names.NODE_MEMORY_USAGE), Aggregation.AVG),
            per_second(
                scaled(aggregate(self._store, network, Aggregation.SUM), 1 / MIB)
            ),
            aggregate(self._store, node(names.NODE_DISK_USAGE), Aggregation.AVG),
        )
        async with deadline(self._settings.query_timeout_seconds):
            cpu, memory, net, disk = await asyncio.gather(
                *(comparator.compare(e) for e in expressions)
            )
        return SystemPerformance(
            cpu_usage=cpu, memory_usage=memory, network_io=net, disk_usage=disk
        )

    async def infra_hotspots(self, account_id: int, minutes: int) -> list[InfraHotspot]:
        """Top hosts per resource by current value.

        Each resource has its own deadline. A resource whose query fails or
        times out is logged and left out; the others are still returned.
        """
        comparator = PeriodComparator(self._clock(), minutes)

        async def hotspots_for(
            resource: str,
            label: str,
            metric_names: tuple[str, ...],
            aggregation: Aggregation,
            factor: float,
        ) -> list[InfraHotspot]:
            predicate = self._metric(account_id, *metric_names).build()
            expression = aggregate_by(self._store, predicate, aggregation, "host_name")
            if factor != 1.0:
                expression = scaled_by(expression, factor)
            try:
                async with deadline(self._settings.query_timeout_seconds):
                    by_host = await comparator.compare_keyed(expression)
            except DataSourceError:
                logger.warning(
                    "Skipping %s hotspots for account %s", resource, account_id,
                    exc_info=True,
                )
                return []
            ranked = sorted(by_host.items(), key=lambda item: (-item[1].current, item[0]))
            return [
                InfraHotspot(
                    host_name=host,
                    resource=resource,
                    metric=label,
                    value=comparison.current,
                    change=comparison.delta_percent,
                )
                for host, comparison in ranked[:HOTSPOTS_PER_RESOURCE]
            ]

        per_resource = await asyncio.gather(
            *(hotspots_for(*entry) for entry in _HOTSPOT_RESOURCES)
        )
        return [hotspot for hotspots in per_resource for hotspot in hotspots]
