"""Service health and SLO rollup.

Per-service aggregates from the metric stream and the trace stream are
merged into one row per service (a left join keyed off the metric side),
then classified into a health status and an SLO compliance block. Rows are
recomputed in full on every request.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from obsfly.config import Settings
from obsfly.core import metric_names as names
from obsfly.core.comparator import MIB, aggregate, aggregate_by
from obsfly.core.deadline import deadline
from obsfly.core.exceptions import InvalidQueryError
from obsfly.core.filters import FilterBuilder, Predicate
from obsfly.core.models import (
    Aggregation,
    EventKind,
    InfraHealth,
    ServiceDetail,
    ServiceHealthRow,
    ServiceSLO,
    ServicesPage,
    TimeWindow,
    TraceStats,
)
from obsfly.core.ports import (
    EventStorePort,
    RangeQuery,
    ServiceMetricsRow,
    ServiceTraceRow,
)
from obsfly.core.timeparse import lookback_window

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"

SLO_MEETING = "meeting"
SLO_WARNING = "warning"
SLO_BREACHING = "breaching"
SLO_ALL = "all"

INFRA_GREEN = "GREEN"
INFRA_YELLOW = "YELLOW"
INFRA_RED = "RED"


@dataclass(frozen=True)
class HealthThresholds:
    """Policy constants for health status, SLO and host pressure.

    Every comparison is strict: a service exactly at a threshold stays in
    the better class.
    """

    critical_error_rate: float = 5.0
    critical_latency_ms: float = 1000.0
    warning_error_rate: float = 1.0
    warning_latency_ms: float = 500.0

    availability_baseline: float = 99.9
    latency_compliance_full: float = 100.0
    latency_compliance_degraded: float = 95.0
    latency_compliance_poor: float = 85.0

    slo_warning_success_rate: float = 99.0
    slo_warning_availability: float = 99.0
    slo_warning_latency_compliance: float = 95.0
    slo_breaching_success_rate: float = 95.0
    slo_breaching_availability: float = 95.0
    slo_breaching_latency_compliance: float = 90.0

    host_red_memory: float = 95.0
    host_red_cpu: float = 90.0
    host_red_disk: float = 95.0
    host_yellow_memory: float = 80.0
    host_yellow_cpu: float = 70.0
    host_yellow_disk: float = 80.0


DEFAULT_THRESHOLDS = HealthThresholds()


def service_status(
    error_rate: float,
    p95_latency_ms: float,
    thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
) -> str:
    if (
        error_rate > thresholds.critical_error_rate
        or p95_latency_ms > thresholds.critical_latency_ms
    ):
        return CRITICAL
    if (
        error_rate > thresholds.warning_error_rate
        or p95_latency_ms > thresholds.warning_latency_ms
    ):
        return WARNING
    return HEALTHY


def calculate_slo(
    error_rate: float,
    p95_latency_ms: float,
    request_rate: float,
    thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
) -> ServiceSLO:
    """Derive the SLO block from the service's headline figures.

    Availability is the fixed baseline unless the service served no
    requests. Latency compliance steps down past the warning and critical
    latency thresholds.
    """
    success_rate = 100 - error_rate
    availability = 0.0 if request_rate == 0 else thresholds.availability_baseline

    latency_compliance = thresholds.latency_compliance_full
    if p95_latency_ms > thresholds.critical_latency_ms:
        latency_compliance = thresholds.latency_compliance_poor
    elif p95_latency_ms > thresholds.warning_latency_ms:
        latency_compliance = thresholds.latency_compliance_degraded

    if (
        success_rate < thresholds.slo_breaching_success_rate
        or availability < thresholds.slo_breaching_availability
        or latency_compliance < thresholds.slo_breaching_latency_compliance
    ):
        status = SLO_BREACHING
    elif (
        success_rate < thresholds.slo_warning_success_rate
        or availability < thresholds.slo_warning_availability
        or latency_compliance < thresholds.slo_warning_latency_compliance
    ):
        status = SLO_WARNING
    else:
        status = SLO_MEETING

    return ServiceSLO(
        availability=availability,
        success_rate=success_rate,
        latency_compliance=latency_compliance,
        status=status,
    )


def runtime_metrics(row: ServiceMetricsRow, window_seconds: float) -> dict[str, float]:
    """Runtime gauges the service actually reported with a non-zero value."""
    exception_rate = None
    if row.dotnet_exceptions_total is not None and window_seconds:
        exception_rate = row.dotnet_exceptions_total / window_seconds * 60
    candidates = {
        "jvm_heap_usage_percent": row.jvm_heap_usage_percent,
        "jvm_gc_time_ms": row.jvm_gc_time_ms,
        "nodejs_event_loop_lag_ms": row.nodejs_event_loop_lag_ms,
        "python_thread_lock_wait_ms": row.python_thread_lock_wait_ms,
        "dotnet_exception_rate": exception_rate,
        "dotnet_heap_fragmentation": row.dotnet_heap_fragmentation,
    }
    return {key: value for key, value in candidates.items() if value}


def build_row(
    metrics: ServiceMetricsRow,
    traces: ServiceTraceRow | None,
    window_seconds: float,
    thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
) -> ServiceHealthRow:
    """Join one service's metric-side and trace-side aggregates."""
    request_rate = (
        metrics.request_total / window_seconds * 60 if window_seconds else 0.0
    )
    error_rate = (
        metrics.error_count / metrics.request_count * 100
        if metrics.request_count
        else 0.0
    )
    p95 = metrics.p95_latency_ms
    trace_stats = (
        TraceStats(
            total_count=traces.total_count,
            avg_duration_ms=traces.avg_duration_ms,
            error_count=traces.error_count,
        )
        if traces is not None
        else TraceStats()
    )
    return ServiceHealthRow(
        service_name=metrics.service_name,
        language=metrics.language,
        instances=metrics.instances,
        request_rate=request_rate,
        error_rate=error_rate,
        p95_latency=p95,
        status=service_status(error_rate, p95, thresholds),
        slo=calculate_slo(error_rate, p95, request_rate, thresholds),
        runtime_metrics=runtime_metrics(metrics, window_seconds),
        traces=trace_stats,
        last_seen=metrics.last_seen,
    )


def merge_service_rows(
    metric_rows: list[ServiceMetricsRow],
    trace_rows: list[ServiceTraceRow],
    window_seconds: float,
    thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
) -> list[ServiceHealthRow]:
    """Left outer join keyed off the metric side.

    Services with traces but no metrics are dropped; services with metrics
    but no traces get zeroed trace stats.
    """
    traces_by_service = {row.service_name: row for row in trace_rows}
    return [
        build_row(row, traces_by_service.get(row.service_name), window_seconds, thresholds)
        for row in metric_rows
    ]


def infra_status(
    cpu_pressure: float,
    mem_pressure: float,
    thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
    disk_pressure: float = 0.0,
) -> str:
    if (
        mem_pressure > thresholds.host_red_memory
        or cpu_pressure > thresholds.host_red_cpu
        or disk_pressure > thresholds.host_red_disk
    ):
        return INFRA_RED
    if (
        mem_pressure > thresholds.host_yellow_memory
        or cpu_pressure > thresholds.host_yellow_cpu
        or disk_pressure > thresholds.host_yellow_disk
    ):
        return INFRA_YELLOW
    return INFRA_GREEN


_SORT_KEYS: dict[str, Callable[[ServiceHealthRow], Any]] = {
    "name": lambda row: row.service_name,
    "language": lambda row: row.language,
    "instances": lambda row: row.instances,
    "request_rate": lambda row: row.request_rate,
    "error_rate": lambda row: row.error_rate,
    "p95_latency": lambda row: row.p95_latency,
    "last_seen": lambda row: row.last_seen,
}


@dataclass(frozen=True)
class ServicesQuery:
    """Filters, sort and page for the services list.

    Attributes:
        language: Keep services whose reported language equals this.
        host_name: Only read metric points emitted by this host.
        search: Only read services whose name contains this substring.
        slo_status: ``meeting``, ``warning`` or ``breaching``; ``all`` or
            empty keeps every service.
        status: ``healthy``, ``warning`` or ``critical``; empty keeps all.
        sort_by: One of the ``_SORT_KEYS``; unknown values sort by name.
        sort_order: ``asc`` or ``desc``.
        page: 1-indexed page number.
        page_size: Rows per page.
    """

    language: str = ""
    host_name: str = ""
    search: str = ""
    slo_status: str = ""
    status: str = ""
    sort_by: str = "name"
    sort_order: str = "asc"
    page: int = 1
    page_size: int = 20


class ServiceHealthRollup:
    """Computes per-service health rows and per-host pressure."""

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

    async def rows(
        self, account_id: int, minutes: int, query: ServicesQuery | None = None
    ) -> list[ServiceHealthRow]:
        """One health row per service seen in the window, ordered by name."""
        query = query or ServicesQuery()
        window = lookback_window(self._clock(), minutes)

        metric_filter = FilterBuilder(account_id, EventKind.METRIC)
        trace_filter = FilterBuilder(account_id, EventKind.TRACE)
        if query.host_name:
            metric_filter.where("host_name", query.host_name)
        if query.search:
            metric_filter.where_contains("service_name", query.search)
            trace_filter.where_contains("service_name", query.search)

        async with deadline(self._settings.query_timeout_seconds):
            metric_rows, trace_rows = await asyncio.gather(
                self._store.service_metrics(metric_filter.build(), window),
                self._store.service_traces(trace_filter.build(), window),
            )
        logger.debug(
            "Merging %d metric rows with %d trace rows for account %s",
            len(metric_rows),
            len(trace_rows),
            account_id,
        )
        rows = merge_service_rows(
            metric_rows, trace_rows, window.seconds, self._thresholds
        )
        return [row for row in rows if self._keep(row, query)]

    @staticmethod
    def _keep(row: ServiceHealthRow, query: ServicesQuery) -> bool:
        if query.language and row.language != query.language:
            return False
        if query.slo_status and query.slo_status != SLO_ALL:
            if row.slo.status != query.slo_status:
                return False
        if query.status and row.status != query.status:
            return False
        return True

    async def services_page(
        self, account_id: int, minutes: int, query: ServicesQuery
    ) -> ServicesPage:
        """Filtered, sorted and paginated services list.

        ``total_count`` counts the rows surviving every filter, before
        pagination.
        """
        rows = await self.rows(account_id, minutes, query)
        sort_key = _SORT_KEYS.get(query.sort_by, _SORT_KEYS["name"])
        descending = query.sort_order.lower() == "desc"
        # Name breaks ties so equal sort values keep a stable order
        rows.sort(key=lambda row: row.service_name)
        rows.sort(key=sort_key, reverse=descending)

        page = max(query.page, 1)
        page_size = max(query.page_size, 1)
        offset = (page - 1) * page_size
        return ServicesPage(
            services=rows[offset : offset + page_size],
            total_count=len(rows),
            page=page,
            page_size=page_size,
        )

    async def service_detail(
        self, account_id: int, service_name: str, minutes: int
    ) -> ServiceDetail:
        """Headline figures of one service.

        Unlike the services list, the status here is driven by the mean
        response time rather than the p95. A service with no points gets
        zeroed figures and version "unknown".
        """
        if not service_name:
            raise InvalidQueryError("service name is required")
        window = lookback_window(self._clock(), minutes)

        def service(metric_name: str = "") -> Predicate:
            builder = FilterBuilder(account_id).where("service_name", service_name)
            if metric_name:
                builder.where("metric_name", metric_name)
            return builder.build()

        async with deadline(self._settings.query_timeout_seconds):
            rows, duration, versions, uptime, memory = await asyncio.gather(
                self._store.service_metrics(service(), window),
                aggregate(
                    self._store, service(names.HTTP_REQUEST_DURATION), Aggregation.AVG
                )(window),
                aggregate_by(
                    self._store,
                    service(names.CONTAINER_INFO),
                    Aggregation.COUNT,
                    names.VERSION_LABEL,
                )(window),
                aggregate(
                    self._store, service(names.CONTAINER_UPTIME), Aggregation.MAX
                )(window),
                aggregate(
                    self._store, service(names.CONTAINER_MEMORY_RSS), Aggregation.MAX
                )(window),
            )

        row = rows[0] if rows else None
        requests = row.request_total if row else 0.0
        error_rate = (
            row.error_count / row.request_count * 100
            if row and row.request_count
            else 0.0
        )
        avg_response_time = duration * 1000
        # Most reported version wins; ties go to the smallest name
        version = min(versions, key=lambda v: (-versions[v], v), default="unknown")
        return ServiceDetail(
            service_name=service_name,
            avg_response_time=avg_response_time,
            request_rate=requests / window.seconds * 60 if window.seconds else 0.0,
            error_rate=error_rate,
            throughput=requests / window.seconds if window.seconds else 0.0,
            instances=row.instances if row else 0,
            version=version,
            uptime_hours=uptime / 3600,
            memory_usage_mib=memory / MIB,
            status=service_status(error_rate, avg_response_time, self._thresholds),
        )

    async def infra_health(self, account_id: int, minutes: int) -> list[InfraHealth]:
        """Average CPU and memory pressure per host, with a traffic light."""
        window = lookback_window(self._clock(), minutes)
        async with deadline(self._settings.query_timeout_seconds):
            cpu, memory = await asyncio.gather(
                self._avg_by_host(account_id, names.NODE_CPU_USAGE, window),
                self._avg_by_host(account_id, names.NODE_MEMORY_USAGE, window),
            )
        result = []
        for host in sorted(cpu.keys() | memory.keys()):
            cpu_pressure = cpu.get(host, 0.0)
            mem_pressure = memory.get(host, 0.0)
            result.append(
                InfraHealth(
                    host_name=host,
                    cpu_pressure=cpu_pressure,
                    mem_pressure=mem_pressure,
                    status=infra_status(cpu_pressure, mem_pressure, self._thresholds),
                )
            )
        return result

    async def _avg_by_host(
        self, account_id: int, metric_name: str, window: TimeWindow
    ) -> dict[str, float]:
        predicate = FilterBuilder(account_id).where("metric_name", metric_name).build()
        rows = await self._store.aggregate(
            RangeQuery(
                predicate=predicate,
                window=window,
                aggregation=Aggregation.AVG,
                group_by=("host_name",),
            )
        )
        return {row.group[0]: row.value for row in rows if row.group[0]}
