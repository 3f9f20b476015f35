"""Core domain models for telemetry events and derived query results."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    """The four concrete telemetry streams held by the event store."""

    METRIC = "metric"
    LOG = "log"
    TRACE = "trace"
    PROFILE = "profile"


class Aggregation(str, Enum):
    """Aggregation functions understood by the event store.

    ``UNIQ`` counts distinct values of a dimension and is only used by
    rollups; metric queries use the other eight.
    """

    AVG = "avg"
    SUM = "sum"
    MIN = "min"
    MAX = "max"
    COUNT = "count"
    P50 = "p50"
    P95 = "p95"
    P99 = "p99"
    UNIQ = "uniq"

    @classmethod
    def parse(cls, keyword: str | None) -> "Aggregation":
        """Parse an aggregation keyword, falling back to AVG when unknown."""
        if not keyword:
            return cls.AVG
        try:
            return cls(keyword.strip().lower())
        except ValueError:
            return cls.AVG

    @property
    def quantile(self) -> float | None:
        """Quantile level for percentile aggregations, else None."""
        return _QUANTILES.get(self)

    @property
    def is_percentile(self) -> bool:
        return self in _QUANTILES


_QUANTILES = {
    Aggregation.P50: 0.50,
    Aggregation.P95: 0.95,
    Aggregation.P99: 0.99,
}


# --- Telemetry events ---


@dataclass(frozen=True, kw_only=True)
class TelemetryEvent:
    """Fields shared by every telemetry event.

    Attributes:
        account_id: Owning account. Every query is scoped by it.
        timestamp: Unix timestamp in seconds.
        service_name: Emitting service.
        host_name: Emitting host.
        labels: Event-specific dimensions (e.g. ``status``, ``device``).
        resource_attributes: Emitter context (e.g. ``k8s.pod.name``).
        retention_days: Days the event stays queryable after ``timestamp``.
        bytes: Ingested size, used for data-volume rollups.
    """

    account_id: int
    timestamp: float
    service_name: str = ""
    host_name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    resource_attributes: dict[str, str] = field(default_factory=dict)
    retention_days: int = 30
    bytes: int = 0

    def expires_at(self) -> float:
        """Unix timestamp after which the event is no longer queryable."""
        return self.timestamp + self.retention_days * 86400


@dataclass(frozen=True, kw_only=True)
class MetricPoint(TelemetryEvent):
    """A single metric measurement."""

    name: str
    value: float
    metric_type: str = "gauge"


@dataclass(frozen=True, kw_only=True)
class LogRecord(TelemetryEvent):
    """A structured log record."""

    severity_text: str = "INFO"
    body: str = ""
    trace_id: str = ""


@dataclass(frozen=True, kw_only=True)
class TraceSpan(TelemetryEvent):
    """A single span. ``status_code`` follows OTel: 0 unset, 1 OK, 2 error."""

    trace_id: str
    span_id: str
    name: str
    start_time_unix_nano: int
    end_time_unix_nano: int
    parent_span_id: str = ""
    status_code: int = 0

    @property
    def duration_ms(self) -> float:
        return (self.end_time_unix_nano - self.start_time_unix_nano) / 1_000_000


@dataclass(frozen=True, kw_only=True)
class ProfileSample(TelemetryEvent):
    """One stack sample. ``function_names`` is ordered root to leaf."""

    profile_type: str
    function_names: tuple[str, ...]
    sample_value: int
    runtime: str = ""
    sample_count: int = 1


EVENT_TYPES: dict[EventKind, type[TelemetryEvent]] = {
    EventKind.METRIC: MetricPoint,
    EventKind.LOG: LogRecord,
    EventKind.TRACE: TraceSpan,
    EventKind.PROFILE: ProfileSample,
}

# Dimension name -> event attribute, per stream. Dimensions not listed here
# resolve to labels (or resource attributes with the ``resource.`` prefix).
FIELD_DIMENSIONS: dict[EventKind, dict[str, str]] = {
    EventKind.METRIC: {
        "service_name": "service_name",
        "host_name": "host_name",
        "metric_name": "name",
        "metric_type": "metric_type",
    },
    EventKind.LOG: {
        "service_name": "service_name",
        "host_name": "host_name",
        "severity_text": "severity_text",
    },
    EventKind.TRACE: {
        "service_name": "service_name",
        "host_name": "host_name",
        "span_name": "name",
        "trace_id": "trace_id",
    },
    EventKind.PROFILE: {
        "service_name": "service_name",
        "host_name": "host_name",
        "profile_type": "profile_type",
        "runtime": "runtime",
    },
}

# Numeric attributes a range query may aggregate, per stream.
MEASURES: dict[EventKind, tuple[str, ...]] = {
    EventKind.METRIC: ("value", "bytes"),
    EventKind.LOG: ("bytes",),
    EventKind.TRACE: ("bytes", "duration_ms"),
    EventKind.PROFILE: ("bytes", "sample_value", "sample_count"),
}


@dataclass(frozen=True)
class TimeWindow:
    """Half-open time range ``(start, end]`` in unix seconds."""

    start: float
    end: float

    def contains(self, timestamp: float) -> bool:
        return self.start < timestamp <= self.end

    @property
    def seconds(self) -> float:
        return self.end - self.start


# --- Metric queries ---


@dataclass(frozen=True)
class MetricQuery:
    """One independent metric query.

    Attributes:
        metric_name: Metric to read.
        aggregation: Per-bucket aggregation function.
        group_by: Ordered label keys splitting the result into series.
        filters: Label -> exact value. Every key must be present to match.
        alias: Display name for the resulting series.
    """

    metric_name: str
    aggregation: Aggregation = Aggregation.AVG
    group_by: tuple[str, ...] = ()
    filters: dict[str, str] = field(default_factory=dict)
    alias: str = ""

    @property
    def series_name(self) -> str:
        return self.alias or self.metric_name

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MetricQuery":
        """Build a query from a decoded JSON object.

        Unknown aggregation keywords become AVG. Filter values are
        stringified since labels are string maps.
        """
        filters = data.get("filters") or {}
        return cls(
            metric_name=str(data.get("metric_name") or ""),
            aggregation=Aggregation.parse(data.get("aggregation")),
            group_by=tuple(str(key) for key in data.get("group_by") or ()),
            filters={str(k): str(v) for k, v in filters.items()},
            alias=str(data.get("alias") or ""),
        )


@dataclass(frozen=True)
class MetricQueryRequest:
    """A batch of metric queries resolved against one window."""

    account_id: int
    metrics: tuple[MetricQuery, ...]
    time_range: str = ""
    interval: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MetricQueryRequest":
        return cls(
            account_id=int(data.get("account_id") or 0),
            metrics=tuple(MetricQuery.from_dict(m) for m in data.get("metrics") or ()),
            time_range=str(data.get("time_range") or ""),
            interval=str(data.get("interval") or ""),
        )


@dataclass(frozen=True)
class DataPoint:
    """A single bucketed value."""

    timestamp: float
    value: float


@dataclass(frozen=True)
class SeriesStats:
    """Summary statistics over a series' own data points (zeros when empty)."""

    avg: float = 0.0
    min: float = 0.0
    max: float = 0.0
    sum: float = 0.0
    count: int = 0


@dataclass(frozen=True)
class MetricSeries:
    """A labeled time series produced by one MetricQuery."""

    name: str
    labels: dict[str, str]
    data_points: list[DataPoint]
    stats: SeriesStats = field(default_factory=SeriesStats)


@dataclass(frozen=True)
class MetricQueryResponse:
    series: list[MetricSeries]


# --- Period comparisons ---


@dataclass(frozen=True)
class PeriodComparison:
    """A metric over the current half-window and its change vs the previous."""

    current: float
    previous: float
    delta_percent: float


@dataclass(frozen=True)
class DashboardSummary:
    active_services: PeriodComparison
    error_rate: PeriodComparison
    avg_latency: PeriodComparison
    log_volume: PeriodComparison
    throughput: PeriodComparison
    data_ingested: PeriodComparison


@dataclass(frozen=True)
class SystemPerformance:
    cpu_usage: PeriodComparison
    memory_usage: PeriodComparison
    network_io: PeriodComparison
    disk_usage: PeriodComparison


@dataclass(frozen=True)
class InfraHotspot:
    """A top resource consumer and its percent change.

    Attributes:
        host_name: Host consuming the resource.
        resource: One of CPU, MEM, DISK, NET, GPU.
        metric: Human readable resource label.
        value: Current-period value.
        change: Percent change vs the previous period.
    """

    host_name: str
    resource: str
    metric: str
    value: float
    change: float


# --- Service health ---


@dataclass(frozen=True)
class ServiceSLO:
    availability: float
    success_rate: float
    latency_compliance: float
    status: str


@dataclass(frozen=True)
class TraceStats:
    total_count: int = 0
    avg_duration_ms: float = 0.0
    error_count: int = 0


@dataclass(frozen=True)
class ServiceHealthRow:
    """One row per service seen in the window. Recomputed on every request."""

    service_name: str
    language: str
    instances: int
    request_rate: float
    error_rate: float
    p95_latency: float
    status: str
    slo: ServiceSLO
    runtime_metrics: dict[str, float]
    traces: TraceStats
    last_seen: float


@dataclass(frozen=True)
class ServicesPage:
    services: list[ServiceHealthRow]
    total_count: int
    page: int
    page_size: int


@dataclass(frozen=True)
class InfraHealth:
    host_name: str
    cpu_pressure: float
    mem_pressure: float
    status: str


@dataclass(frozen=True)
class ServiceDetail:
    """Headline figures of one service over the lookback.

    Attributes:
        avg_response_time: Mean request duration in milliseconds.
        request_rate: Requests per minute.
        error_rate: Percentage of requests with a status of 400 or above.
        throughput: Requests per second.
        instances: Distinct pods reporting for the service.
        version: ``version`` label of ``container_info``, or "unknown".
        uptime_hours: Longest reported container uptime.
        memory_usage_mib: Largest reported resident set size.
        status: ``healthy``, ``warning`` or ``critical``.
    """

    service_name: str
    avg_response_time: float
    request_rate: float
    error_rate: float
    throughput: float
    instances: int
    version: str
    uptime_hours: float
    memory_usage_mib: float
    status: str


# --- Traces and logs ---


@dataclass(frozen=True)
class TraceSummary:
    """One span as listed in the slow and per-service trace tables."""

    trace_id: str
    span_id: str
    service_name: str
    operation: str
    duration_ms: float
    status_code: int
    timestamp: float


@dataclass(frozen=True)
class LogVolume:
    level: str
    count: int


@dataclass(frozen=True)
class LogPattern:
    """Log records sharing a body prefix and a severity."""

    sample: str
    level: str
    count: int


# --- Infrastructure nodes ---


@dataclass(frozen=True)
class NodeSummary:
    """Latest resource figures of one host.

    Attributes:
        memory_total: Largest reported memory size in bytes.
        memory_free: Mean free memory in bytes.
        network_transmit: Bytes sent in the window.
        network_receive: Bytes received in the window.
        uptime: Longest reported uptime in seconds.
        status: ``GREEN``, ``YELLOW`` or ``RED``.
        network_up: False when the host moved no bytes at all.
    """

    host_name: str
    cpu_usage: float
    memory_total: float
    memory_free: float
    memory_usage_percent: float
    disk_usage_percent: float
    network_transmit: float
    network_receive: float
    uptime: float
    status: str
    network_up: bool


@dataclass(frozen=True)
class NodeChange:
    cpu_usage: PeriodComparison
    memory_usage: PeriodComparison
    disk_usage: PeriodComparison
    network_receive: PeriodComparison
    network_transmit: PeriodComparison


# --- Profiles ---


@dataclass(frozen=True)
class ProfileSession:
    """Samples of one profile capture: same instant, service, type and runtime."""

    timestamp: float
    service_name: str
    profile_type: str
    runtime: str
    host_name: str
    sample_count: int


@dataclass(frozen=True)
class ProfilesPage:
    profiles: list[ProfileSession]
    total_count: int
    page: int
    page_size: int


@dataclass(frozen=True)
class CostEstimate:
    """Storage footprint of profiles and what keeping it costs.

    Attributes:
        total_storage_gb: Ingested profile bytes in GiB.
        daily_cost_usd: Storage price spread over a 30 day month.
        retention_cost_usd: Storage price for one month.
        profile_type_costs: GiB per profile type.
        sample_distribution: Samples per profile type.
    """

    total_storage_gb: float
    daily_cost_usd: float
    retention_cost_usd: float
    profile_type_costs: dict[str, float]
    sample_distribution: dict[str, int]


# --- Flamegraph ---


@dataclass
class FlamegraphNode:
    """A node of the weighted call tree.

    Attributes:
        name: Frame name; identifies the node among its siblings.
        value: Self weight (samples where this frame was the leaf).
        total: Self weight plus the weight of every descendant.
        children: Child frames in first-seen order.
    """

    name: str
    value: int = 0
    total: int = 0
    children: list["FlamegraphNode"] = field(default_factory=list)
    file: str = ""
    line: int = 0

    def child(self, name: str) -> "FlamegraphNode":
        """Return the child named ``name``, creating it if missing."""
        for node in self.children:
            if node.name == name:
                return node
        node = FlamegraphNode(name=name)
        self.children.append(node)
        return node


# --- Discovery ---


@dataclass(frozen=True)
class MetricName:
    name: str
    metric_type: str
    sample_count: int


@dataclass(frozen=True)
class MetricLabel:
    key: str
    value_count: int
    sample_values: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class LabelValue:
    value: str
    count: int
