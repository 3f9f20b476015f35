"""Port interfaces for event store adapters.

These protocols define the contracts that store adapters must implement.
The engine depends only on these interfaces and on the typed rows below,
never on a concrete store.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from obsfly.core.filters import Predicate
from obsfly.core.models import (
    Aggregation,
    EventKind,
    LabelValue,
    LogPattern,
    MetricName,
    ProfileSession,
    TelemetryEvent,
    TimeWindow,
    TraceSummary,
)


@dataclass(frozen=True)
class RangeQuery:
    """One grouped aggregate over the stream the predicate targets.

    Attributes:
        predicate: Account-scoped filter; its kind selects the stream.
        window: Time range ``(start, end]``.
        aggregation: Function applied to ``measure`` per group.
        group_by: Ordered dimension names; absent values group as "".
        bucket_seconds: Width of the aligned time bucket, or None for a
            single bucket spanning the window.
        measure: Numeric attribute aggregated, one of ``MEASURES`` for the
            stream. For ``Aggregation.UNIQ`` a dimension name whose
            distinct values are counted. Ignored by ``Aggregation.COUNT``.
    """

    predicate: Predicate
    window: TimeWindow
    aggregation: Aggregation
    group_by: tuple[str, ...] = ()
    bucket_seconds: int | None = None
    measure: str = "value"


@dataclass(frozen=True)
class AggregateRow:
    """One ``(bucket, group)`` cell of a range query."""

    bucket: float | None
    group: tuple[str, ...]
    value: float


@dataclass(frozen=True)
class ServiceMetricsRow:
    """Per-service aggregates from the metric stream.

    Runtime gauges are None when the service never reported them.
    """

    service_name: str
    language: str
    instances: int
    request_total: float
    request_count: int
    error_count: int
    p95_latency_ms: float
    last_seen: float
    jvm_heap_usage_percent: float | None = None
    jvm_gc_time_ms: float | None = None
    nodejs_event_loop_lag_ms: float | None = None
    python_thread_lock_wait_ms: float | None = None
    dotnet_exceptions_total: float | None = None
    dotnet_heap_fragmentation: float | None = None


@dataclass(frozen=True)
class ServiceTraceRow:
    """Per-service aggregates from the trace stream."""

    service_name: str
    total_count: int
    avg_duration_ms: float
    error_count: int


@dataclass(frozen=True)
class StackSample:
    """A call stack (root to leaf) and its sample value."""

    function_names: tuple[str, ...]
    value: int


@dataclass(frozen=True)
class LabelKeyRow:
    key: str
    count: int


@runtime_checkable
class EventStorePort(Protocol):
    """Port for the analytical event store.

    Every read takes an account-scoped predicate and raises
    ``MissingAccountScopeError`` otherwise. Store failures surface as
    ``DataSourceError``.
    Examples: SQLiteEventStore, InMemoryEventStore.
    """

    async def insert_batch(
        self, kind: EventKind, records: Sequence[TelemetryEvent]
    ) -> None:
        """Write a batch of events of one kind."""
        ...

    async def aggregate(self, query: RangeQuery) -> list[AggregateRow]:
        """Run one grouped range query.

        Returns:
            Rows ordered by bucket, then group tuple.
        """
        ...

    async def service_metrics(
        self, predicate: Predicate, window: TimeWindow
    ) -> list[ServiceMetricsRow]:
        """Per-service aggregates from the metric stream, ordered by name."""
        ...

    async def service_traces(
        self, predicate: Predicate, window: TimeWindow
    ) -> list[ServiceTraceRow]:
        """Per-service aggregates from the trace stream, ordered by name."""
        ...

    async def stack_samples(
        self, predicate: Predicate, window: TimeWindow, limit: int
    ) -> list[StackSample]:
        """Newest ``limit`` profile samples matching the predicate."""
        ...

    async def slowest_spans(
        self,
        predicate: Predicate,
        window: TimeWindow,
        min_duration_ms: float | None,
        limit: int,
    ) -> list[TraceSummary]:
        """Longest spans first, only those above ``min_duration_ms`` if set.

        Ties break by newest timestamp, then span id.
        """
        ...

    async def log_patterns(
        self, predicate: Predicate, window: TimeWindow, prefix_length: int, limit: int
    ) -> list[LogPattern]:
        """Log counts per ``(body prefix, severity)``, most frequent first."""
        ...

    async def profile_sessions(
        self, predicate: Predicate, window: TimeWindow
    ) -> list[ProfileSession]:
        """Profile samples grouped per capture, newest first."""
        ...

    async def metric_names(
        self, predicate: Predicate, window: TimeWindow
    ) -> list[MetricName]:
        """Distinct metric names with type and sample count, by name."""
        ...

    async def label_keys(
        self, predicate: Predicate, window: TimeWindow
    ) -> list[LabelKeyRow]:
        """Label keys and how many points carry them, most frequent first."""
        ...

    async def label_values(
        self, predicate: Predicate, key: str, window: TimeWindow, limit: int
    ) -> list[LabelValue]:
        """Distinct non-empty values of a label, most frequent first."""
        ...

    async def purge_expired(self, now: float) -> int:
        """Drop events past their retention. Returns the number dropped."""
        ...


@runtime_checkable
class SyncEventWriter(Protocol):
    """Port for synchronous writes from non-async contexts (logging)."""

    def insert_batch_sync(
        self, kind: EventKind, records: Sequence[TelemetryEvent]
    ) -> None:
        """Write a batch of events of one kind synchronously."""
        ...
