"""In-memory event store adapter.

Evaluates predicates and groupings in Python. Suitable for testing and
small deployments where persistence is not required.
"""

import math
from collections import Counter, defaultdict
from collections.abc import Callable, Iterable, Sequence

from obsfly.core import metric_names as names
from obsfly.core.exceptions import InvalidQueryError
from obsfly.core.filters import Grouping, Predicate, resolve_dimension
from obsfly.core.models import (
    EVENT_TYPES,
    MEASURES,
    Aggregation,
    EventKind,
    LabelValue,
    LogPattern,
    LogRecord,
    MetricName,
    MetricPoint,
    ProfileSample,
    ProfileSession,
    TelemetryEvent,
    TimeWindow,
    TraceSpan,
    TraceSummary,
)
from obsfly.core.ports import (
    AggregateRow,
    LabelKeyRow,
    RangeQuery,
    ServiceMetricsRow,
    ServiceTraceRow,
    StackSample,
)
from obsfly.core.timeparse import bucket_start


def nearest_rank(values: Iterable[float], quantile: float) -> float:
    """Nearest-rank quantile: the smallest value whose rank is >= q * n."""
    ordered = sorted(values)
    if not ordered:
        return 0.0
    rank = max(1, math.ceil(quantile * len(ordered)))
    return ordered[min(rank, len(ordered)) - 1]


def _mean(values: list[float]) -> float | None:
    return sum(values) / len(values) if values else None


def _status_code(point: MetricPoint) -> int:
    """The numeric ``status`` label; 0 unless it is all ASCII digits."""
    raw = point.labels.get(names.STATUS_LABEL, "")
    if raw.isascii() and raw.isdigit():
        return int(raw)
    return 0


class InMemoryEventStore:
    """In-memory implementation of EventStorePort.

    Stores events in one list per stream.
    """

    def __init__(self) -> None:
        self._events: dict[EventKind, list[TelemetryEvent]] = {
            kind: [] for kind in EventKind
        }

    # --- Writes ---

    def insert_batch_sync(
        self, kind: EventKind, records: Sequence[TelemetryEvent]
    ) -> None:
        """Write a batch of events of one kind."""
        expected = EVENT_TYPES[kind]
        for record in records:
            if not isinstance(record, expected):
                raise TypeError(
                    f"expected {expected.__name__} for {kind.value} batch, "
                    f"got {type(record).__name__}"
                )
        self._events[kind].extend(records)

    async def insert_batch(
        self, kind: EventKind, records: Sequence[TelemetryEvent]
    ) -> None:
        """Write a batch of events of one kind."""
        self.insert_batch_sync(kind, records)

    async def purge_expired(self, now: float) -> int:
        """Drop events whose retention ended before ``now``."""
        dropped = 0
        for kind, events in self._events.items():
            kept = [e for e in events if e.expires_at() >= now]
            dropped += len(events) - len(kept)
            self._events[kind] = kept
        return dropped

    # --- Reads ---

    def _scan(self, predicate: Predicate, window: TimeWindow) -> list[TelemetryEvent]:
        predicate.require_account()
        return [
            event
            for event in self._events[predicate.kind]
            if window.contains(event.timestamp) and predicate.matches(event)
        ]

    def _reducer(self, query: RangeQuery) -> Callable[[list[TelemetryEvent]], float]:
        aggregation = query.aggregation
        kind = query.predicate.kind
        if aggregation is Aggregation.COUNT:
            return lambda events: float(len(events))
        if aggregation is Aggregation.UNIQ:
            dimension = resolve_dimension(kind, query.measure)

            def _uniq(events: list[TelemetryEvent]) -> float:
                seen = {dimension.value_of(e) for e in events}
                seen.discard(None)
                seen.discard("")
                return float(len(seen))

            return _uniq
        if query.measure not in MEASURES[kind]:
            raise InvalidQueryError(
                f"unknown measure for the {kind.value} stream: {query.measure}"
            )

        def _values(events: list[TelemetryEvent]) -> list[float]:
            return [float(getattr(e, query.measure)) for e in events]

        if aggregation.is_percentile:
            quantile = aggregation.quantile or 0.0
            return lambda events: nearest_rank(_values(events), quantile)
        reducers: dict[Aggregation, Callable[[list[float]], float]] = {
            Aggregation.SUM: sum,
            Aggregation.MIN: min,
            Aggregation.MAX: max,
            Aggregation.AVG: lambda values: sum(values) / len(values),
        }
        reduce = reducers[aggregation]
        return lambda events: reduce(_values(events))

    async def aggregate(self, query: RangeQuery) -> list[AggregateRow]:
        """Run one grouped range query over the predicate's stream."""
        grouping = Grouping(query.predicate.kind, query.group_by)
        reduce = self._reducer(query)
        cells: dict[tuple[float | None, tuple[str, ...]], list[TelemetryEvent]] = (
            defaultdict(list)
        )
        for event in self._scan(query.predicate, query.window):
            bucket = (
                bucket_start(event.timestamp, query.bucket_seconds)
                if query.bucket_seconds
                else None
            )
            cells[(bucket, grouping.key(event))].append(event)
        rows = [
            AggregateRow(bucket=bucket, group=group, value=reduce(events))
            for (bucket, group), events in cells.items()
        ]
        rows.sort(key=lambda row: (row.bucket or 0.0, row.group))
        return rows

    async def service_metrics(
        self, predicate: Predicate, window: TimeWindow
    ) -> list[ServiceMetricsRow]:
        """Per-service aggregates from the metric stream."""
        by_service: dict[str, list[MetricPoint]] = defaultdict(list)
        for event in self._scan(predicate, window):
            assert isinstance(event, MetricPoint)
            if event.service_name:
                by_service[event.service_name].append(event)
        return [
            self._service_row(service, points)
            for service, points in sorted(by_service.items())
        ]

    def _service_row(self, service: str, points: list[MetricPoint]) -> ServiceMetricsRow:
        def values(metric: str) -> list[float]:
            return [p.value for p in points if p.name == metric]

        requests = [p for p in points if p.name == names.HTTP_REQUESTS_TOTAL]
        durations = values(names.HTTP_REQUEST_DURATION)
        languages = [
            p.labels[names.LANGUAGE_LABEL]
            for p in points
            if names.LANGUAGE_LABEL in p.labels
        ]
        pods = {
            p.resource_attributes[names.POD_ATTRIBUTE]
            for p in points
            if names.POD_ATTRIBUTE in p.resource_attributes
        }

        heap_used = _mean(values(names.JVM_HEAP_USED))
        heap_size = max(values(names.JVM_HEAP_SIZE), default=None)
        heap_usage = None
        if heap_used is not None and heap_size:
            heap_usage = heap_used / heap_size * 100

        gc_time = values(names.JVM_GC_TIME)
        event_loop = _mean(values(names.NODEJS_EVENT_LOOP_BLOCKED))
        thread_lock = _mean(values(names.PYTHON_THREAD_LOCK_WAIT))
        exceptions = values(names.DOTNET_EXCEPTIONS_TOTAL)

        return ServiceMetricsRow(
            service_name=service,
            language=max(languages, default=""),
            instances=len(pods),
            request_total=sum(p.value for p in requests),
            request_count=len(requests),
            error_count=sum(
                1 for p in requests if _status_code(p) >= names.ERROR_STATUS_THRESHOLD
            ),
            p95_latency_ms=nearest_rank(
                (d * 1000 for d in durations), names.LATENCY_QUANTILE
            ),
            last_seen=max(p.timestamp for p in points),
            jvm_heap_usage_percent=heap_usage,
            jvm_gc_time_ms=sum(gc_time) * 1000 if gc_time else None,
            nodejs_event_loop_lag_ms=None if event_loop is None else event_loop * 1000,
            python_thread_lock_wait_ms=(
                None if thread_lock is None else thread_lock * 1000
            ),
            dotnet_exceptions_total=sum(exceptions) if exceptions else None,
            dotnet_heap_fragmentation=_mean(values(names.DOTNET_HEAP_FRAGMENTATION)),
        )

    async def service_traces(
        self, predicate: Predicate, window: TimeWindow
    ) -> list[ServiceTraceRow]:
        """Per-service aggregates from the trace stream."""
        by_service: dict[str, list[TraceSpan]] = defaultdict(list)
        for event in self._scan(predicate, window):
            assert isinstance(event, TraceSpan)
            if event.service_name:
                by_service[event.service_name].append(event)
        return [
            ServiceTraceRow(
                service_name=service,
                total_count=len(spans),
                avg_duration_ms=sum(s.duration_ms for s in spans) / len(spans),
                error_count=sum(
                    1 for s in spans if s.status_code != names.SPAN_STATUS_OK
                ),
            )
            for service, spans in sorted(by_service.items())
        ]

    async def slowest_spans(
        self,
        predicate: Predicate,
        window: TimeWindow,
        min_duration_ms: float | None,
        limit: int,
    ) -> list[TraceSummary]:
        """Longest spans first, only those above ``min_duration_ms`` if set."""
        spans = []
        for event in self._scan(predicate, window):
            assert isinstance(event, TraceSpan)
            if min_duration_ms is None or event.duration_ms > min_duration_ms:
                spans.append(event)
        spans.sort(key=lambda s: (-s.duration_ms, -s.timestamp, s.span_id))
        return [
            TraceSummary(
                trace_id=span.trace_id,
                span_id=span.span_id,
                service_name=span.service_name,
                operation=span.name,
                duration_ms=span.duration_ms,
                status_code=span.status_code,
                timestamp=span.timestamp,
            )
            for span in spans[:limit]
        ]

    async def log_patterns(
        self, predicate: Predicate, window: TimeWindow, prefix_length: int, limit: int
    ) -> list[LogPattern]:
        """Log counts per ``(body prefix, severity)``, most frequent first."""
        counts: Counter[tuple[str, str]] = Counter()
        for event in self._scan(predicate, window):
            assert isinstance(event, LogRecord)
            counts[(event.body[:prefix_length], event.severity_text)] += 1
        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        return [
            LogPattern(sample=sample, level=level, count=count)
            for (sample, level), count in ranked[:limit]
        ]

    async def profile_sessions(
        self, predicate: Predicate, window: TimeWindow
    ) -> list[ProfileSession]:
        """Profile samples grouped per capture, newest first."""
        sessions: dict[tuple[float, str, str, str], list[ProfileSample]] = (
            defaultdict(list)
        )
        for event in self._scan(predicate, window):
            assert isinstance(event, ProfileSample)
            key = (event.timestamp, event.service_name, event.profile_type, event.runtime)
            sessions[key].append(event)
        ordered = sorted(sessions.items(), key=lambda item: (-item[0][0], item[0][1:]))
        return [
            ProfileSession(
                timestamp=timestamp,
                service_name=service,
                profile_type=profile_type,
                runtime=runtime,
                host_name=max(s.host_name for s in samples),
                sample_count=sum(s.sample_count for s in samples),
            )
            for (timestamp, service, profile_type, runtime), samples in ordered
        ]

    async def stack_samples(
        self, predicate: Predicate, window: TimeWindow, limit: int
    ) -> list[StackSample]:
        """Newest ``limit`` profile samples matching the predicate."""
        samples = sorted(
            self._scan(predicate, window), key=lambda e: e.timestamp, reverse=True
        )
        result = []
        for sample in samples[:limit]:
            assert isinstance(sample, ProfileSample)
            result.append(
                StackSample(
                    function_names=tuple(sample.function_names),
                    value=sample.sample_value,
                )
            )
        return result

    async def metric_names(
        self, predicate: Predicate, window: TimeWindow
    ) -> list[MetricName]:
        """Distinct metric names with type and sample count."""
        counts: Counter[str] = Counter()
        types: dict[str, str] = {}
        for event in self._scan(predicate, window):
            assert isinstance(event, MetricPoint)
            counts[event.name] += 1
            types[event.name] = max(types.get(event.name, ""), event.metric_type)
        return [
            MetricName(name=name, metric_type=types[name], sample_count=count)
            for name, count in sorted(counts.items())
        ]

    async def label_keys(
        self, predicate: Predicate, window: TimeWindow
    ) -> list[LabelKeyRow]:
        """Label keys ranked by how many points carry them."""
        counts: Counter[str] = Counter()
        for event in self._scan(predicate, window):
            counts.update(event.labels.keys())
        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        return [LabelKeyRow(key=key, count=count) for key, count in ranked]

    async def label_values(
        self, predicate: Predicate, key: str, window: TimeWindow, limit: int
    ) -> list[LabelValue]:
        """Distinct non-empty values of a label, most frequent first."""
        counts: Counter[str] = Counter(
            event.labels[key]
            for event in self._scan(predicate, window)
            if event.labels.get(key)
        )
        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        return [LabelValue(value=value, count=count) for value, count in ranked[:limit]]
