"""SQLite storage adapter for telemetry events."""

import json
from collections.abc import Callable, Sequence
from typing import Any

from obsfly.adapters.storage import sqlite_queries as q
from obsfly.adapters.storage.sqlite_base import SQLiteStoreBase, _safe_json_loads
from obsfly.core.filters import Predicate
from obsfly.core.models import (
    EVENT_TYPES,
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

_COMMON_COLUMNS = """
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL,
    timestamp REAL NOT NULL,
    service_name TEXT NOT NULL DEFAULT '',
    host_name TEXT NOT NULL DEFAULT '',
    labels TEXT NOT NULL DEFAULT '{}',
    resource_attributes TEXT NOT NULL DEFAULT '{}',
    retention_days INTEGER NOT NULL DEFAULT 30,
    bytes INTEGER NOT NULL DEFAULT 0
"""

_EVENTS_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS metrics (
    {_COMMON_COLUMNS},
    name TEXT NOT NULL,
    value REAL NOT NULL,
    metric_type TEXT NOT NULL DEFAULT 'gauge'
);
CREATE INDEX IF NOT EXISTS idx_metrics_scope
    ON metrics(account_id, name, timestamp);

CREATE TABLE IF NOT EXISTS logs (
    {_COMMON_COLUMNS},
    severity_text TEXT NOT NULL DEFAULT 'INFO',
    body TEXT NOT NULL DEFAULT '',
    trace_id TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_logs_scope ON logs(account_id, timestamp);

CREATE TABLE IF NOT EXISTS traces (
    {_COMMON_COLUMNS},
    trace_id TEXT NOT NULL,
    span_id TEXT NOT NULL,
    parent_span_id TEXT NOT NULL DEFAULT '',
    name TEXT NOT NULL,
    start_time_unix_nano INTEGER NOT NULL,
    end_time_unix_nano INTEGER NOT NULL,
    status_code INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_traces_scope
    ON traces(account_id, service_name, timestamp);

CREATE TABLE IF NOT EXISTS profiles (
    {_COMMON_COLUMNS},
    profile_type TEXT NOT NULL,
    runtime TEXT NOT NULL DEFAULT '',
    function_names TEXT NOT NULL DEFAULT '[]',
    sample_value INTEGER NOT NULL,
    sample_count INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_profiles_scope
    ON profiles(account_id, service_name, timestamp);
"""

_COMMON_NAMES = (
    "account_id, timestamp, service_name, host_name, labels, "
    "resource_attributes, retention_days, bytes"
)

_INSERTS = {
    EventKind.METRIC: f"""
INSERT INTO metrics ({_COMMON_NAMES}, name, value, metric_type)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
""",
    EventKind.LOG: f"""
INSERT INTO logs ({_COMMON_NAMES}, severity_text, body, trace_id)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
""",
    EventKind.TRACE: f"""
INSERT INTO traces ({_COMMON_NAMES}, trace_id, span_id, parent_span_id, name,
    start_time_unix_nano, end_time_unix_nano, status_code)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
""",
    EventKind.PROFILE: f"""
INSERT INTO profiles ({_COMMON_NAMES}, profile_type, runtime, function_names,
    sample_value, sample_count)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
""",
}


def _common_values(event: TelemetryEvent) -> tuple[Any, ...]:
    return (
        event.account_id,
        event.timestamp,
        event.service_name,
        event.host_name,
        json.dumps(event.labels),
        json.dumps(event.resource_attributes),
        event.retention_days,
        event.bytes,
    )


def _metric_values(event: MetricPoint) -> tuple[Any, ...]:
    return (*_common_values(event), event.name, event.value, event.metric_type)


def _log_values(event: LogRecord) -> tuple[Any, ...]:
    return (*_common_values(event), event.severity_text, event.body, event.trace_id)


def _trace_values(event: TraceSpan) -> tuple[Any, ...]:
    return (
        *_common_values(event),
        event.trace_id,
        event.span_id,
        event.parent_span_id,
        event.name,
        event.start_time_unix_nano,
        event.end_time_unix_nano,
        event.status_code,
    )


def _profile_values(event: ProfileSample) -> tuple[Any, ...]:
    return (
        *_common_values(event),
        event.profile_type,
        event.runtime,
        json.dumps(list(event.function_names)),
        event.sample_value,
        event.sample_count,
    )


_ROW_ENCODERS: dict[EventKind, Callable[[Any], tuple[Any, ...]]] = {
    EventKind.METRIC: _metric_values,
    EventKind.LOG: _log_values,
    EventKind.TRACE: _trace_values,
    EventKind.PROFILE: _profile_values,
}


def _encode_batch(
    kind: EventKind, records: Sequence[TelemetryEvent]
) -> list[tuple[Any, ...]]:
    expected = EVENT_TYPES[kind]
    encode = _ROW_ENCODERS[kind]
    rows = []
    for record in records:
        if not isinstance(record, expected):
            raise TypeError(
                f"expected {expected.__name__} for {kind.value} batch, "
                f"got {type(record).__name__}"
            )
        rows.append(encode(record))
    return rows


def _optional(value: Any) -> float | None:
    return None if value is None else float(value)


class SQLiteEventStore(SQLiteStoreBase):
    """SQLite implementation of EventStorePort.

    Holds one table per event stream and compiles predicates, groupings and
    aggregations into SQL so the database does the scanning. Uses aiosqlite
    for non-blocking reads and WAL mode for concurrent access.

    ``insert_batch_sync`` uses the standard sqlite3 module for non-async
    contexts like the logging handler. For file-based databases, sync and
    async methods share the same file. For :memory: databases, sync and
    async have separate in-memory DBs.
    """

    def __init__(self, db_path: str) -> None:
        super().__init__(db_path, _EVENTS_SCHEMA)

    # --- Writes ---

    async def insert_batch(
        self, kind: EventKind, records: Sequence[TelemetryEvent]
    ) -> None:
        """Write a batch of events of one kind in a single transaction."""
        rows = _encode_batch(kind, records)
        if rows:
            await self._execute_many(_INSERTS[kind], rows)

    def insert_batch_sync(
        self, kind: EventKind, records: Sequence[TelemetryEvent]
    ) -> None:
        """Synchronous batch write for non-async contexts."""
        rows = _encode_batch(kind, records)
        if rows:
            self._execute_many_sync(_INSERTS[kind], rows)

    async def purge_expired(self, now: float) -> int:
        """Delete events whose retention ended before ``now``."""
        dropped = 0
        for kind in EventKind:
            dropped += await self._execute(q.purge_expired_sql(kind), (now,))
        return dropped

    # --- Reads ---

    async def aggregate(self, query: RangeQuery) -> list[AggregateRow]:
        """Run one grouped range query over the predicate's table."""
        fragment = q.aggregate_sql(query)
        rows = await self._fetch_all(fragment.sql, fragment.params)
        return [
            AggregateRow(
                bucket=None if row[0] is None else float(row[0]),
                group=tuple(str(v) for v in row[1:-1]),
                value=0.0 if row[-1] is None else float(row[-1]),
            )
            for row in rows
        ]

    async def service_metrics(
        self, predicate: Predicate, window: TimeWindow
    ) -> list[ServiceMetricsRow]:
        fragment = q.service_metrics_sql(predicate, window)
        rows = await self._fetch_all(fragment.sql, fragment.params)
        return [
            ServiceMetricsRow(
                service_name=row[0],
                language=str(row[1]),
                instances=int(row[2]),
                request_total=float(row[3]),
                request_count=int(row[4] or 0),
                error_count=int(row[5] or 0),
                p95_latency_ms=float(row[6]),
                last_seen=float(row[7]),
                jvm_heap_usage_percent=_optional(row[8]),
                jvm_gc_time_ms=_optional(row[9]),
                nodejs_event_loop_lag_ms=_optional(row[10]),
                python_thread_lock_wait_ms=_optional(row[11]),
                dotnet_exceptions_total=_optional(row[12]),
                dotnet_heap_fragmentation=_optional(row[13]),
            )
            for row in rows
        ]

    async def service_traces(
        self, predicate: Predicate, window: TimeWindow
    ) -> list[ServiceTraceRow]:
        fragment = q.service_traces_sql(predicate, window)
        rows = await self._fetch_all(fragment.sql, fragment.params)
        return [
            ServiceTraceRow(
                service_name=row[0],
                total_count=int(row[1]),
                avg_duration_ms=float(row[2] or 0.0),
                error_count=int(row[3] or 0),
            )
            for row in rows
        ]

    async def slowest_spans(
        self,
        predicate: Predicate,
        window: TimeWindow,
        min_duration_ms: float | None,
        limit: int,
    ) -> list[TraceSummary]:
        fragment = q.slowest_spans_sql(predicate, window, min_duration_ms, limit)
        rows = await self._fetch_all(fragment.sql, fragment.params)
        return [
            TraceSummary(
                trace_id=row[0],
                span_id=row[1],
                service_name=row[2],
                operation=row[3],
                duration_ms=float(row[4]),
                status_code=int(row[5]),
                timestamp=float(row[6]),
            )
            for row in rows
        ]

    async def log_patterns(
        self, predicate: Predicate, window: TimeWindow, prefix_length: int, limit: int
    ) -> list[LogPattern]:
        fragment = q.log_patterns_sql(predicate, window, prefix_length, limit)
        rows = await self._fetch_all(fragment.sql, fragment.params)
        return [
            LogPattern(sample=row[0], level=row[1], count=int(row[2])) for row in rows
        ]

    async def profile_sessions(
        self, predicate: Predicate, window: TimeWindow
    ) -> list[ProfileSession]:
        fragment = q.profile_sessions_sql(predicate, window)
        rows = await self._fetch_all(fragment.sql, fragment.params)
        return [
            ProfileSession(
                timestamp=float(row[0]),
                service_name=row[1],
                profile_type=row[2],
                runtime=row[3],
                host_name=row[4],
                sample_count=int(row[5]),
            )
            for row in rows
        ]

    async def stack_samples(
        self, predicate: Predicate, window: TimeWindow, limit: int
    ) -> list[StackSample]:
        """Newest ``limit`` profile samples matching the predicate."""
        fragment = q.stack_samples_sql(predicate, window, limit)
        rows = await self._fetch_all(fragment.sql, fragment.params)
        return [
            StackSample(
                function_names=tuple(_safe_json_loads(row[0], default=[])),
                value=int(row[1]),
            )
            for row in rows
        ]

    async def metric_names(
        self, predicate: Predicate, window: TimeWindow
    ) -> list[MetricName]:
        fragment = q.metric_names_sql(predicate, window)
        rows = await self._fetch_all(fragment.sql, fragment.params)
        return [
            MetricName(name=row[0], metric_type=row[1], sample_count=int(row[2]))
            for row in rows
        ]

    async def label_keys(
        self, predicate: Predicate, window: TimeWindow
    ) -> list[LabelKeyRow]:
        fragment = q.label_keys_sql(predicate, window)
        rows = await self._fetch_all(fragment.sql, fragment.params)
        return [LabelKeyRow(key=row[0], count=int(row[1])) for row in rows]

    async def label_values(
        self, predicate: Predicate, key: str, window: TimeWindow, limit: int
    ) -> list[LabelValue]:
        fragment = q.label_values_sql(predicate, key, window, limit)
        rows = await self._fetch_all(fragment.sql, fragment.params)
        return [LabelValue(value=str(row[0]), count=int(row[1])) for row in rows]

    # --- Sync reads (testing) ---

    def count_sync(self, kind: EventKind) -> int:
        """Return the number of stored events of one kind."""
        rows = self._fetch_all_sync(f"SELECT COUNT(*) FROM {q.TABLES[kind]}")
        return int(rows[0][0]) if rows else 0

    def read_logs_sync(self, account_id: int) -> list[LogRecord]:
        """Read an account's log records, oldest first."""
        rows = self._fetch_all_sync(
            "SELECT timestamp, service_name, host_name, labels, severity_text, "
            "body, trace_id FROM logs WHERE account_id = ? ORDER BY timestamp",
            (account_id,),
        )
        return [
            LogRecord(
                account_id=account_id,
                timestamp=row[0],
                service_name=row[1],
                host_name=row[2],
                labels=_safe_json_loads(row[3], default={}),
                severity_text=row[4],
                body=row[5],
                trace_id=row[6],
            )
            for row in rows
        ]
