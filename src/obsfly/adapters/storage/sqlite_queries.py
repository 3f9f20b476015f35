"""SQL compilation for the SQLite event store.

Predicates and range queries compile into a SQL string plus an ordered
parameter list. Label and resource-attribute keys are bound as parameters
and compared against ``json_each`` keys, so quotes, backslashes and dots in
a key are matched literally. Only whitelisted column names are interpolated.
"""

from dataclasses import dataclass, field
from typing import Any

from obsfly.core import metric_names as names
from obsfly.core.exceptions import InvalidQueryError
from obsfly.core.filters import (
    FIELD,
    LABEL,
    AnyOf,
    Contains,
    Dimension,
    Equals,
    Predicate,
    resolve_dimension,
)
from obsfly.core.models import (
    FIELD_DIMENSIONS,
    MEASURES,
    Aggregation,
    EventKind,
    TimeWindow,
)
from obsfly.core.ports import RangeQuery

TABLES = {
    EventKind.METRIC: "metrics",
    EventKind.LOG: "logs",
    EventKind.TRACE: "traces",
    EventKind.PROFILE: "profiles",
}

SPAN_DURATION_MS = "(end_time_unix_nano - start_time_unix_nano) / 1000000.0"

# Measures that are not plain columns
_MEASURE_SQL = {"duration_ms": SPAN_DURATION_MS}

_SQL_AGGREGATES = {
    Aggregation.AVG: "AVG",
    Aggregation.SUM: "SUM",
    Aggregation.MIN: "MIN",
    Aggregation.MAX: "MAX",
}


@dataclass
class SQLFragment:
    """A piece of SQL and the parameters its placeholders consume, in order."""

    sql: str
    params: list[Any] = field(default_factory=list)


def json_member(column: str, key: str) -> SQLFragment:
    """Value of one top-level key of a JSON object column, NULL when absent."""
    return SQLFragment(
        f"(SELECT j.value FROM json_each({column}) AS j WHERE j.key = ?)", [key]
    )


def status_code_at_least(status: str) -> str:
    """SQL condition: ``status`` is all ASCII digits and at least ``?``.

    Anything else (absent, empty, "4xx") never counts.
    """
    return (
        f"({status} != '' AND {status} NOT GLOB '*[^0-9]*' "
        f"AND CAST({status} AS INTEGER) >= ?)"
    )


def dimension_sql(kind: EventKind, dimension: Dimension) -> SQLFragment:
    """SQL expression yielding a dimension's value, NULL when absent."""
    if dimension.scope == FIELD:
        if dimension.key not in FIELD_DIMENSIONS[kind].values():
            raise InvalidQueryError(
                f"{dimension.key!r} is not a field of the {kind.value} stream"
            )
        return SQLFragment(dimension.key)
    column = "labels" if dimension.scope == LABEL else "resource_attributes"
    return json_member(column, dimension.key)


def where_clause(predicate: Predicate, window: TimeWindow) -> SQLFragment:
    """Compile account scope, window and predicate terms into a WHERE body.

    The account term always comes first.
    """
    clauses = ["account_id = ?", "timestamp > ?", "timestamp <= ?"]
    params: list[Any] = [predicate.require_account(), window.start, window.end]
    for term in predicate.terms:
        expr = dimension_sql(predicate.kind, term.dimension)
        params.extend(expr.params)
        if isinstance(term, Equals):
            clauses.append(f"{expr.sql} = ?")
            params.append(term.value)
        elif isinstance(term, AnyOf):
            if not term.values:
                clauses.append("0")
                continue
            placeholders = ", ".join("?" for _ in term.values)
            clauses.append(f"{expr.sql} IN ({placeholders})")
            params.extend(term.values)
        elif isinstance(term, Contains):
            clauses.append(f"instr({expr.sql}, ?) > 0")
            params.append(term.substring)
    return SQLFragment(" AND ".join(clauses), params)


def _cell_columns(query: RangeQuery) -> tuple[list[str], list[Any]]:
    """SELECT expressions for the bucket and group columns, with params."""
    kind = query.predicate.kind
    columns: list[str] = []
    params: list[Any] = []
    if query.bucket_seconds:
        columns.append("CAST(timestamp / ? AS INTEGER) * ? AS bucket")
        params.extend([query.bucket_seconds, query.bucket_seconds])
    else:
        columns.append("NULL AS bucket")
    for index, key in enumerate(query.group_by):
        expr = dimension_sql(kind, resolve_dimension(kind, key))
        columns.append(f"COALESCE({expr.sql}, '') AS g{index}")
        params.extend(expr.params)
    return columns, params


def _measure_column(query: RangeQuery) -> str:
    kind = query.predicate.kind
    if query.measure not in MEASURES[kind]:
        raise InvalidQueryError(
            f"unknown measure for the {kind.value} stream: {query.measure}"
        )
    return _MEASURE_SQL.get(query.measure, query.measure)


def aggregate_sql(query: RangeQuery) -> SQLFragment:
    """Compile a range query grouped by ``(bucket, group keys...)``.

    Percentiles use a nearest-rank window function pass inside SQLite.
    """
    kind = query.predicate.kind
    table = TABLES[kind]
    where = where_clause(query.predicate, query.window)
    columns, column_params = _cell_columns(query)
    keys = ["bucket"] + [f"g{i}" for i in range(len(query.group_by))]
    key_list = ", ".join(keys)

    if query.aggregation.is_percentile:
        sql = f"""
            WITH scoped AS (
                SELECT {", ".join(columns)}, {_measure_column(query)} AS measure
                FROM {table}
                WHERE {where.sql}
            ),
            ranked AS (
                SELECT {key_list}, measure,
                    ROW_NUMBER() OVER (PARTITION BY {key_list} ORDER BY measure) AS rn,
                    COUNT(*) OVER (PARTITION BY {key_list}) AS cnt
                FROM scoped
            )
            SELECT {key_list}, MIN(measure) AS value
            FROM ranked
            WHERE rn >= ? * cnt
            GROUP BY {key_list}
            ORDER BY {key_list}
        """
        return SQLFragment(
            sql, [*column_params, *where.params, query.aggregation.quantile]
        )

    aggregate_params: list[Any] = []
    if query.aggregation is Aggregation.COUNT:
        aggregate = "COUNT(*)"
    elif query.aggregation is Aggregation.UNIQ:
        expr = dimension_sql(kind, resolve_dimension(kind, query.measure))
        aggregate = f"COUNT(DISTINCT NULLIF({expr.sql}, ''))"
        aggregate_params = expr.params
    else:
        function = _SQL_AGGREGATES[query.aggregation]
        aggregate = f"{function}({_measure_column(query)})"

    sql = f"""
        SELECT {", ".join(columns)}, {aggregate} AS value
        FROM {table}
        WHERE {where.sql}
        GROUP BY {key_list}
        ORDER BY {key_list}
    """
    return SQLFragment(sql, [*column_params, *aggregate_params, *where.params])


def service_metrics_sql(predicate: Predicate, window: TimeWindow) -> SQLFragment:
    """Per-service request, latency and runtime aggregates."""
    where = where_clause(predicate, window)
    language = json_member("labels", names.LANGUAGE_LABEL)
    pod = json_member("resource_attributes", names.POD_ATTRIBUTE)
    status = json_member("labels", names.STATUS_LABEL)
    sql = f"""
        WITH scoped AS (
            SELECT service_name, name, value, timestamp,
                {language.sql} AS language,
                {pod.sql} AS pod,
                {status.sql} AS status
            FROM metrics
            WHERE {where.sql} AND service_name != ''
        ),
        latency AS (
            SELECT service_name, value * 1000 AS ms,
                ROW_NUMBER() OVER (PARTITION BY service_name ORDER BY value) AS rn,
                COUNT(*) OVER (PARTITION BY service_name) AS cnt
            FROM scoped
            WHERE name = ?
        ),
        p95 AS (
            SELECT service_name, MIN(ms) AS p95
            FROM latency
            WHERE rn >= ? * cnt
            GROUP BY service_name
        )
        SELECT
            s.service_name,
            COALESCE(MAX(s.language), ''),
            COUNT(DISTINCT s.pod),
            COALESCE(SUM(CASE WHEN s.name = ? THEN s.value END), 0),
            SUM(CASE WHEN s.name = ? THEN 1 ELSE 0 END),
            SUM(CASE WHEN s.name = ?
                AND {status_code_at_least("s.status")} THEN 1 ELSE 0 END),
            COALESCE(MAX(p.p95), 0),
            MAX(s.timestamp),
            AVG(CASE WHEN s.name = ? THEN s.value END)
                / NULLIF(MAX(CASE WHEN s.name = ? THEN s.value END), 0) * 100,
            SUM(CASE WHEN s.name = ? THEN s.value END) * 1000,
            AVG(CASE WHEN s.name = ? THEN s.value END) * 1000,
            AVG(CASE WHEN s.name = ? THEN s.value END) * 1000,
            SUM(CASE WHEN s.name = ? THEN s.value END),
            AVG(CASE WHEN s.name = ? THEN s.value END)
        FROM scoped s
        LEFT JOIN p95 p ON p.service_name = s.service_name
        GROUP BY s.service_name
        ORDER BY s.service_name
    """
    params = [
        *language.params,
        *pod.params,
        *status.params,
        *where.params,
        names.HTTP_REQUEST_DURATION,
        names.LATENCY_QUANTILE,
        names.HTTP_REQUESTS_TOTAL,
        names.HTTP_REQUESTS_TOTAL,
        names.HTTP_REQUESTS_TOTAL,
        names.ERROR_STATUS_THRESHOLD,
        names.JVM_HEAP_USED,
        names.JVM_HEAP_SIZE,
        names.JVM_GC_TIME,
        names.NODEJS_EVENT_LOOP_BLOCKED,
        names.PYTHON_THREAD_LOCK_WAIT,
        names.DOTNET_EXCEPTIONS_TOTAL,
        names.DOTNET_HEAP_FRAGMENTATION,
    ]
    return SQLFragment(sql, params)


def service_traces_sql(predicate: Predicate, window: TimeWindow) -> SQLFragment:
    where = where_clause(predicate, window)
    sql = f"""
        SELECT
            service_name,
            COUNT(*),
            AVG({SPAN_DURATION_MS}),
            SUM(CASE WHEN status_code != ? THEN 1 ELSE 0 END)
        FROM traces
        WHERE {where.sql} AND service_name != ''
        GROUP BY service_name
        ORDER BY service_name
    """
    return SQLFragment(sql, [names.SPAN_STATUS_OK, *where.params])


def slowest_spans_sql(
    predicate: Predicate,
    window: TimeWindow,
    min_duration_ms: float | None,
    limit: int,
) -> SQLFragment:
    where = where_clause(predicate, window)
    params = list(where.params)
    threshold = ""
    if min_duration_ms is not None:
        threshold = f"AND {SPAN_DURATION_MS} > ?"
        params.append(min_duration_ms)
    sql = f"""
        SELECT trace_id, span_id, service_name, name,
            {SPAN_DURATION_MS} AS duration_ms, status_code, timestamp
        FROM traces
        WHERE {where.sql} {threshold}
        ORDER BY duration_ms DESC, timestamp DESC, span_id
        LIMIT ?
    """
    return SQLFragment(sql, [*params, limit])


def log_patterns_sql(
    predicate: Predicate, window: TimeWindow, prefix_length: int, limit: int
) -> SQLFragment:
    where = where_clause(predicate, window)
    sql = f"""
        SELECT substr(body, 1, ?) AS sample, severity_text, COUNT(*) AS occurrences
        FROM logs
        WHERE {where.sql}
        GROUP BY sample, severity_text
        ORDER BY occurrences DESC, sample, severity_text
        LIMIT ?
    """
    return SQLFragment(sql, [prefix_length, *where.params, limit])


def profile_sessions_sql(predicate: Predicate, window: TimeWindow) -> SQLFragment:
    where = where_clause(predicate, window)
    sql = f"""
        SELECT timestamp, service_name, profile_type, runtime,
            MAX(host_name), SUM(sample_count)
        FROM profiles
        WHERE {where.sql}
        GROUP BY timestamp, service_name, profile_type, runtime
        ORDER BY timestamp DESC, service_name, profile_type, runtime
    """
    return SQLFragment(sql, where.params)


def stack_samples_sql(predicate: Predicate, window: TimeWindow, limit: int) -> SQLFragment:
    where = where_clause(predicate, window)
    sql = f"""
        SELECT function_names, sample_value
        FROM profiles
        WHERE {where.sql}
        ORDER BY timestamp DESC
        LIMIT ?
    """
    return SQLFragment(sql, [*where.params, limit])


def metric_names_sql(predicate: Predicate, window: TimeWindow) -> SQLFragment:
    where = where_clause(predicate, window)
    sql = f"""
        SELECT name, MAX(metric_type), COUNT(*)
        FROM metrics
        WHERE {where.sql}
        GROUP BY name
        ORDER BY name
    """
    return SQLFragment(sql, where.params)


def label_keys_sql(predicate: Predicate, window: TimeWindow) -> SQLFragment:
    where = where_clause(predicate, window)
    sql = f"""
        SELECT j.key, COUNT(*) AS occurrences
        FROM (SELECT labels FROM metrics WHERE {where.sql}) AS m,
            json_each(m.labels) AS j
        GROUP BY j.key
        ORDER BY occurrences DESC, j.key
    """
    return SQLFragment(sql, where.params)


def label_values_sql(
    predicate: Predicate, key: str, window: TimeWindow, limit: int
) -> SQLFragment:
    where = where_clause(predicate, window)
    member = json_member("labels", key)
    sql = f"""
        SELECT label_value, COUNT(*) AS occurrences
        FROM (
            SELECT {member.sql} AS label_value
            FROM metrics
            WHERE {where.sql}
        )
        WHERE label_value IS NOT NULL AND label_value != ''
        GROUP BY label_value
        ORDER BY occurrences DESC, label_value
        LIMIT ?
    """
    return SQLFragment(sql, [*member.params, *where.params, limit])


def purge_expired_sql(kind: EventKind) -> str:
    return (
        f"DELETE FROM {TABLES[kind]} "
        "WHERE timestamp + retention_days * 86400 < ?"
    )
