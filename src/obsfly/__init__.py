"""obsfly: telemetry query and aggregation engine for observability dashboards."""

from obsfly.adapters.storage import InMemoryEventStore, SQLiteEventStore
from obsfly.config import Settings
from obsfly.core.comparator import DashboardRollups, PeriodComparator
from obsfly.core.exceptions import (
    DataSourceError,
    InvalidQueryError,
    MissingAccountScopeError,
    ObsflyError,
)
from obsfly.core.filters import FilterBuilder, Grouping, build_filters
from obsfly.core.flamegraph import FlamegraphAggregator, build_flamegraph
from obsfly.core.health import HealthThresholds, ServiceHealthRollup, ServicesQuery
from obsfly.core.models import (
    Aggregation,
    EventKind,
    LogRecord,
    MetricPoint,
    MetricQuery,
    MetricQueryRequest,
    ProfileSample,
    TraceSpan,
)
from obsfly.core.query_engine import MetricQueryEngine

__all__ = [
    "Aggregation",
    "DashboardRollups",
    "DataSourceError",
    "EventKind",
    "FilterBuilder",
    "FlamegraphAggregator",
    "Grouping",
    "HealthThresholds",
    "InMemoryEventStore",
    "InvalidQueryError",
    "LogRecord",
    "MetricPoint",
    "MetricQuery",
    "MetricQueryEngine",
    "MetricQueryRequest",
    "MissingAccountScopeError",
    "ObsflyError",
    "PeriodComparator",
    "ProfileSample",
    "SQLiteEventStore",
    "ServiceHealthRollup",
    "ServicesQuery",
    "Settings",
    "TraceSpan",
    "build_filters",
    "build_flamegraph",
]
