"""Tests for the metric query engine against fake stores."""

import asyncio

import pytest
from hypothesis import given
from hypothesis import strategies as st

from obsfly.config import Settings
from obsfly.core.exceptions import DataSourceError, InvalidQueryError
from obsfly.core.filters import LABEL, Dimension, Equals, Grouping
from obsfly.core.models import (
    Aggregation,
    DataPoint,
    EventKind,
    MetricQuery,
    MetricQueryRequest,
    SeriesStats,
)
from obsfly.core.ports import AggregateRow, RangeQuery
from obsfly.core.query_engine import MetricQueryEngine, calculate_stats, fold_series

NOW = 1_700_000_040.0


class RecordingStore:
    """Answers every range query with canned rows and records the queries."""

    def __init__(self, rows: list[AggregateRow] | None = None) -> None:
        self.rows = rows or []
        self.queries: list[RangeQuery] = []

    async def aggregate(self, query: RangeQuery) -> list[AggregateRow]:
        self.queries.append(query)
        return self.rows


class FailingStore:
    async def aggregate(self, query: RangeQuery) -> list[AggregateRow]:
        raise DataSourceError("connection refused")


class SlowStore:
    async def aggregate(self, query: RangeQuery) -> list[AggregateRow]:
        await asyncio.sleep(10)
        return []


def _metric_name(query: RangeQuery) -> str:
    for term in query.predicate.terms:
        if isinstance(term, Equals) and term.dimension.key == "name":
            return term.value
    return ""


class DelayedFirstStore:
    """Answers the first query last; each row's value is the query's position."""

    def __init__(self) -> None:
        self.calls = 0

    async def aggregate(self, query: RangeQuery) -> list[AggregateRow]:
        position = self.calls
        self.calls += 1
        if position == 0:
            await asyncio.sleep(0.05)
        return [AggregateRow(bucket=60.0, group=(), value=float(position))]


class PartialOutageStore:
    """Fails the range queries of one metric and answers the rest."""

    def __init__(self, broken_metric: str) -> None:
        self.broken_metric = broken_metric
        self.answered: list[str] = []

    async def aggregate(self, query: RangeQuery) -> list[AggregateRow]:
        name = _metric_name(query)
        if name == self.broken_metric:
            raise DataSourceError(f"{name} shard unavailable")
        self.answered.append(name)
        return [AggregateRow(bucket=60.0, group=(), value=1.0)]


def _request(*metrics: MetricQuery, **kwargs) -> MetricQueryRequest:
    return MetricQueryRequest(account_id=1, metrics=metrics, **kwargs)


class TestCalculateStats:
    """Tests for per-series statistics."""

    @pytest.mark.core
    def test_stats_over_points(self) -> None:
        points = [DataPoint(0.0, 10.0), DataPoint(60.0, 20.0), DataPoint(120.0, 30.0)]
        assert calculate_stats(points) == SeriesStats(
            avg=20.0, min=10.0, max=30.0, sum=60.0, count=3
        )

    @pytest.mark.core
    def test_empty_series_has_zero_stats(self) -> None:
        assert calculate_stats([]) == SeriesStats()


class TestCalculateStatsProperties:
    """Property-based tests for per-series statistics."""

    @pytest.mark.core
    @given(
        values=st.lists(
            st.floats(min_value=-1e6, max_value=1e6, allow_nan=False), min_size=1
        )
    )
    def test_avg_is_sum_over_count_within_bounds(self, values: list[float]) -> None:
        stats = calculate_stats([DataPoint(float(i), v) for i, v in enumerate(values)])

        assert stats.count == len(values)
        assert stats.sum / stats.count == stats.avg
        tolerance = 1e-6 * max(1.0, abs(stats.avg))
        assert stats.min - tolerance <= stats.avg <= stats.max + tolerance


class TestFoldSeries:
    """Tests for folding range query rows into series."""

    @pytest.mark.core
    def test_one_series_per_group_sorted(self) -> None:
        rows = [
            AggregateRow(bucket=120.0, group=("sdb",), value=3.0),
            AggregateRow(bucket=120.0, group=("sda",), value=2.0),
            AggregateRow(bucket=60.0, group=("sda",), value=1.0),
        ]
        metric = MetricQuery(metric_name="cpu_usage", group_by=("device",))

        series = fold_series(metric, Grouping(EventKind.METRIC, ("device",)), rows)

        assert [s.labels for s in series] == [{"device": "sda"}, {"device": "sdb"}]
        assert [p.timestamp for p in series[0].data_points] == [60.0, 120.0]
        assert series[0].stats.sum == 3.0
        assert series[1].stats.count == 1

    @pytest.mark.core
    def test_no_rows_no_series(self) -> None:
        metric = MetricQuery(metric_name="cpu_usage")
        assert fold_series(metric, Grouping(EventKind.METRIC), []) == []


class TestMetricQueryEngine:
    """Tests for request resolution."""

    @pytest.mark.core
    async def test_builds_range_query_from_request(self) -> None:
        store = RecordingStore()
        engine = MetricQueryEngine(store, clock=lambda: NOW)
        metric = MetricQuery(
            metric_name="cpu_usage",
            aggregation=Aggregation.P95,
            group_by=("device",),
            filters={"host_name": "node-1", "device": "sda"},
        )

        await engine.query(_request(metric, time_range="1h", interval="5m"))

        (query,) = store.queries
        assert query.aggregation is Aggregation.P95
        assert query.group_by == ("device",)
        assert query.bucket_seconds == 300
        assert query.window.end == NOW
        assert query.window.seconds == 3600
        assert query.predicate.account_id == 1
        assert Equals(Dimension(LABEL, "device"), "sda") in query.predicate.terms
        assert len(query.predicate.terms) == 3

    @pytest.mark.core
    async def test_defaults_from_settings(self) -> None:
        store = RecordingStore()
        settings = Settings(default_minutes=30, default_interval_seconds=120)
        engine = MetricQueryEngine(store, settings, clock=lambda: NOW)

        await engine.query(_request(MetricQuery(metric_name="cpu_usage")))

        (query,) = store.queries
        assert query.bucket_seconds == 120
        assert query.window.seconds == 1800


    @pytest.mark.core
    async def test_bucket_is_clamped_to_the_window(self) -> None:
        store = RecordingStore()
        engine = MetricQueryEngine(store, clock=lambda: NOW)

        await engine.query(
            _request(
                MetricQuery(metric_name="cpu_usage"), time_range="5m", interval="1h"
            )
        )

        (query,) = store.queries
        assert query.bucket_seconds == 300

    @pytest.mark.core
    async def test_series_order_does_not_follow_completion_order(self) -> None:
        """The first query finishes last but its series still comes first."""
        store = DelayedFirstStore()
        engine = MetricQueryEngine(store, clock=lambda: NOW)

        response = await engine.query(
            _request(
                MetricQuery(metric_name="first"),
                MetricQuery(metric_name="second"),
                MetricQuery(metric_name="third"),
            )
        )

        assert [s.name for s in response.series] == ["first", "second", "third"]
        assert [s.data_points[0].value for s in response.series] == [0.0, 1.0, 2.0]

    @pytest.mark.core
    async def test_one_failing_query_returns_no_partial_series(self) -> None:
        store = PartialOutageStore(broken_metric="memory_usage")
        engine = MetricQueryEngine(store, clock=lambda: NOW)
        response = None

        with pytest.raises(DataSourceError, match="memory_usage"):
            response = await engine.query(
                _request(
                    MetricQuery(metric_name="cpu_usage"),
                    MetricQuery(metric_name="memory_usage"),
                )
            )

        assert store.answered == ["cpu_usage"]
        assert response is None

    @pytest.mark.core
    async def test_series_follow_request_order_and_alias(self) -> None:
        store = RecordingStore([AggregateRow(bucket=60.0, group=(), value=1.0)])
        engine = MetricQueryEngine(store, clock=lambda: NOW)

        response = await engine.query(
            _request(
                MetricQuery(metric_name="b_metric", alias="Second"),
                MetricQuery(metric_name="a_metric"),
            )
        )

        assert [s.name for s in response.series] == ["Second", "a_metric"]
        assert response.series[1].labels == {}

    @pytest.mark.core
    async def test_empty_request_is_rejected(self) -> None:
        engine = MetricQueryEngine(RecordingStore())
        with pytest.raises(InvalidQueryError):
            await engine.query(_request())

    @pytest.mark.core
    async def test_query_without_metric_name_is_rejected(self) -> None:
        engine = MetricQueryEngine(RecordingStore())
        with pytest.raises(InvalidQueryError):
            await engine.query(_request(MetricQuery(metric_name="")))

    @pytest.mark.core
    async def test_failing_query_fails_the_request(self) -> None:
        engine = MetricQueryEngine(FailingStore())
        with pytest.raises(DataSourceError):
            await engine.query(_request(MetricQuery(metric_name="cpu_usage")))

    @pytest.mark.core
    async def test_deadline_expiry_is_a_data_source_error(self) -> None:
        engine = MetricQueryEngine(SlowStore(), Settings(query_timeout_seconds=0.05))
        with pytest.raises(DataSourceError):
            await engine.query(_request(MetricQuery(metric_name="cpu_usage")))

    @pytest.mark.core
    async def test_discovery_requires_names(self) -> None:
        engine = MetricQueryEngine(RecordingStore())
        with pytest.raises(InvalidQueryError):
            await engine.metric_labels(1, "")
        with pytest.raises(InvalidQueryError):
            await engine.label_values(1, "cpu_usage", "")
