"""Tests for the SQLite event store adapter."""

import pytest

from obsfly.adapters.storage import SQLiteEventStore
from obsfly.core.exceptions import DataSourceError, MissingAccountScopeError
from obsfly.core.filters import FilterBuilder, Predicate
from obsfly.core.models import (
    Aggregation,
    EventKind,
    LogRecord,
    MetricPoint,
    ProfileSample,
    TimeWindow,
    TraceSpan,
)
from obsfly.core.ports import EventStorePort, RangeQuery

# All tests in this module are tier 2 (integration tests with file I/O)
pytestmark = pytest.mark.tier(2)

WINDOW = TimeWindow(start=0.0, end=10_000.0)


def _point(value: float, timestamp: float = 100.0, **overrides) -> MetricPoint:
    fields = {
        "account_id": 1,
        "timestamp": timestamp,
        "name": "latency",
        "value": value,
    }
    fields.update(overrides)
    return MetricPoint(**fields)


async def _aggregate(
    store: SQLiteEventStore, aggregation: Aggregation, **kwargs
) -> list[tuple]:
    predicate = kwargs.pop("predicate", FilterBuilder(1).build())
    rows = await store.aggregate(
        RangeQuery(predicate=predicate, window=WINDOW, aggregation=aggregation, **kwargs)
    )
    return [(row.bucket, row.group, row.value) for row in rows]


@pytest.mark.tra("Adapter.SQLiteStorage.ImplementsEventStorePort")
class TestSQLiteEventStore:
    """Tests for SQLiteEventStore adapter."""

    @pytest.mark.storage
    def test_implements_event_store_port(self) -> None:
        assert isinstance(SQLiteEventStore(":memory:"), EventStorePort)

    @pytest.mark.storage
    async def test_insert_and_count(self, events_db_path: str) -> None:
        store = SQLiteEventStore(events_db_path)
        await store.insert_batch(EventKind.METRIC, [_point(1.0), _point(2.0)])
        await store.insert_batch(EventKind.METRIC, [])

        assert store.count_sync(EventKind.METRIC) == 2
        assert store.count_sync(EventKind.LOG) == 0

    @pytest.mark.storage
    async def test_insert_rejects_wrong_event_type(
        self, sqlite_store: SQLiteEventStore
    ) -> None:
        with pytest.raises(TypeError):
            await sqlite_store.insert_batch(EventKind.LOG, [_point(1.0)])

    @pytest.mark.storage
    async def test_basic_aggregations(self, sqlite_store: SQLiteEventStore) -> None:
        await sqlite_store.insert_batch(
            EventKind.METRIC, [_point(v) for v in (4.0, 1.0, 3.0, 2.0)]
        )

        assert await _aggregate(sqlite_store, Aggregation.SUM) == [(None, (), 10.0)]
        assert await _aggregate(sqlite_store, Aggregation.AVG) == [(None, (), 2.5)]
        assert await _aggregate(sqlite_store, Aggregation.MIN) == [(None, (), 1.0)]
        assert await _aggregate(sqlite_store, Aggregation.MAX) == [(None, (), 4.0)]
        assert await _aggregate(sqlite_store, Aggregation.COUNT) == [(None, (), 4.0)]

    @pytest.mark.storage
    async def test_percentiles_use_nearest_rank(
        self, sqlite_store: SQLiteEventStore
    ) -> None:
        await sqlite_store.insert_batch(
            EventKind.METRIC, [_point(float(v)) for v in range(100, 0, -1)]
        )

        assert await _aggregate(sqlite_store, Aggregation.P50) == [(None, (), 50.0)]
        assert await _aggregate(sqlite_store, Aggregation.P95) == [(None, (), 95.0)]
        assert await _aggregate(sqlite_store, Aggregation.P99) == [(None, (), 99.0)]

    @pytest.mark.storage
    async def test_buckets_and_groups(self, sqlite_store: SQLiteEventStore) -> None:
        await sqlite_store.insert_batch(
            EventKind.METRIC,
            [
                _point(1.0, 10.0, labels={"route": "/a"}),
                _point(3.0, 20.0, labels={"route": "/a"}),
                _point(5.0, 70.0, labels={"route": "/a"}),
                _point(7.0, 15.0),
            ],
        )

        rows = await _aggregate(
            sqlite_store, Aggregation.AVG, group_by=("route",), bucket_seconds=60
        )

        assert rows == [
            (0.0, ("",), 7.0),
            (0.0, ("/a",), 2.0),
            (60.0, ("/a",), 5.0),
        ]

    @pytest.mark.storage
    async def test_uniq_ignores_empty_values(self, sqlite_store: SQLiteEventStore) -> None:
        await sqlite_store.insert_batch(
            EventKind.METRIC,
            [
                _point(1.0, service_name="svc-a"),
                _point(1.0, service_name="svc-a"),
                _point(1.0, service_name="svc-b"),
                _point(1.0),
            ],
        )

        rows = await _aggregate(sqlite_store, Aggregation.UNIQ, measure="service_name")

        assert rows == [(None, (), 2.0)]

    @pytest.mark.storage
    async def test_sum_of_bytes(self, sqlite_store: SQLiteEventStore) -> None:
        await sqlite_store.insert_batch(
            EventKind.METRIC, [_point(1.0, bytes=512), _point(1.0, bytes=1536)]
        )

        rows = await _aggregate(sqlite_store, Aggregation.SUM, measure="bytes")

        assert rows == [(None, (), 2048.0)]

    @pytest.mark.storage
    async def test_dotted_label_and_resource_keys(
        self, sqlite_store: SQLiteEventStore
    ) -> None:
        """Keys containing dots are matched literally, not as JSON paths."""
        await sqlite_store.insert_batch(
            EventKind.METRIC,
            [
                _point(
                    1.0,
                    labels={"http.route": "/cart"},
                    resource_attributes={"k8s.pod.name": "cart-1"},
                ),
                _point(2.0, labels={"http.route": "/pay"}),
            ],
        )

        predicate = (
            FilterBuilder(1)
            .where("http.route", "/cart")
            .where("resource.k8s.pod.name", "cart-1")
            .build()
        )
        rows = await _aggregate(sqlite_store, Aggregation.SUM, predicate=predicate)

        assert rows == [(None, (), 1.0)]

    @pytest.mark.storage
    async def test_label_values_with_quotes_are_bound(
        self, sqlite_store: SQLiteEventStore
    ) -> None:
        await sqlite_store.insert_batch(
            EventKind.METRIC, [_point(1.0, labels={"query": "name = 'x'"})]
        )

        predicate = FilterBuilder(1).where("query", "name = 'x'").build()

        assert await _aggregate(sqlite_store, Aggregation.COUNT, predicate=predicate) == [
            (None, (), 1.0)
        ]

    @pytest.mark.storage
    async def test_span_duration_measure(self, sqlite_store: SQLiteEventStore) -> None:
        await sqlite_store.insert_batch(
            EventKind.TRACE,
            [
                TraceSpan(
                    account_id=1,
                    timestamp=100.0,
                    trace_id="t",
                    span_id=span_id,
                    name="GET /",
                    start_time_unix_nano=0,
                    end_time_unix_nano=duration_ms * 1_000_000,
                )
                for span_id, duration_ms in (("a", 100), ("b", 300))
            ],
        )

        rows = await _aggregate(
            sqlite_store,
            Aggregation.MAX,
            predicate=FilterBuilder(1, EventKind.TRACE).build(),
            measure="duration_ms",
        )

        assert rows == [(None, (), 300.0)]

    @pytest.mark.storage
    async def test_integer_overflow_is_a_data_source_error(
        self, sqlite_store: SQLiteEventStore
    ) -> None:
        await sqlite_store.insert_batch(EventKind.METRIC, [_point(1.0)])

        with pytest.raises(DataSourceError):
            await _aggregate(sqlite_store, Aggregation.SUM, bucket_seconds=10**20)

    @pytest.mark.storage
    async def test_reads_are_scoped_to_the_account(
        self, sqlite_store: SQLiteEventStore
    ) -> None:
        await sqlite_store.insert_batch(
            EventKind.METRIC, [_point(1.0), _point(50.0, account_id=2)]
        )

        assert await _aggregate(sqlite_store, Aggregation.SUM) == [(None, (), 1.0)]
        with pytest.raises(MissingAccountScopeError):
            await sqlite_store.metric_names(Predicate(EventKind.METRIC, None), WINDOW)

    @pytest.mark.storage
    async def test_stack_samples_newest_first_with_limit(
        self, sqlite_store: SQLiteEventStore
    ) -> None:
        await sqlite_store.insert_batch(
            EventKind.PROFILE,
            [
                ProfileSample(
                    account_id=1,
                    timestamp=float(ts),
                    service_name="svc",
                    profile_type="cpu",
                    function_names=("main", f"f{ts}"),
                    sample_value=ts,
                )
                for ts in (100, 300, 200)
            ],
        )

        predicate = FilterBuilder(1, EventKind.PROFILE).where("service_name", "svc").build()
        samples = await sqlite_store.stack_samples(predicate, WINDOW, 2)

        assert [s.function_names for s in samples] == [("main", "f300"), ("main", "f200")]
        assert [s.value for s in samples] == [300, 200]

    @pytest.mark.storage
    async def test_purge_expired(self, sqlite_store: SQLiteEventStore) -> None:
        await sqlite_store.insert_batch(
            EventKind.METRIC,
            [_point(1.0, 0.0, retention_days=1), _point(1.0, 0.0, retention_days=3)],
        )
        await sqlite_store.insert_batch(
            EventKind.LOG, [LogRecord(account_id=1, timestamp=0.0, retention_days=1)]
        )

        assert await sqlite_store.purge_expired(2 * 86400.0) == 2
        assert await sqlite_store.purge_expired(2 * 86400.0) == 0


@pytest.mark.tra("Adapter.SQLiteStorage.SyncWriter")
class TestSQLiteEventStoreSync:
    """Tests for synchronous writes used by the logging handler."""

    @pytest.mark.storage
    def test_insert_batch_sync_and_read_back(self, events_db_path: str) -> None:
        store = SQLiteEventStore(events_db_path)
        record = LogRecord(
            account_id=3,
            timestamp=1000.0,
            service_name="obsfly",
            labels={"logger": "obsfly.core"},
            severity_text="WARNING",
            body="slow query",
        )

        store.insert_batch_sync(EventKind.LOG, [record])

        (stored,) = store.read_logs_sync(3)
        assert stored.body == "slow query"
        assert stored.severity_text == "WARNING"
        assert stored.labels == {"logger": "obsfly.core"}
        assert store.read_logs_sync(4) == []

    @pytest.mark.storage
    async def test_sync_and_async_share_same_file_db(self, events_db_path: str) -> None:
        store = SQLiteEventStore(events_db_path)
        store.insert_batch_sync(EventKind.METRIC, [_point(2.0)])
        await store.insert_batch(EventKind.METRIC, [_point(3.0)])

        assert store.count_sync(EventKind.METRIC) == 2
        assert await _aggregate(store, Aggregation.SUM) == [(None, (), 5.0)]

    @pytest.mark.storage
    async def test_memory_database_keeps_sync_writes_separate(
        self, sqlite_store: SQLiteEventStore
    ) -> None:
        """For :memory: the sync writer has its own database."""
        sqlite_store.insert_batch_sync(EventKind.METRIC, [_point(2.0)])

        assert await _aggregate(sqlite_store, Aggregation.SUM) == []
        assert sqlite_store.count_sync(EventKind.METRIC) == 1
