"""Tests for port interfaces."""

from collections.abc import Sequence

import pytest

from obsfly.adapters.storage import InMemoryEventStore, SQLiteEventStore
from obsfly.core.models import EventKind, TelemetryEvent
from obsfly.core.ports import EventStorePort, SyncEventWriter


class TestEventStorePort:
    """Tests for EventStorePort protocol."""

    @pytest.mark.core
    @pytest.mark.parametrize(
        "method",
        [
            "insert_batch",
            "aggregate",
            "service_metrics",
            "service_traces",
            "stack_samples",
            "slowest_spans",
            "log_patterns",
            "profile_sessions",
            "metric_names",
            "label_keys",
            "label_values",
            "purge_expired",
        ],
    )
    def test_protocol_defines_method(self, method: str) -> None:
        assert hasattr(EventStorePort, method)

    @pytest.mark.core
    def test_adapters_satisfy_protocol(self) -> None:
        assert isinstance(InMemoryEventStore(), EventStorePort)
        assert isinstance(SQLiteEventStore(":memory:"), EventStorePort)

    @pytest.mark.core
    def test_partial_implementation_is_not_recognized(self) -> None:
        """A class with only writes does not satisfy EventStorePort."""

        class WriteOnlyStore:
            async def insert_batch(
                self, kind: EventKind, records: Sequence[TelemetryEvent]
            ) -> None:
                pass

        assert not isinstance(WriteOnlyStore(), EventStorePort)


class TestSyncEventWriter:
    """Tests for SyncEventWriter protocol."""

    @pytest.mark.core
    def test_class_implementing_protocol_is_recognized(self) -> None:
        class FakeWriter:
            def insert_batch_sync(
                self, kind: EventKind, records: Sequence[TelemetryEvent]
            ) -> None:
                pass

        assert isinstance(FakeWriter(), SyncEventWriter)
