"""Shared test fixtures for all test modules.

The seeded fixtures describe one small account with two instrumented
services, two hosts and a profiled call tree, all relative to ``NOW``:

- ``svc-a`` (java, pods a-1/a-2 on node-1): four 200 requests of value 30,
  latencies 100/120/200/50 ms, heap used 50 then 70 of a 200 byte heap,
  plus one request of value 20 in the previous period.
- ``svc-b`` (python, pod b-1 on node-2): one 500 and one 200 request of
  value 10, a 1.5 s latency and a 2 ms thread lock wait.
- node-1 CPU 50/70 (40 in the previous period), memory 60, 2 MiB network
  (1 MiB in the previous period); node-2 CPU 95, memory 85.
- ``cpu_usage`` by device: sda 10 then 20, sdb 30.
- traces for svc-a (one OK, one error) and svc-c (no metrics).
- cpu profile samples main/handler 100 and main/db 50 for svc-a.
- one request and one CPU point for ``OTHER_ACCOUNT``.
"""

from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import httpx
import pytest

from obsfly.adapters.storage import InMemoryEventStore, SQLiteEventStore
from obsfly.core.models import (
    EventKind,
    LogRecord,
    MetricPoint,
    ProfileSample,
    TelemetryEvent,
    TraceSpan,
)
from obsfly.core.ports import EventStorePort

NOW = 1_700_000_040.0
ACCOUNT = 1
OTHER_ACCOUNT = 2
MIB = 1024 * 1024


def _metric(
    name: str,
    value: float,
    ago: float,
    service: str = "",
    host: str = "",
    labels: dict[str, str] | None = None,
    pod: str = "",
    account_id: int = ACCOUNT,
) -> MetricPoint:
    return MetricPoint(
        account_id=account_id,
        timestamp=NOW - ago,
        service_name=service,
        host_name=host,
        labels=labels or {},
        resource_attributes={"k8s.pod.name": pod} if pod else {},
        name=name,
        value=value,
    )


def _span(
    service: str, span_id: str, ago: float, duration_ms: int, status_code: int
) -> TraceSpan:
    start = int((NOW - ago) * 1_000_000_000)
    return TraceSpan(
        account_id=ACCOUNT,
        timestamp=NOW - ago,
        service_name=service,
        trace_id=f"trace-{span_id}",
        span_id=span_id,
        name="GET /orders",
        start_time_unix_nano=start,
        end_time_unix_nano=start + duration_ms * 1_000_000,
        status_code=status_code,
    )


def _sample(
    frames: tuple[str, ...], value: int, ago: float, profile_type: str = "cpu"
) -> ProfileSample:
    return ProfileSample(
        account_id=ACCOUNT,
        timestamp=NOW - ago,
        service_name="svc-a",
        profile_type=profile_type,
        function_names=frames,
        sample_value=value,
        runtime="jvm",
    )


def build_seed_events() -> dict[EventKind, list[TelemetryEvent]]:
    java = {"language": "java"}
    python = {"language": "python"}
    requests = "container_http_requests_total"
    durations = "container_http_requests_duration_seconds_total"
    metrics: list[TelemetryEvent] = [
        # svc-a
        _metric(requests, 30, 600, "svc-a", "node-1", {**java, "status": "200"}, "a-1"),
        _metric(requests, 30, 500, "svc-a", "node-1", {**java, "status": "200"}, "a-2"),
        _metric(requests, 30, 400, "svc-a", "node-1", {**java, "status": "200"}, "a-1"),
        _metric(requests, 30, 300, "svc-a", "node-1", {**java, "status": "200"}, "a-2"),
        _metric(requests, 20, 1200, "svc-a", "node-1", {**java, "status": "200"}, "a-1"),
        _metric(durations, 0.1, 600, "svc-a", "node-1", java, "a-1"),
        _metric(durations, 0.12, 500, "svc-a", "node-1", java, "a-1"),
        _metric(durations, 0.2, 400, "svc-a", "node-1", java, "a-1"),
        _metric(durations, 0.05, 300, "svc-a", "node-1", java, "a-1"),
        _metric("container_jvm_heap_used_bytes", 50, 200, "svc-a", "node-1", java, "a-1"),
        _metric("container_jvm_heap_used_bytes", 70, 100, "svc-a", "node-1", java, "a-1"),
        _metric("container_jvm_heap_size_bytes", 200, 100, "svc-a", "node-1", java, "a-1"),
        # svc-b
        _metric(requests, 10, 450, "svc-b", "node-2", {**python, "status": "500"}, "b-1"),
        _metric(requests, 10, 350, "svc-b", "node-2", {**python, "status": "200"}, "b-1"),
        _metric(durations, 1.5, 450, "svc-b", "node-2", python, "b-1"),
        _metric(
            "container_python_thread_lock_wait_time_seconds",
            0.002,
            350,
            "svc-b",
            "node-2",
            python,
            "b-1",
        ),
        # hosts
        _metric("node_cpu_usage_percent", 50, 600, host="node-1"),
        _metric("node_cpu_usage_percent", 70, 300, host="node-1"),
        _metric("node_cpu_usage_percent", 40, 1200, host="node-1"),
        _metric("node_cpu_usage_percent", 95, 300, host="node-2"),
        _metric("node_memory_usage_percent", 60, 300, host="node-1"),
        _metric("node_memory_usage_percent", 85, 300, host="node-2"),
        _metric("node_net_received_bytes_total", MIB, 300, host="node-1"),
        _metric("node_net_transmitted_bytes_total", MIB, 200, host="node-1"),
        _metric("node_net_received_bytes_total", MIB, 1200, host="node-1"),
        # devices
        _metric("cpu_usage", 10, 120, host="node-1", labels={"device": "sda"}),
        _metric("cpu_usage", 20, 60, host="node-1", labels={"device": "sda"}),
        _metric("cpu_usage", 30, 120, host="node-1", labels={"device": "sdb"}),
        # another tenant
        _metric(
            requests,
            99,
            300,
            "svc-x",
            "node-9",
            {"status": "500"},
            "x-1",
            account_id=OTHER_ACCOUNT,
        ),
        _metric("node_cpu_usage_percent", 99, 300, host="node-9", account_id=OTHER_ACCOUNT),
    ]
    traces: list[TelemetryEvent] = [
        _span("svc-a", "s1", 500, 100, 1),
        _span("svc-a", "s2", 400, 300, 2),
        _span("svc-c", "s3", 300, 50, 1),
    ]
    profiles: list[TelemetryEvent] = [
        _sample(("main", "handler"), 100, 300),
        _sample(("main", "db"), 50, 200),
        _sample(("main", "alloc"), 10, 250, profile_type="memory"),
    ]
    logs: list[TelemetryEvent] = [
        LogRecord(
            account_id=ACCOUNT,
            timestamp=NOW - 100,
            service_name="svc-a",
            severity_text="ERROR",
            body="payment declined",
        )
    ]
    return {
        EventKind.METRIC: metrics,
        EventKind.TRACE: traces,
        EventKind.PROFILE: profiles,
        EventKind.LOG: logs,
    }


@pytest.fixture
def now() -> float:
    """The fixed "now" every seeded timestamp is relative to."""
    return NOW


@pytest.fixture
def clock() -> Callable[[], float]:
    """A clock frozen at ``NOW``."""
    return lambda: NOW


@pytest.fixture
def events_db_path(tmp_path: Path) -> str:
    """Provide a temporary database path for event store tests."""
    return str(tmp_path / "events.db")


@pytest.fixture
def memory_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
async def sqlite_store() -> AsyncGenerator[SQLiteEventStore]:
    """In-memory SQLite event store, closed after the test."""
    store = SQLiteEventStore(":memory:")
    yield store
    await store.close()


@pytest.fixture(params=["memory", "sqlite"])
async def event_store(request: pytest.FixtureRequest) -> AsyncGenerator[EventStorePort]:
    """Every event store adapter in turn."""
    if request.param == "memory":
        yield InMemoryEventStore()
        return
    store = SQLiteEventStore(":memory:")
    yield store
    await store.close()


@pytest.fixture
async def seeded_store(event_store: EventStorePort) -> EventStorePort:
    """``event_store`` holding the seeded events."""
    for kind, events in build_seed_events().items():
        await event_store.insert_batch(kind, events)
    return event_store


@pytest.fixture
async def seeded_memory_store(memory_store: InMemoryEventStore) -> InMemoryEventStore:
    """In-memory store holding the seeded events."""
    for kind, events in build_seed_events().items():
        await memory_store.insert_batch(kind, events)
    return memory_store


# === ASGI Test Fixtures ===


@pytest.fixture
def asgi_test_client():
    """Factory fixture that creates an httpx.AsyncClient for ASGI testing.

    Usage:
        async def test_something(asgi_test_client):
            app = create_app(settings, store)
            async with asgi_test_client(app) as client:
                response = await client.get("/api/summary?account_id=1")
    """

    def _get_client(app):
        """Return an AsyncClient context manager for the given app."""
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        )

    return _get_client
