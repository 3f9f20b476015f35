"""FastAPI adapter for the dashboard query endpoints."""

import asyncio
import functools
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from obsfly.adapters.frameworks.query_params import (
    MAX_ACCOUNT_ID,
    _parse_account_id,
    _parse_minutes_param,
    _parse_page_param,
    _parse_page_size_param,
    _parse_sort_order_param,
)
from obsfly.adapters.logging import EventStoreLogHandler
from obsfly.adapters.storage import SQLiteEventStore
from obsfly.config import Settings
from obsfly.core.comparator import DashboardRollups
from obsfly.core.exceptions import (
    DataSourceError,
    InvalidQueryError,
    MissingAccountScopeError,
)
from obsfly.core.explorer import TelemetryExplorer
from obsfly.core.flamegraph import build_flamegraph
from obsfly.core.health import HealthThresholds, ServiceHealthRollup, ServicesQuery
from obsfly.core.models import MetricQueryRequest
from obsfly.core.nodes import DEFAULT_SERIES_MINUTES, NodeRollups
from obsfly.core.ports import EventStorePort, SyncEventWriter
from obsfly.core.profiles import ProfileCatalog, ProfilesQuery
from obsfly.core.query_engine import MetricQueryEngine
from obsfly.core.timeparse import lookback_window

logger = logging.getLogger(__name__)

Endpoint = Callable[..., Awaitable[Any]]


def _json(payload: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(payload), status_code=status_code)


def _json_errors(endpoint: Endpoint) -> Endpoint:
    """Map engine errors to JSON error responses.

    DataSourceError -> 502; missing account scope or an invalid query -> 400.
    """

    @functools.wraps(endpoint)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await endpoint(*args, **kwargs)
        except (MissingAccountScopeError, InvalidQueryError) as exc:
            return _json({"error": str(exc)}, status_code=400)
        except DataSourceError as exc:
            logger.exception("Data source failure in %s", endpoint.__name__)
            return _json({"error": str(exc)}, status_code=502)

    return wrapper


def create_dashboard_router(
    store: EventStorePort,
    settings: Settings | None = None,
    thresholds: HealthThresholds | None = None,
    clock: Callable[[], float] = time.time,
) -> APIRouter:
    """Create a FastAPI router with the dashboard query endpoints.

    Args:
        store: Storage adapter implementing EventStorePort.
        settings: Engine settings; defaults to ``Settings()``.
        thresholds: Health and SLO policy; defaults to ``HealthThresholds()``.
        clock: Source of "now" in unix seconds.

    Returns:
        APIRouter with every endpoint under ``/api``.
    """
    settings = settings or Settings()
    thresholds = thresholds or HealthThresholds()
    engine = MetricQueryEngine(store, settings, clock)
    rollups = DashboardRollups(store, settings, clock)
    health = ServiceHealthRollup(store, settings, thresholds, clock)
    explorer = TelemetryExplorer(store, settings, clock)
    nodes = NodeRollups(store, settings, thresholds, clock)
    profiles = ProfileCatalog(store, settings, clock)
    router = APIRouter(prefix="/api")

    def minutes_of(
        minutes: str | None, time_range: str | None, default: int | None = None
    ) -> int:
        return _parse_minutes_param(
            minutes, time_range, default or settings.default_minutes
        )

    @router.get("/summary")
    @_json_errors
    async def get_summary(
        account_id: str | None = Query(default=None),
        minutes: str | None = Query(default=None),
        time_range: str | None = Query(default=None),
    ) -> Response:
        """Headline figures with their change vs the previous period."""
        summary = await rollups.dashboard_summary(
            _parse_account_id(account_id), minutes_of(minutes, time_range)
        )
        return _json(summary)

    @router.get("/system/performance")
    @_json_errors
    async def get_system_performance(
        account_id: str | None = Query(default=None),
        minutes: str | None = Query(default=None),
        time_range: str | None = Query(default=None),
        host: str | None = Query(default=None),
    ) -> Response:
        performance = await rollups.system_performance(
            _parse_account_id(account_id), minutes_of(minutes, time_range), host
        )
        return _json(performance)

    @router.get("/infra/hotspots")
    @_json_errors
    async def get_infra_hotspots(
        account_id: str | None = Query(default=None),
        minutes: str | None = Query(default=None),
        time_range: str | None = Query(default=None),
    ) -> Response:
        hotspots = await rollups.infra_hotspots(
            _parse_account_id(account_id), minutes_of(minutes, time_range)
        )
        return _json(hotspots)

    @router.get("/infra/health")
    @_json_errors
    async def get_infra_health(
        account_id: str | None = Query(default=None),
        minutes: str | None = Query(default=None),
        time_range: str | None = Query(default=None),
    ) -> Response:
        hosts = await health.infra_health(
            _parse_account_id(account_id), minutes_of(minutes, time_range)
        )
        return _json(hosts)

    @router.get("/apm/services")
    @_json_errors
    async def get_services(
        account_id: str | None = Query(default=None),
        minutes: str | None = Query(default=None),
        time_range: str | None = Query(default=None),
        language: str = Query(default=""),
        host: str = Query(default=""),
        search: str = Query(default=""),
        status: str = Query(default=""),
        slo_compliance: str = Query(default=""),
        sort_by: str = Query(default="name"),
        sort_order: str | None = Query(default=None),
        page: str | None = Query(default=None),
        page_size: str | None = Query(default=None),
    ) -> Response:
        """Paginated per-service health rows.

        Args:
            slo_compliance: meeting, warning, breaching or all.
            sort_by: name, language, instances, request_rate, error_rate,
                p95_latency or last_seen.
        """
        query = ServicesQuery(
            language=language,
            host_name=host,
            search=search,
            slo_status=slo_compliance,
            status=status,
            sort_by=sort_by,
            sort_order=_parse_sort_order_param(sort_order),
            page=_parse_page_param(page),
            page_size=_parse_page_size_param(page_size, settings.default_page_size),
        )
        services = await health.services_page(
            _parse_account_id(account_id), minutes_of(minutes, time_range), query
        )
        return _json(services)

    @router.get("/apm/services/{service_name}")
    @_json_errors
    async def get_service_detail(
        service_name: str,
        account_id: str | None = Query(default=None),
        minutes: str | None = Query(default=None),
        time_range: str | None = Query(default=None),
    ) -> Response:
        detail = await health.service_detail(
            _parse_account_id(account_id), service_name, minutes_of(minutes, time_range)
        )
        return _json(detail)

    @router.get("/apm/services/{service_name}/traces")
    @_json_errors
    async def get_service_traces(
        service_name: str,
        account_id: str | None = Query(default=None),
        minutes: str | None = Query(default=None),
        time_range: str | None = Query(default=None),
    ) -> Response:
        traces = await explorer.service_traces(
            _parse_account_id(account_id), service_name, minutes_of(minutes, time_range)
        )
        return _json(traces)

    @router.get("/latency/trend")
    @_json_errors
    async def get_latency_trend(
        account_id: str | None = Query(default=None),
        minutes: str | None = Query(default=None),
        time_range: str | None = Query(default=None),
    ) -> Response:
        """Mean request latency in milliseconds per minute."""
        points = await explorer.latency_trend(
            _parse_account_id(account_id), minutes_of(minutes, time_range)
        )
        return _json(points)

    @router.get("/logs/volume")
    @_json_errors
    async def get_log_volume(
        account_id: str | None = Query(default=None),
        minutes: str | None = Query(default=None),
        time_range: str | None = Query(default=None),
    ) -> Response:
        volume = await explorer.log_volume(
            _parse_account_id(account_id), minutes_of(minutes, time_range)
        )
        return _json(volume)

    @router.get("/logs/patterns")
    @_json_errors
    async def get_log_patterns(
        account_id: str | None = Query(default=None),
        minutes: str | None = Query(default=None),
        time_range: str | None = Query(default=None),
    ) -> Response:
        patterns = await explorer.log_patterns(
            _parse_account_id(account_id), minutes_of(minutes, time_range)
        )
        return _json(patterns)

    @router.get("/traces/slow")
    @_json_errors
    async def get_slow_traces(
        account_id: str | None = Query(default=None),
        minutes: str | None = Query(default=None),
        time_range: str | None = Query(default=None),
    ) -> Response:
        traces = await explorer.slow_traces(
            _parse_account_id(account_id), minutes_of(minutes, time_range)
        )
        return _json(traces)

    @router.get("/infra/nodes")
    @_json_errors
    async def get_infra_nodes(
        account_id: str | None = Query(default=None),
    ) -> Response:
        """Every host seen in the last five minutes."""
        return _json(await nodes.nodes(_parse_account_id(account_id)))

    @router.get("/infra/nodes/{host_name}/timeseries")
    @_json_errors
    async def get_node_timeseries(
        host_name: str,
        account_id: str | None = Query(default=None),
        minutes: str | None = Query(default=None),
        time_range: str | None = Query(default=None),
        group_by: str = Query(default=""),
    ) -> Response:
        """Per-minute series of every node metric of one host.

        Args:
            group_by: Optional label splitting each metric into series.
        """
        series = await nodes.timeseries(
            _parse_account_id(account_id),
            host_name,
            minutes_of(minutes, time_range, DEFAULT_SERIES_MINUTES),
            group_by,
        )
        return _json(series)

    @router.get("/infra/nodes/{host_name}/change")
    @_json_errors
    async def get_node_change(
        host_name: str,
        account_id: str | None = Query(default=None),
    ) -> Response:
        change = await nodes.change(_parse_account_id(account_id), host_name)
        return _json(change)

    @router.post("/metrics/query")
    @_json_errors
    async def post_metrics_query(request: Request) -> Response:
        """Resolve a batch of metric queries into labeled series."""
        try:
            body = await request.json()
        except ValueError as exc:
            raise InvalidQueryError("request body is not valid JSON") from exc
        if not isinstance(body, dict):
            raise InvalidQueryError("request body must be a JSON object")
        try:
            query = MetricQueryRequest.from_dict(body)
        except (AttributeError, TypeError, ValueError) as exc:
            raise InvalidQueryError(f"malformed metric query request: {exc}") from exc
        if not 0 < query.account_id <= MAX_ACCOUNT_ID:
            raise MissingAccountScopeError("account_id is required")
        return _json(await engine.query(query))

    @router.get("/metrics/names")
    @_json_errors
    async def get_metric_names(
        account_id: str | None = Query(default=None),
    ) -> Response:
        return _json(await engine.metric_names(_parse_account_id(account_id)))

    @router.get("/metrics/{metric_name}/labels")
    @_json_errors
    async def get_metric_labels(
        metric_name: str,
        account_id: str | None = Query(default=None),
    ) -> Response:
        labels = await engine.metric_labels(_parse_account_id(account_id), metric_name)
        return _json(labels)

    @router.get("/metrics/{metric_name}/labels/{label_key}/values")
    @_json_errors
    async def get_label_values(
        metric_name: str,
        label_key: str,
        account_id: str | None = Query(default=None),
    ) -> Response:
        values = await engine.label_values(
            _parse_account_id(account_id), metric_name, label_key
        )
        return _json(values)

    @router.get("/profiles")
    @_json_errors
    async def get_profiles(
        account_id: str | None = Query(default=None),
        minutes: str | None = Query(default=None),
        time_range: str | None = Query(default=None),
        service: str = Query(default=""),
        profile_type: str = Query(default=""),
        runtime: str = Query(default=""),
        host: str = Query(default=""),
        page: str | None = Query(default=None),
        page_size: str | None = Query(default=None),
    ) -> Response:
        """Paginated profile captures, newest first."""
        query = ProfilesQuery(
            service_name=service,
            profile_type=profile_type,
            runtime=runtime,
            host_name=host,
            page=_parse_page_param(page),
            page_size=_parse_page_size_param(page_size, settings.default_page_size),
        )
        result = await profiles.profiles_page(
            _parse_account_id(account_id), query, minutes_of(minutes, time_range)
        )
        return _json(result)

    @router.get("/profiles/cost")
    @_json_errors
    async def get_profiles_cost(
        account_id: str | None = Query(default=None),
        minutes: str | None = Query(default=None),
        time_range: str | None = Query(default=None),
    ) -> Response:
        estimate = await profiles.cost_estimate(
            _parse_account_id(account_id), minutes_of(minutes, time_range)
        )
        return _json(estimate)

    @router.get("/profiles/flamegraph")
    @_json_errors
    async def get_flamegraph(
        account_id: str | None = Query(default=None),
        minutes: str | None = Query(default=None),
        time_range: str | None = Query(default=None),
        service: str = Query(default=""),
        profile_type: str = Query(default=""),
    ) -> Response:
        """Call tree of the newest stack samples of one service."""
        account = _parse_account_id(account_id)
        if not service or not profile_type:
            raise InvalidQueryError("service and profile_type are required")
        root = await build_flamegraph(
            store,
            account,
            service,
            profile_type,
            lookback_window(clock(), minutes_of(minutes, time_range)),
            max_samples=settings.max_stack_samples,
            timeout_seconds=settings.query_timeout_seconds,
        )
        return _json(root)

    return router


async def _purge_periodically(store: EventStorePort, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            dropped = await store.purge_expired(time.time())
        except DataSourceError:
            logger.exception("Retention purge failed")
            continue
        if dropped:
            logger.info("Retention purge dropped %d events", dropped)


def create_app(
    settings: Settings | None = None,
    store: EventStorePort | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Settings; read from the environment when omitted.
        store: Event store; a SQLiteEventStore at ``settings.db_path`` when
            omitted.

    Returns:
        Configured FastAPI application instance.
    """
    settings = settings or Settings.from_env()
    store = store or SQLiteEventStore(settings.db_path)

    package_logger = logging.getLogger("obsfly")
    package_logger.setLevel(settings.log_level)
    handler: EventStoreLogHandler | None = None
    if settings.capture_logs and isinstance(store, SyncEventWriter):
        handler = EventStoreLogHandler(store, account_id=settings.log_account_id)
        package_logger.addHandler(handler)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        """Run the retention purge while the app is up."""
        task = asyncio.create_task(
            _purge_periodically(store, settings.purge_interval_seconds)
        )
        yield
        task.cancel()
        if handler is not None:
            package_logger.removeHandler(handler)
        close = getattr(store, "close", None)
        if close is not None:
            await close()

    app = FastAPI(title="obsfly", lifespan=lifespan)
    app.include_router(create_dashboard_router(store, settings))
    return app
