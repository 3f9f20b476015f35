"""Profile captures: the paginated list and the storage cost estimate."""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from obsfly.config import Settings
from obsfly.core.comparator import GIB
from obsfly.core.deadline import deadline
from obsfly.core.exceptions import InvalidQueryError
from obsfly.core.filters import FilterBuilder, Predicate
from obsfly.core.models import (
    Aggregation,
    CostEstimate,
    EventKind,
    ProfilesPage,
    TimeWindow,
)
from obsfly.core.ports import EventStorePort, RangeQuery
from obsfly.core.timeparse import lookback_window

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
COST_PER_GB_MONTH = 0.10
DAYS_PER_MONTH = 30


@dataclass(frozen=True)
class ProfilesQuery:
    """Optional equality filters plus a 1-based page."""

    service_name: str = ""
    profile_type: str = ""
    runtime: str = ""
    host_name: str = ""
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE


class ProfileCatalog:
    """Lists profile captures and prices their storage."""

    def __init__(
        self,
        store: EventStorePort,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._settings = settings or Settings()
        self._clock = clock

    async def profiles_page(
        self, account_id: int, query: ProfilesQuery, minutes: int
    ) -> ProfilesPage:
        """One page of captures, newest first; empty filters match everything."""
        if query.page < 1:
            raise InvalidQueryError("page must be at least 1")
        if not 1 <= query.page_size <= MAX_PAGE_SIZE:
            raise InvalidQueryError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
        builder = FilterBuilder(account_id, EventKind.PROFILE)
        for name, value in (
            ("service_name", query.service_name),
            ("profile_type", query.profile_type),
            ("runtime", query.runtime),
            ("host_name", query.host_name),
        ):
            if value:
                builder.where(name, value)
        window = lookback_window(self._clock(), minutes)
        async with deadline(self._settings.query_timeout_seconds):
            sessions = await self._store.profile_sessions(builder.build(), window)
        start = (query.page - 1) * query.page_size
        return ProfilesPage(
            profiles=sessions[start : start + query.page_size],
            total_count=len(sessions),
            page=query.page,
            page_size=query.page_size,
        )

    async def _per_type(
        self, predicate: Predicate, window: TimeWindow, measure: str
    ) -> dict[str, float]:
        rows = await self._store.aggregate(
            RangeQuery(
                predicate=predicate,
                window=window,
                aggregation=Aggregation.SUM,
                group_by=("profile_type",),
                measure=measure,
            )
        )
        return {row.group[0]: row.value for row in rows}

    async def cost_estimate(self, account_id: int, minutes: int) -> CostEstimate:
        """Bytes and samples per profile type over the lookback, priced per GiB."""
        predicate = FilterBuilder(account_id, EventKind.PROFILE).build()
        window = lookback_window(self._clock(), minutes)
        async with deadline(self._settings.query_timeout_seconds):
            size_by_type, samples_by_type = await asyncio.gather(
                self._per_type(predicate, window, "bytes"),
                self._per_type(predicate, window, "sample_count"),
            )
        gib_by_type = {key: value / GIB for key, value in size_by_type.items()}
        total = sum(gib_by_type.values())
        monthly = total * COST_PER_GB_MONTH
        logger.debug("Profiles of account %s hold %.3f GiB", account_id, total)
        return CostEstimate(
            total_storage_gb=total,
            daily_cost_usd=monthly / DAYS_PER_MONTH,
            retention_cost_usd=monthly,
            profile_type_costs=gib_by_type,
            sample_distribution={
                key: int(value) for key, value in samples_by_type.items()
            },
        )
