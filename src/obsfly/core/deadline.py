"""Request deadline shared by every engine operation."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from obsfly.core.exceptions import DataSourceError


@asynccontextmanager
async def deadline(seconds: float | None) -> AsyncIterator[None]:
    """Cancel the enclosed store round trips after ``seconds``.

    Expiry surfaces as ``DataSourceError``. ``None`` disables the deadline.
    """
    try:
        async with asyncio.timeout(seconds):
            yield
    except TimeoutError as exc:
        raise DataSourceError(
            f"event store did not answer within {seconds} seconds"
        ) from exc
