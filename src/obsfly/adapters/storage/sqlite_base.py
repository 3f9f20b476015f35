"""Base class for SQLite event store adapters."""

import asyncio
import json
import sqlite3
import threading
from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import asynccontextmanager, contextmanager
from typing import Any

import aiosqlite

from obsfly.core.exceptions import DataSourceError


def _safe_json_loads(data: str, default: Any = None) -> Any:
    """Safely parse JSON data, returning default on decode error.

    Args:
        data: JSON string to parse.
        default: Value to return if parsing fails.

    Returns:
        Parsed JSON, or default if parsing fails.
    """
    try:
        return json.loads(data)
    except (json.JSONDecodeError, TypeError):
        return default


class AsyncConnectionManager:
    """Manages async (aiosqlite) database connections.

    Handles schema initialization and connection lifecycle for async contexts.
    For :memory: databases, maintains a persistent connection since SQLite
    in-memory databases are connection-scoped.
    """

    def __init__(self, db_path: str, schema: str) -> None:
        self._db_path = db_path
        self._schema = schema
        self._initialized = False
        self._init_lock: asyncio.Lock | None = None
        self._persistent_conn: aiosqlite.Connection | None = None

    def _get_lock(self) -> asyncio.Lock:
        """Get or create the initialization lock (lazy to avoid event loop issues)."""
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        return self._init_lock

    @property
    def _is_memory(self) -> bool:
        return self._db_path == ":memory:"

    async def _ensure_initialized(self) -> None:
        """Initialize database schema once."""
        if self._initialized:
            return
        async with self._get_lock():
            if self._initialized:
                return
            if self._is_memory:
                self._persistent_conn = await aiosqlite.connect(":memory:")
                await self._persistent_conn.executescript(self._schema)
            else:
                async with aiosqlite.connect(self._db_path) as db:
                    await db.execute("PRAGMA journal_mode=WAL")
                    await db.executescript(self._schema)
            self._initialized = True

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Context manager for async database connections.

        Automatically closes connections for file-based databases.
        For :memory: databases, keeps connections open (they're persistent).
        """
        await self._ensure_initialized()
        if self._is_memory:
            if self._persistent_conn is None:
                raise RuntimeError("Memory database connection not initialized")
            yield self._persistent_conn
            return
        db = await aiosqlite.connect(self._db_path)
        try:
            yield db
        finally:
            await db.close()

    async def close(self) -> None:
        """Close persistent connection (for :memory: databases)."""
        if self._persistent_conn is not None:
            await self._persistent_conn.close()
            self._persistent_conn = None
            self._initialized = False


class SyncConnectionManager:
    """Manages sync (sqlite3) database connections.

    IMPORTANT: For :memory: databases, this manager maintains a completely
    separate database instance from AsyncConnectionManager. Use a file path
    when sync writers (e.g. the logging handler) and async readers must see
    the same events.
    """

    def __init__(self, db_path: str, schema: str) -> None:
        self._db_path = db_path
        self._schema = schema
        self._initialized = False
        self._lock = threading.Lock()
        self._persistent_conn: sqlite3.Connection | None = None

    def _ensure_initialized(self) -> None:
        """Initialize database schema synchronously."""
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            if self._db_path == ":memory:":
                self._persistent_conn = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._persistent_conn.executescript(self._schema)
            else:
                with sqlite3.connect(self._db_path) as db:
                    db.execute("PRAGMA journal_mode=WAL")
                    db.executescript(self._schema)
            self._initialized = True

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for sync database connections."""
        self._ensure_initialized()
        if self._db_path == ":memory:":
            if self._persistent_conn is None:
                raise RuntimeError("Sync memory database connection not initialized")
            with self._lock:
                yield self._persistent_conn
            return
        conn = sqlite3.connect(self._db_path)
        try:
            yield conn
        finally:
            conn.close()


class SQLiteStoreBase:
    """Base class for SQLite store adapters.

    Delegates connection lifecycle to AsyncConnectionManager and
    SyncConnectionManager. Driver errors, and integers too large for SQLite
    to bind, surface as DataSourceError.
    A cancelled read interrupts the statement still running in SQLite so
    an expired deadline also stops the scan.
    """

    def __init__(self, db_path: str, schema: str) -> None:
        self._db_path = db_path
        self._async_manager = AsyncConnectionManager(db_path, schema)
        self._sync_manager = SyncConnectionManager(db_path, schema)

    async def close(self) -> None:
        """Close persistent connection (for :memory: databases)."""
        await self._async_manager.close()

    async def _fetch_all(self, sql: str, params: Sequence[Any]) -> list[Any]:
        """Run a read and return every row."""
        try:
            async with self._async_manager.connection() as db:
                try:
                    async with db.execute(sql, tuple(params)) as cursor:
                        return list(await cursor.fetchall())
                except asyncio.CancelledError:
                    await db.interrupt()
                    raise
        except (sqlite3.Error, OverflowError) as exc:
            raise DataSourceError(f"event store query failed: {exc}") from exc

    async def _execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a single write and return the affected row count."""
        try:
            async with self._async_manager.connection() as db:
                cursor = await db.execute(sql, tuple(params))
                await db.commit()
                return cursor.rowcount
        except (sqlite3.Error, OverflowError) as exc:
            raise DataSourceError(f"event store write failed: {exc}") from exc

    async def _execute_many(self, sql: str, rows: Sequence[tuple[Any, ...]]) -> None:
        try:
            async with self._async_manager.connection() as db:
                await db.executemany(sql, rows)
                await db.commit()
        except (sqlite3.Error, OverflowError) as exc:
            raise DataSourceError(f"event store write failed: {exc}") from exc

    def _execute_many_sync(self, sql: str, rows: Sequence[tuple[Any, ...]]) -> None:
        """Synchronous batch write for non-async contexts."""
        try:
            with self._sync_manager.connection() as conn:
                conn.executemany(sql, rows)
                conn.commit()
        except (sqlite3.Error, OverflowError) as exc:
            raise DataSourceError(f"event store write failed: {exc}") from exc

    def _fetch_all_sync(self, sql: str, params: Sequence[Any] = ()) -> list[Any]:
        """Synchronous read for non-async contexts (testing)."""
        try:
            with self._sync_manager.connection() as conn:
                return list(conn.execute(sql, tuple(params)).fetchall())
        except (sqlite3.Error, OverflowError) as exc:
            raise DataSourceError(f"event store query failed: {exc}") from exc
