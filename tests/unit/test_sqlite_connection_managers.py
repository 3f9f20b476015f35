"""Tests for SQLite connection managers and the store base class.

The async and sync managers initialize the schema on first use and keep
independent databases for :memory: paths. The base class turns driver
errors into DataSourceError.
"""

import pytest

from obsfly.adapters.storage.sqlite_base import (
    AsyncConnectionManager,
    SQLiteStoreBase,
    SyncConnectionManager,
    _safe_json_loads,
)
from obsfly.core.exceptions import DataSourceError

pytestmark = [
    pytest.mark.tier(1),
    pytest.mark.tra("Adapter.SQLiteStorage.ConnectionManager"),
]

SCHEMA = """
CREATE TABLE IF NOT EXISTS samples (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL,
    value REAL NOT NULL
);
"""


class TestAsyncConnectionManager:
    """Tests for AsyncConnectionManager."""

    @pytest.mark.storage
    async def test_initializes_schema_once(self) -> None:
        manager = AsyncConnectionManager(":memory:", SCHEMA)
        try:
            async with manager.connection() as conn:
                await conn.execute(
                    "INSERT INTO samples (account_id, value) VALUES (?, ?)", (1, 2.5)
                )
                await conn.commit()
            async with manager.connection() as conn:
                cursor = await conn.execute("SELECT SUM(value) FROM samples")
                row = await cursor.fetchone()
                assert row[0] == 2.5
        finally:
            await manager.close()

    @pytest.mark.storage
    async def test_file_database_uses_wal(self, tmp_path) -> None:
        manager = AsyncConnectionManager(str(tmp_path / "wal.db"), SCHEMA)
        async with manager.connection() as conn:
            cursor = await conn.execute("PRAGMA journal_mode")
            row = await cursor.fetchone()
        assert row[0] == "wal"


class TestSyncConnectionManager:
    """Tests for SyncConnectionManager."""

    @pytest.mark.storage
    def test_initializes_schema(self) -> None:
        manager = SyncConnectionManager(":memory:", SCHEMA)
        with manager.connection() as conn:
            conn.execute("INSERT INTO samples (account_id, value) VALUES (?, ?)", (1, 4.0))
            conn.commit()
            row = conn.execute("SELECT COUNT(*) FROM samples").fetchone()
            assert row[0] == 1


class TestConnectionManagerIndependence:
    """Sync and async managers hold separate :memory: databases."""

    @pytest.mark.storage
    async def test_memory_databases_are_separate(self) -> None:
        async_manager = AsyncConnectionManager(":memory:", SCHEMA)
        sync_manager = SyncConnectionManager(":memory:", SCHEMA)
        try:
            async with async_manager.connection() as conn:
                await conn.execute(
                    "INSERT INTO samples (account_id, value) VALUES (?, ?)", (1, 1.0)
                )
                await conn.commit()
            with sync_manager.connection() as conn:
                conn.execute(
                    "INSERT INTO samples (account_id, value) VALUES (?, ?)", (2, 2.0)
                )
                conn.commit()

            async with async_manager.connection() as conn:
                cursor = await conn.execute("SELECT account_id FROM samples")
                assert [row[0] async for row in cursor] == [1]
            with sync_manager.connection() as conn:
                rows = conn.execute("SELECT account_id FROM samples").fetchall()
                assert [row[0] for row in rows] == [2]
        finally:
            await async_manager.close()


class TestSQLiteStoreBase:
    """Tests for driver error wrapping."""

    @pytest.mark.storage
    async def test_read_errors_become_data_source_errors(self) -> None:
        store = SQLiteStoreBase(":memory:", SCHEMA)
        try:
            with pytest.raises(DataSourceError):
                await store._fetch_all("SELECT * FROM missing_table", ())
        finally:
            await store.close()

    @pytest.mark.storage
    async def test_write_errors_become_data_source_errors(self) -> None:
        store = SQLiteStoreBase(":memory:", SCHEMA)
        try:
            with pytest.raises(DataSourceError):
                await store._execute("INSERT INTO samples (value) VALUES (?)", (1.0,))
        finally:
            await store.close()

    @pytest.mark.storage
    def test_sync_errors_become_data_source_errors(self) -> None:
        store = SQLiteStoreBase(":memory:", SCHEMA)
        with pytest.raises(DataSourceError):
            store._fetch_all_sync("SELECT nope FROM samples")

    @pytest.mark.storage
    async def test_execute_returns_affected_rows(self) -> None:
        store = SQLiteStoreBase(":memory:", SCHEMA)
        try:
            await store._execute_many(
                "INSERT INTO samples (account_id, value) VALUES (?, ?)",
                [(1, 1.0), (1, 2.0), (2, 3.0)],
            )
            assert await store._execute("DELETE FROM samples WHERE account_id = ?", (1,)) == 2
        finally:
            await store.close()


class TestSafeJsonLoads:
    """Tests for tolerant JSON decoding of stored columns."""

    @pytest.mark.storage
    def test_decodes_valid_json(self) -> None:
        assert _safe_json_loads('{"device": "sda"}') == {"device": "sda"}

    @pytest.mark.storage
    def test_returns_default_on_bad_input(self) -> None:
        assert _safe_json_loads("{not json", default={}) == {}
        assert _safe_json_loads(None, default=[]) == []  # type: ignore[arg-type]
