"""Unit tests for db.py - Database manager."""

import asyncpg
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from contextlib import asynccontextmanager

from db import (
    KIND_TABLES,
    CachedItem,
    DatabaseManager,
    StoreIntegrityError,
    parse_group_restrictions,
    serialize_group_restrictions,
)
from plugins.base import ItemKind


def _acquire_returning(conn):
    @asynccontextmanager
    async def mock_acquire():
        yield conn

    return mock_acquire


def _conn_with_transaction():
    conn = AsyncMock()
    mock_transaction = AsyncMock()
    mock_transaction.__aenter__ = AsyncMock(return_value=mock_transaction)
    mock_transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=mock_transaction)
    return conn


class TestGroupRestrictionSerialization:
    """Tests for group restriction encoding."""

    def test_serialize_keeps_order(self):
        assert serialize_group_restrictions(["foo", "biz"]) == '["foo","biz"]'

    def test_serialize_empty(self):
        assert serialize_group_restrictions([]) == "[]"
        assert serialize_group_restrictions(None) == "[]"

    def test_parse(self):
        assert parse_group_restrictions('["foo", "bar"]') == ["foo", "bar"]

    def test_parse_empty_values(self):
        assert parse_group_restrictions("[]") == []
        assert parse_group_restrictions("") == []
        assert parse_group_restrictions(None) == []

    def test_parse_malformed(self):
        assert parse_group_restrictions("{not json") == []
        assert parse_group_restrictions('{"a": 1}') == []


class TestKindTables:
    """Tests for the per-kind table mapping."""

    def test_resource_tables(self):
        tables = KIND_TABLES[ItemKind.RESOURCE]
        assert tables.items == "calendar_resources"
        assert tables.metadata == "calendar_resources_md"
        assert tables.external_id_column == "resource_id"

    def test_room_tables(self):
        tables = KIND_TABLES[ItemKind.ROOM]
        assert tables.items == "calendar_rooms"
        assert tables.metadata == "calendar_rooms_md"
        assert tables.external_id_column == "room_id"


class TestDatabaseManager:
    """Tests for DatabaseManager class."""

    def test_init(self):
        """Test database manager initialization."""
        db = DatabaseManager(
            host="localhost",
            port=5432,
            database="testdb",
            user="testuser",
            password="testpass",
            min_pool_size=3,
            max_pool_size=10,
        )
        assert db.host == "localhost"
        assert db.database == "testdb"
        assert db.min_pool_size == 3
        assert db.max_pool_size == 10
        assert db.pool is None

    def test_ensure_connected_raises_when_not_connected(self):
        """Test _ensure_connected raises when pool is None."""
        db = DatabaseManager("localhost", 5432, "testdb", "testuser", "testpass")
        with pytest.raises(RuntimeError) as exc_info:
            db._ensure_connected()
        assert "Database not connected" in str(exc_info.value)

    def test_parse_item_row(self, sample_item_row):
        """Test parsing an item row into a CachedItem."""
        db = DatabaseManager("localhost", 5432, "testdb", "testuser", "testpass")

        item = db._parse_item_row(ItemKind.RESOURCE, sample_item_row)

        assert item == CachedItem(
            id=6,
            backend_id="backend3",
            external_id="res6",
            display_name="Pointer",
            email="res6@foo.bar",
            group_restrictions=["foo", "bar"],
        )

    def test_parse_room_row(self):
        db = DatabaseManager("localhost", 5432, "testdb", "testuser", "testpass")
        row = {
            "id": 1,
            "backend_id": "b",
            "room_id": "r1",
            "displayname": None,
            "email": None,
            "group_restrictions": None,
        }

        item = db._parse_item_row(ItemKind.ROOM, row)

        assert item.external_id == "r1"
        assert item.display_name == ""
        assert item.email == ""
        assert item.group_restrictions == []


@pytest.mark.asyncio
class TestDatabaseManagerAsync:
    """Async tests for DatabaseManager."""

    @pytest.fixture
    def db_manager(self, mock_pool):
        db = DatabaseManager("localhost", 5432, "testdb", "testuser", "testpass")
        db.pool = mock_pool
        return db

    async def test_connect(self):
        db = DatabaseManager("localhost", 5432, "testdb", "testuser", "testpass")
        with patch("db.asyncpg.create_pool", new=AsyncMock()) as create_pool:
            await db.connect()

        create_pool.assert_awaited_once()
        assert create_pool.call_args.kwargs["database"] == "testdb"
        assert db.pool is create_pool.return_value

    async def test_initialize_schema_runs_migrations(self, db_manager, mock_pool):
        with patch("db.run_migrations", new=AsyncMock(return_value=1)) as run:
            await db_manager.initialize_schema()

        run.assert_awaited_once_with(mock_pool)

    async def test_find_all_for_backend(self, db_manager, mock_pool, sample_item_row):
        conn = AsyncMock()
        conn.fetch = AsyncMock(return_value=[sample_item_row])
        mock_pool.acquire = _acquire_returning(conn)

        items = await db_manager.find_all_for_backend(ItemKind.RESOURCE, "backend3")

        sql, backend_id = conn.fetch.call_args[0]
        assert "FROM calendar_resources WHERE backend_id = $1" in sql
        assert backend_id == "backend3"
        assert [i.external_id for i in items] == ["res6"]

    async def test_find_all_for_kind_uses_room_table(self, db_manager, mock_pool):
        conn = AsyncMock()
        conn.fetch = AsyncMock(return_value=[])
        mock_pool.acquire = _acquire_returning(conn)

        items = await db_manager.find_all_for_kind(ItemKind.ROOM)

        assert items == []
        assert "FROM calendar_rooms" in conn.fetch.call_args[0][0]

    async def test_get_item_not_found(self, db_manager, mock_pool):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=None)
        mock_pool.acquire = _acquire_returning(conn)

        assert await db_manager.get_item(ItemKind.RESOURCE, 999) is None

    async def test_list_backend_ids(self, db_manager, mock_pool):
        conn = AsyncMock()
        conn.fetch = AsyncMock(
            return_value=[{"backend_id": "backend1"}, {"backend_id": "backend2"}]
        )
        mock_pool.acquire = _acquire_returning(conn)

        result = await db_manager.list_backend_ids(ItemKind.RESOURCE)

        assert result == ["backend1", "backend2"]

    async def test_insert_item(self, db_manager, mock_pool):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(return_value=7)
        mock_pool.acquire = _acquire_returning(conn)

        item_id = await db_manager.insert_item(
            ItemKind.RESOURCE,
            backend_id="backend3",
            external_id="res7",
            display_name="Resource4",
            email="res7@foo.bar",
            group_restrictions=["biz"],
        )

        assert item_id == 7
        args = conn.fetchval.call_args[0]
        assert "INSERT INTO calendar_resources" in args[0]
        assert "ON CONFLICT (backend_id, resource_id)" in args[0]
        assert args[1:] == ("backend3", "res7", "Resource4", "res7@foo.bar", '["biz"]')

    async def test_insert_item_defaults(self, db_manager, mock_pool):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(return_value=1)
        mock_pool.acquire = _acquire_returning(conn)

        await db_manager.insert_item(ItemKind.ROOM, "b", "r1", "Room 1")

        args = conn.fetchval.call_args[0]
        assert "ON CONFLICT (backend_id, room_id)" in args[0]
        assert args[4:] == ("", "[]")

    async def test_insert_item_integrity_error(self, db_manager, mock_pool):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(
            side_effect=asyncpg.UniqueViolationError("duplicate key value")
        )
        mock_pool.acquire = _acquire_returning(conn)

        with pytest.raises(StoreIntegrityError, match="backend3/res7"):
            await db_manager.insert_item(ItemKind.RESOURCE, "backend3", "res7", "X")

    async def test_update_item(self, db_manager, mock_pool):
        conn = AsyncMock()
        mock_pool.acquire = _acquire_returning(conn)

        await db_manager.update_item(
            ItemKind.RESOURCE,
            6,
            display_name="Pointer123",
            email="res6@foo.bar",
            group_restrictions=["foo", "biz"],
        )

        args = conn.execute.call_args[0]
        assert "UPDATE calendar_resources" in args[0]
        assert args[1:] == ("Pointer123", "res6@foo.bar", '["foo","biz"]', 6)

    async def test_update_item_value_too_long(self, db_manager, mock_pool):
        conn = AsyncMock()
        conn.execute = AsyncMock(
            side_effect=asyncpg.StringDataRightTruncationError(
                "value too long for type character varying(255)"
            )
        )
        mock_pool.acquire = _acquire_returning(conn)

        with pytest.raises(StoreIntegrityError, match="value too long"):
            await db_manager.update_item(
                ItemKind.RESOURCE,
                6,
                display_name="x" * 300,
                email="res6@foo.bar",
                group_restrictions=[],
            )

    async def test_insert_item_value_too_long(self, db_manager, mock_pool):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(
            side_effect=asyncpg.StringDataRightTruncationError("value too long")
        )
        mock_pool.acquire = _acquire_returning(conn)

        with pytest.raises(StoreIntegrityError, match="backend3/res7"):
            await db_manager.insert_item(ItemKind.ROOM, "backend3", "res7", "x" * 300)

    async def test_delete_item_removes_metadata_first(self, db_manager, mock_pool):
        conn = _conn_with_transaction()
        mock_pool.acquire = _acquire_returning(conn)

        await db_manager.delete_item(ItemKind.ROOM, 5)

        conn.transaction.assert_called_once()
        statements = [c.args[0] for c in conn.execute.call_args_list]
        assert statements[0].startswith("DELETE FROM calendar_rooms_md")
        assert "WHERE room_id = $1" in statements[0]
        assert statements[1] == "DELETE FROM calendar_rooms WHERE id = $1"

    async def test_delete_items_for_backend(self, db_manager, mock_pool):
        conn = _conn_with_transaction()
        conn.fetch = AsyncMock(return_value=[{"id": 1}, {"id": 2}])
        mock_pool.acquire = _acquire_returning(conn)

        deleted = await db_manager.delete_items_for_backend(
            ItemKind.RESOURCE, "backend1"
        )

        assert deleted == 2
        assert "DELETE FROM calendar_resources_md" in conn.execute.call_args[0][0]

    async def test_get_metadata(self, db_manager, mock_pool):
        conn = AsyncMock()
        conn.fetch = AsyncMock(
            return_value=[
                {"key": "meta1", "value": "value1"},
                {"key": "meta2", "value": "value2"},
            ]
        )
        mock_pool.acquire = _acquire_returning(conn)

        result = await db_manager.get_metadata(ItemKind.RESOURCE, 3)

        assert result == {"meta1": "value1", "meta2": "value2"}
        assert "FROM calendar_resources_md" in conn.fetch.call_args[0][0]

    async def test_insert_metadata(self, db_manager, mock_pool):
        conn = AsyncMock()
        mock_pool.acquire = _acquire_returning(conn)

        await db_manager.insert_metadata(ItemKind.ROOM, 4, "floor", "2")

        args = conn.execute.call_args[0]
        assert "INSERT INTO calendar_rooms_md" in args[0]
        assert args[1:] == (4, "floor", "2")

    async def test_insert_metadata_integrity_error(self, db_manager, mock_pool):
        conn = AsyncMock()
        conn.execute = AsyncMock(
            side_effect=asyncpg.UniqueViolationError("duplicate key value")
        )
        mock_pool.acquire = _acquire_returning(conn)

        with pytest.raises(StoreIntegrityError):
            await db_manager.insert_metadata(ItemKind.ROOM, 4, "floor", "2")

    async def test_update_metadata(self, db_manager, mock_pool):
        conn = AsyncMock()
        mock_pool.acquire = _acquire_returning(conn)

        await db_manager.update_metadata(ItemKind.RESOURCE, 6, "meta99", "new")

        args = conn.execute.call_args[0]
        assert "UPDATE calendar_resources_md" in args[0]
        assert args[1:] == ("new", 6, "meta99")

    async def test_metadata_value_too_long(self, db_manager, mock_pool):
        conn = AsyncMock()
        conn.execute = AsyncMock(
            side_effect=asyncpg.StringDataRightTruncationError("value too long")
        )
        mock_pool.acquire = _acquire_returning(conn)

        with pytest.raises(StoreIntegrityError, match="meta99"):
            await db_manager.update_metadata(ItemKind.RESOURCE, 6, "meta99", "x" * 5000)
        with pytest.raises(StoreIntegrityError, match="meta99"):
            await db_manager.insert_metadata(ItemKind.RESOURCE, 6, "meta99", "x" * 5000)

    async def test_delete_metadata(self, db_manager, mock_pool):
        conn = AsyncMock()
        mock_pool.acquire = _acquire_returning(conn)

        await db_manager.delete_metadata(ItemKind.RESOURCE, 6, "meta1")

        args = conn.execute.call_args[0]
        assert "DELETE FROM calendar_resources_md" in args[0]
        assert args[1:] == (6, "meta1")
