"""
Database Manager - PostgreSQL schema and operations.

Stores the cached resources and rooms mirrored from backends, together
with their key/value metadata.
"""

import asyncpg
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from migrate import run_migrations
from plugins.base import ItemKind

logger = logging.getLogger(__name__)


class StoreIntegrityError(Exception):
    """A write was rejected by a table constraint or a column type."""


# Errors caused by the written values, not by the connection
_REJECTED_WRITE_ERRORS = (asyncpg.IntegrityConstraintViolationError, asyncpg.DataError)


@dataclass(frozen=True)
class KindTables:
    """Table and column names backing one item kind."""

    items: str
    metadata: str
    external_id_column: str


KIND_TABLES = {
    ItemKind.RESOURCE: KindTables(
        items="calendar_resources",
        metadata="calendar_resources_md",
        external_id_column="resource_id",
    ),
    ItemKind.ROOM: KindTables(
        items="calendar_rooms",
        metadata="calendar_rooms_md",
        external_id_column="room_id",
    ),
}


@dataclass
class CachedItem:
    """A resource or room as last stored in the cache."""

    id: int
    backend_id: str
    external_id: str
    display_name: str
    email: str = ""
    group_restrictions: List[str] = field(default_factory=list)


def serialize_group_restrictions(group_restrictions: List[str]) -> str:
    """Encode group restrictions as a compact JSON array, keeping order."""
    return json.dumps(list(group_restrictions or []), separators=(",", ":"))


def parse_group_restrictions(raw: Optional[str]) -> List[str]:
    """Decode stored group restrictions; missing or malformed values are empty."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Ignoring malformed group restrictions: {raw!r}")
        return []
    if not isinstance(value, list):
        return []
    return [str(group) for group in value]


class DatabaseManager:
    """Manages PostgreSQL database operations for the cache."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Item Methods ====================

    async def find_all_for_kind(self, kind: ItemKind) -> List[CachedItem]:
        """Get every cached item of a kind, across all backends."""
        tables = KIND_TABLES[kind]
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f"SELECT * FROM {tables.items} ORDER BY id")
            return [self._parse_item_row(kind, row) for row in rows]

    async def find_all_for_backend(
        self, kind: ItemKind, backend_id: str
    ) -> List[CachedItem]:
        """Get every cached item of a kind that belongs to one backend."""
        tables = KIND_TABLES[kind]
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT * FROM {tables.items} WHERE backend_id = $1 ORDER BY id",
                backend_id,
            )
            return [self._parse_item_row(kind, row) for row in rows]

    async def get_item(self, kind: ItemKind, item_id: int) -> Optional[CachedItem]:
        """Get a cached item by its internal ID."""
        tables = KIND_TABLES[kind]
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT * FROM {tables.items} WHERE id = $1",
                item_id,
            )
            if not row:
                return None
            return self._parse_item_row(kind, row)

    async def list_backend_ids(self, kind: ItemKind) -> List[str]:
        """List every backend identifier with at least one cached item."""
        tables = KIND_TABLES[kind]
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT DISTINCT backend_id FROM {tables.items} ORDER BY backend_id"
            )
            return [row["backend_id"] for row in rows]

    async def insert_item(
        self,
        kind: ItemKind,
        backend_id: str,
        external_id: str,
        display_name: str,
        email: str = "",
        group_restrictions: Optional[List[str]] = None,
    ) -> int:
        """
        Insert a cached item.

        A concurrent run may have inserted the same (backend, external ID)
        pair first; the row is then overwritten with these values.

        Args:
            kind: Resource or room
            backend_id: Identifier of the owning backend
            external_id: Identifier of the item within its backend
            display_name: Display name
            email: Email address, may be empty
            group_restrictions: Ordered list of group IDs

        Returns:
            The internal ID of the stored row
        """
        tables = KIND_TABLES[kind]
        async with self.pool.acquire() as conn:
            try:
                item_id = await conn.fetchval(
                    f"""
                    INSERT INTO {tables.items} (
                        backend_id, {tables.external_id_column},
                        displayname, email, group_restrictions
                    )
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (backend_id, {tables.external_id_column})
                    DO UPDATE SET
                        displayname = EXCLUDED.displayname,
                        email = EXCLUDED.email,
                        group_restrictions = EXCLUDED.group_restrictions
                    RETURNING id
                    """,
                    backend_id,
                    external_id,
                    display_name,
                    email or "",
                    serialize_group_restrictions(group_restrictions or []),
                )
            except _REJECTED_WRITE_ERRORS as e:
                raise StoreIntegrityError(
                    f"Could not insert {kind.value} {backend_id}/{external_id}: {e}"
                ) from e

            logger.info(
                f"Cached {kind.value} {backend_id}/{external_id} with ID {item_id}"
            )
            return item_id

    async def update_item(
        self,
        kind: ItemKind,
        item_id: int,
        display_name: str,
        email: str,
        group_restrictions: List[str],
    ) -> None:
        """Overwrite all mutable fields of a cached item."""
        tables = KIND_TABLES[kind]
        async with self.pool.acquire() as conn:
            try:
                await conn.execute(
                    f"""
                    UPDATE {tables.items}
                    SET displayname = $1,
                        email = $2,
                        group_restrictions = $3
                    WHERE id = $4
                    """,
                    display_name,
                    email or "",
                    serialize_group_restrictions(group_restrictions),
                    item_id,
                )
            except _REJECTED_WRITE_ERRORS as e:
                raise StoreIntegrityError(
                    f"Could not update {kind.value} {item_id}: {e}"
                ) from e
            logger.info(f"Updated cached {kind.value} {item_id}")

    async def delete_item(self, kind: ItemKind, item_id: int) -> None:
        """Delete a cached item together with its metadata."""
        tables = KIND_TABLES[kind]
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    f"DELETE FROM {tables.metadata} "
                    f"WHERE {tables.external_id_column} = $1",
                    item_id,
                )
                await conn.execute(
                    f"DELETE FROM {tables.items} WHERE id = $1",
                    item_id,
                )
            logger.info(f"Deleted cached {kind.value} {item_id}")

    async def delete_items_for_backend(self, kind: ItemKind, backend_id: str) -> int:
        """
        Delete every cached item of a backend, with metadata.

        Returns:
            Number of items deleted
        """
        tables = KIND_TABLES[kind]
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    f"""
                    DELETE FROM {tables.metadata}
                    WHERE {tables.external_id_column} IN (
                        SELECT id FROM {tables.items} WHERE backend_id = $1
                    )
                    """,
                    backend_id,
                )
                rows = await conn.fetch(
                    f"DELETE FROM {tables.items} WHERE backend_id = $1 RETURNING id",
                    backend_id,
                )
            logger.info(
                f"Deleted {len(rows)} cached {kind.value}(s) of backend {backend_id}"
            )
            return len(rows)

    def _parse_item_row(self, kind: ItemKind, row: asyncpg.Record) -> CachedItem:
        """Parse an item row from the database."""
        tables = KIND_TABLES[kind]
        return CachedItem(
            id=row["id"],
            backend_id=row["backend_id"],
            external_id=row[tables.external_id_column],
            display_name=row["displayname"] or "",
            email=row["email"] or "",
            group_restrictions=parse_group_restrictions(row["group_restrictions"]),
        )

    # ==================== Metadata Methods ====================

    async def get_metadata(self, kind: ItemKind, item_id: int) -> Dict[str, str]:
        """Get the stored metadata of an item as a key/value mapping."""
        tables = KIND_TABLES[kind]
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT key, value FROM {tables.metadata}
                WHERE {tables.external_id_column} = $1
                ORDER BY id
                """,
                item_id,
            )
            return {row["key"]: row["value"] for row in rows}

    async def insert_metadata(
        self, kind: ItemKind, item_id: int, key: str, value: str
    ) -> None:
        """Add a metadata entry to an item."""
        tables = KIND_TABLES[kind]
        async with self.pool.acquire() as conn:
            try:
                await conn.execute(
                    f"""
                    INSERT INTO {tables.metadata}
                        ({tables.external_id_column}, key, value)
                    VALUES ($1, $2, $3)
                    """,
                    item_id,
                    key,
                    value,
                )
            except _REJECTED_WRITE_ERRORS as e:
                raise StoreIntegrityError(
                    f"Could not add metadata '{key}' to {kind.value} {item_id}: {e}"
                ) from e
            logger.debug(f"Added metadata '{key}' to {kind.value} {item_id}")

    async def update_metadata(
        self, kind: ItemKind, item_id: int, key: str, value: str
    ) -> None:
        """Change the value of an existing metadata entry."""
        tables = KIND_TABLES[kind]
        async with self.pool.acquire() as conn:
            try:
                await conn.execute(
                    f"""
                    UPDATE {tables.metadata}
                    SET value = $1
                    WHERE {tables.external_id_column} = $2 AND key = $3
                    """,
                    value,
                    item_id,
                    key,
                )
            except _REJECTED_WRITE_ERRORS as e:
                raise StoreIntegrityError(
                    f"Could not update metadata '{key}' of {kind.value} {item_id}: {e}"
                ) from e
            logger.debug(f"Updated metadata '{key}' of {kind.value} {item_id}")

    async def delete_metadata(self, kind: ItemKind, item_id: int, key: str) -> None:
        """Remove a metadata entry from an item."""
        tables = KIND_TABLES[kind]
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                DELETE FROM {tables.metadata}
                WHERE {tables.external_id_column} = $1 AND key = $2
                """,
                item_id,
                key,
            )
            logger.debug(f"Deleted metadata '{key}' of {kind.value} {item_id}")
