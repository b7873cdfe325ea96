# backend/database.py - Configuration store operations

import json
import aiosqlite
import asyncpg
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import logging

from backend_models import new_id

logger = logging.getLogger(__name__)

class ConfigurationStoreError(Exception):
    pass

class Database:
    """Document store for configuration records keyed by id.

    Profiles, grid-level column group sets and datasource configs are all
    stored here as opaque documents. Deletes are soft: the row is kept with
    ``is_deleted`` set and is hidden from ``get``/``query`` unless asked for.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.is_postgres = database_url.startswith("postgresql://")
        self.conn = None
        self.pool = None

    async def init(self):
        """Initialize database connection and create tables"""
        if self.is_postgres:
            await self._init_postgres()
        else:
            await self._init_sqlite()

    async def _init_sqlite(self):
        """Initialize SQLite database"""
        self.conn = await aiosqlite.connect(self.database_url.replace("sqlite:///", ""))
        self.conn.row_factory = aiosqlite.Row

        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS configurations (
                id TEXT PRIMARY KEY,
                component_type TEXT NOT NULL,
                component_sub_type TEXT,
                instance_id TEXT,
                name TEXT NOT NULL DEFAULT '',
                data TEXT NOT NULL,
                version INTEGER DEFAULT 1,
                is_deleted BOOLEAN DEFAULT FALSE,
                created_at TEXT,
                updated_at TEXT,
                deleted_at TEXT
            )
        """)

        await self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_configurations_component
            ON configurations(component_type, instance_id)
        """)

        await self.conn.commit()

    async def _init_postgres(self):
        """Initialize PostgreSQL database"""
        self.pool = await asyncpg.create_pool(self.database_url)

        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS configurations (
                    id TEXT PRIMARY KEY,
                    component_type TEXT NOT NULL,
                    component_sub_type TEXT,
                    instance_id TEXT,
                    name TEXT NOT NULL DEFAULT '',
                    data JSONB NOT NULL,
                    version INTEGER DEFAULT 1,
                    is_deleted BOOLEAN DEFAULT FALSE,
                    created_at TEXT,
                    updated_at TEXT,
                    deleted_at TEXT
                )
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_configurations_component
                ON configurations(component_type, instance_id)
            """)

    async def close(self):
        """Close database connection"""
        if self.is_postgres and self.pool:
            await self.pool.close()
        elif self.conn:
            await self.conn.close()
        self.conn = None
        self.pool = None

    def _ensure_open(self):
        if self.is_postgres and self.pool is None:
            raise ConfigurationStoreError("configuration store is not initialized")
        if not self.is_postgres and self.conn is None:
            raise ConfigurationStoreError("configuration store is not initialized")

    # Record operations
    async def get(self, record_id: str, include_deleted: bool = False) -> Optional[Dict[str, Any]]:
        """Get a configuration record by id"""
        self._ensure_open()
        if self.is_postgres:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow("SELECT * FROM configurations WHERE id = $1", record_id)
        else:
            async with self.conn.execute("SELECT * FROM configurations WHERE id = ?", (record_id,)) as cursor:
                row = await cursor.fetchone()

        if not row:
            return None
        record = self._parse_record_row(row)
        if record["isDeleted"] and not include_deleted:
            return None
        return record

    async def create(self, record: Dict[str, Any]) -> str:
        """Create a new configuration record"""
        self._ensure_open()
        now = datetime.now(timezone.utc).isoformat()
        complete = {
            **record,
            "id": record.get("id") or new_id(),
            "version": record.get("version") or 1,
            "isDeleted": bool(record.get("isDeleted", False)),
            "createdAt": record.get("createdAt") or now,
            "updatedAt": record.get("updatedAt") or now,
        }
        values = self._record_values(complete)

        if self.is_postgres:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """INSERT INTO configurations (id, component_type, component_sub_type, instance_id,
                       name, data, version, is_deleted, created_at, updated_at, deleted_at)
                       VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)""",
                    *values
                )
        else:
            await self.conn.execute(
                """INSERT INTO configurations (id, component_type, component_sub_type, instance_id,
                   name, data, version, is_deleted, created_at, updated_at, deleted_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                values
            )
            await self.conn.commit()

        logger.debug(f"Configuration created: {complete['id']}")
        return complete["id"]

    async def update(self, record_id: str, updates: Dict[str, Any], include_deleted: bool = False) -> bool:
        """Merge updates into an existing record, bumping its version"""
        existing = await self.get(record_id, include_deleted=include_deleted)
        if not existing:
            return False

        merged = {
            **existing,
            **updates,
            "id": existing["id"],
            "createdAt": existing["createdAt"],
            "updatedAt": datetime.now(timezone.utc).isoformat(),
            "version": existing["version"] + 1,
        }
        values = self._record_values(merged)

        if self.is_postgres:
            async with self.pool.acquire() as conn:
                result = await conn.execute(
                    """UPDATE configurations
                       SET component_type = $2, component_sub_type = $3, instance_id = $4, name = $5,
                           data = $6, version = $7, is_deleted = $8, created_at = $9,
                           updated_at = $10, deleted_at = $11
                       WHERE id = $1""",
                    *values
                )
                return result != "UPDATE 0"
        else:
            cursor = await self.conn.execute(
                """UPDATE configurations
                   SET component_type = ?, component_sub_type = ?, instance_id = ?, name = ?,
                       data = ?, version = ?, is_deleted = ?, created_at = ?,
                       updated_at = ?, deleted_at = ?
                   WHERE id = ?""",
                (*values[1:], values[0])
            )
            await self.conn.commit()
            return cursor.rowcount > 0

    async def delete(self, record_id: str) -> bool:
        """Soft delete a record"""
        return await self.update(record_id, {
            "isDeleted": True,
            "deletedAt": datetime.now(timezone.utc).isoformat(),
        })

    async def query(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Query records by component type, sub type, instance and name"""
        self._ensure_open()
        filters = filters or {}
        field_map = {
            "componentType": "component_type",
            "componentSubType": "component_sub_type",
            "instanceId": "instance_id",
            "name": "name",
        }

        clauses = []
        params: List[Any] = []
        for key, column in field_map.items():
            value = filters.get(key)
            if value is None:
                continue
            params.append(value)
            placeholder = f"${len(params)}" if self.is_postgres else "?"
            clauses.append(f"{column} = {placeholder}")
        if not filters.get("includeDeleted"):
            clauses.append("is_deleted = FALSE")

        query = "SELECT * FROM configurations"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY updated_at DESC"

        if self.is_postgres:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query, *params)
        else:
            async with self.conn.execute(query, tuple(params)) as cursor:
                rows = await cursor.fetchall()
        return [self._parse_record_row(row) for row in rows]

    async def reset(self):
        """Reset database (development only)"""
        self._ensure_open()
        if self.is_postgres:
            async with self.pool.acquire() as conn:
                await conn.execute("TRUNCATE configurations")
        else:
            await self.conn.execute("DELETE FROM configurations")
            await self.conn.commit()

    # Helper methods
    def _record_values(self, record: Dict[str, Any]) -> tuple:
        return (
            record["id"],
            record["componentType"],
            record.get("componentSubType"),
            record.get("instanceId"),
            record.get("name") or "",
            json.dumps(record.get("config") or {}),
            record["version"],
            bool(record.get("isDeleted", False)),
            record.get("createdAt"),
            record.get("updatedAt"),
            record.get("deletedAt"),
        )

    def _parse_record_row(self, row) -> Dict[str, Any]:
        """Parse a configuration row (aiosqlite.Row or asyncpg.Record)"""
        data = json.loads(row["data"]) if isinstance(row["data"], str) else row["data"]
        return {
            "id": row["id"],
            "componentType": row["component_type"],
            "componentSubType": row["component_sub_type"],
            "instanceId": row["instance_id"],
            "name": row["name"],
            "config": data,
            "version": row["version"],
            "isDeleted": bool(row["is_deleted"]),
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
            "deletedAt": row["deleted_at"],
        }
