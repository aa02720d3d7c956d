"""SQLite-backed document store.

Each entity is one JSON document in a shared ``documents`` table. Writes touch
a single row and commit immediately; there is no cross-document transaction
support, matching the remote stores the sync core is designed against.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any, cast

import aiosqlite
import orjson
from aiosqlitepool import SQLiteConnectionPool
from aiosqlitepool.protocols import Connection as SQLitePoolConnection
from ulid import ULID

from fitsync.adapters.base import ListQuery, StoreStats, apply_query
from fitsync.adapters.derive import prepare_create, prepare_update
from fitsync.adapters.memory import Clock, utcnow
from fitsync.domain.entities import DATETIME_FIELDS, Entity, EntityType
from fitsync.errors import NotFound
from fitsync.settings import settings

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    id         TEXT NOT NULL,
    user_id    TEXT,
    body       BLOB NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (collection, id)
);
CREATE INDEX IF NOT EXISTS documents_owner
    ON documents (collection, user_id);
"""


def _encode(record: Mapping[str, Any]) -> bytes:
    return orjson.dumps(record)


def _decode(entity_type: EntityType, raw: bytes) -> Entity:
    record = orjson.loads(raw)
    for name in DATETIME_FIELDS[entity_type]:
        value = record.get(name)
        if isinstance(value, str):
            try:
                record[name] = datetime.fromisoformat(value)
            except ValueError:
                logger.debug("Leaving unparseable %s.%s=%r as text", entity_type, name, value)
    return record


class SQLiteCollection:
    __slots__ = ("entity_type", "_store", "_clock", "stats")

    def __init__(
        self, entity_type: EntityType, store: "SQLiteStore", *, clock: Clock = utcnow
    ) -> None:
        self.entity_type = entity_type
        self._store = store
        self._clock = clock
        self.stats = StoreStats()

    async def create(self, data: Mapping[str, Any]) -> Entity:
        self.stats.record("create")
        record = prepare_create(
            self.entity_type, data, entity_id=str(ULID()), now=self._clock()
        )
        async with self._store.pool.connection() as conn:
            await conn.execute(
                """
                INSERT INTO documents (collection, id, user_id, body, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    self.entity_type.value,
                    record["id"],
                    record.get("user_id"),
                    _encode(record),
                    record["updated_at"].isoformat(),
                ),
            )
            await conn.commit()
        return _decode(self.entity_type, _encode(record))

    async def get_by_id(self, entity_id: str) -> Entity | None:
        self.stats.record("get_by_id")
        async with self._store.pool.connection() as conn:
            cursor = await conn.execute(
                "SELECT body FROM documents WHERE collection = ? AND id = ?",
                (self.entity_type.value, entity_id),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return _decode(self.entity_type, bytes(row["body"]))

    async def update(self, entity_id: str, partial: Mapping[str, Any]) -> Entity:
        self.stats.record("update")
        async with self._store.pool.connection() as conn:
            cursor = await conn.execute(
                "SELECT body FROM documents WHERE collection = ? AND id = ?",
                (self.entity_type.value, entity_id),
            )
            row = await cursor.fetchone()
            if row is None:
                raise NotFound(str(self.entity_type), entity_id)
            existing = _decode(self.entity_type, bytes(row["body"]))
            record = prepare_update(
                self.entity_type, existing, partial, now=self._clock()
            )
            await conn.execute(
                """
                UPDATE documents SET body = ?, updated_at = ?
                WHERE collection = ? AND id = ?
                """,
                (
                    _encode(record),
                    record["updated_at"].isoformat(),
                    self.entity_type.value,
                    entity_id,
                ),
            )
            await conn.commit()
        return _decode(self.entity_type, _encode(record))

    async def delete(self, entity_id: str) -> None:
        self.stats.record("delete")
        async with self._store.pool.connection() as conn:
            cursor = await conn.execute(
                "DELETE FROM documents WHERE collection = ? AND id = ?",
                (self.entity_type.value, entity_id),
            )
            await conn.commit()
            removed = cursor.rowcount or 0
        if not removed:
            raise NotFound(str(self.entity_type), entity_id)

    async def list(self, query: ListQuery) -> Sequence[Entity]:
        self.stats.record("list")
        sql = "SELECT body FROM documents WHERE collection = ?"
        params: list[Any] = [self.entity_type.value]
        if query.owner_id is not None:
            sql += " AND user_id = ?"
            params.append(query.owner_id)
        async with self._store.pool.connection() as conn:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
        records = [_decode(self.entity_type, bytes(row["body"])) for row in rows]
        return apply_query(query, records)


class SQLiteStore:
    """Document store over a pooled SQLite database."""

    def __init__(self, db_path: str | None = None, *, clock: Clock = utcnow) -> None:
        raw_path = Path(db_path or settings.DATABASE.path)
        self.db_path = raw_path.expanduser().resolve(strict=False)
        self.pool: SQLiteConnectionPool | None = None
        self._collections = {
            entity_type: SQLiteCollection(entity_type, self, clock=clock)
            for entity_type in EntityType
        }

    async def __aenter__(self) -> "SQLiteStore":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def collection(self, entity_type: EntityType) -> SQLiteCollection:
        if self.pool is None:
            raise RuntimeError("SQLite store is not initialised; call init() first.")
        return self._collections[EntityType(entity_type)]

    async def init(self) -> None:
        if self.pool is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        is_new = not self.db_path.exists()

        async def _connection_factory() -> SQLitePoolConnection:
            return cast(SQLitePoolConnection, await self._create_connection())

        pool = SQLiteConnectionPool(
            _connection_factory,
            pool_size=int(settings.DATABASE.pool_size),
            acquisition_timeout=int(settings.DATABASE.pool_acquire_timeout),
        )
        self.pool = pool
        try:
            if is_new:
                logger.info("Creating new document store at %s", self.db_path)
            async with pool.connection() as conn:
                await conn.executescript(SCHEMA_SQL)
                await conn.commit()
        except Exception:
            await pool.close()
            self.pool = None
            raise

    async def close(self) -> None:
        if self.pool is not None:
            try:
                await self.pool.close()
            finally:
                self.pool = None

    async def _create_connection(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(
            self.db_path, timeout=float(settings.DATABASE.timeout)
        )
        await conn.execute(
            f"PRAGMA busy_timeout = {int(settings.DATABASE.busy_timeout)}"
        )
        await conn.execute("PRAGMA journal_mode = WAL")
        await conn.execute("PRAGMA synchronous = NORMAL")
        conn.row_factory = aiosqlite.Row
        return conn


__all__ = ["SQLiteCollection", "SQLiteStore"]
