from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

from ulid import ULID

from fitsync.adapters.base import ListQuery, StoreStats, apply_query
from fitsync.adapters.derive import prepare_create, prepare_update
from fitsync.domain.entities import Entity, EntityType
from fitsync.errors import NotFound

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryCollection:
    """In-process collection with document-store semantics."""

    __slots__ = ("entity_type", "_documents", "_clock", "_lock", "stats")

    def __init__(self, entity_type: EntityType, *, clock: Clock = utcnow) -> None:
        self.entity_type = entity_type
        self._documents: dict[str, Entity] = {}
        self._clock = clock
        self._lock = asyncio.Lock()
        self.stats = StoreStats()

    async def create(self, data: Mapping[str, Any]) -> Entity:
        self.stats.record("create")
        entity_id = str(ULID())
        record = prepare_create(
            self.entity_type, copy.deepcopy(dict(data)), entity_id=entity_id, now=self._clock()
        )
        async with self._lock:
            self._documents[entity_id] = record
        logger.debug("Created %s %s", self.entity_type, entity_id)
        return copy.deepcopy(record)

    async def get_by_id(self, entity_id: str) -> Entity | None:
        self.stats.record("get_by_id")
        async with self._lock:
            record = self._documents.get(entity_id)
        return copy.deepcopy(record) if record is not None else None

    async def update(self, entity_id: str, partial: Mapping[str, Any]) -> Entity:
        self.stats.record("update")
        async with self._lock:
            existing = self._documents.get(entity_id)
            if existing is None:
                raise NotFound(str(self.entity_type), entity_id)
            record = prepare_update(
                self.entity_type,
                existing,
                copy.deepcopy(dict(partial)),
                now=self._clock(),
            )
            self._documents[entity_id] = record
        return copy.deepcopy(record)

    async def delete(self, entity_id: str) -> None:
        self.stats.record("delete")
        async with self._lock:
            if self._documents.pop(entity_id, None) is None:
                raise NotFound(str(self.entity_type), entity_id)

    async def list(self, query: ListQuery) -> Sequence[Entity]:
        self.stats.record("list")
        async with self._lock:
            documents = list(self._documents.values())
        return copy.deepcopy(apply_query(query, documents))

    def seed(self, records: Sequence[Mapping[str, Any]]) -> list[Entity]:
        """Insert fully formed records verbatim, bypassing derivation."""

        stored: list[Entity] = []
        for raw in records:
            record = copy.deepcopy(dict(raw))
            record.setdefault("id", str(ULID()))
            self._documents[record["id"]] = record
            stored.append(copy.deepcopy(record))
        return stored

    def __len__(self) -> int:
        return len(self._documents)


class MemoryStore:
    """Remote store stand-in holding one collection per entity type."""

    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._collections = {
            entity_type: MemoryCollection(entity_type, clock=clock)
            for entity_type in EntityType
        }

    def collection(self, entity_type: EntityType) -> MemoryCollection:
        return self._collections[EntityType(entity_type)]


__all__ = ["MemoryCollection", "MemoryStore", "utcnow"]
