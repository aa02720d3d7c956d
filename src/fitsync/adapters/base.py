"""Contract between the sync core and a remote document store.

The store offers single-document durability only. Nothing here assumes
multi-document transactions; the core reconciles through invalidation and
refetch instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Literal, Mapping, Protocol, Sequence

from fitsync.domain.entities import Entity, EntityType

FilterOp = Literal["==", "in", "contains", "<", "<=", ">="]


@dataclass(frozen=True, slots=True)
class Filter:
    field: str
    op: FilterOp
    value: Any

    def test(self, record: Mapping[str, Any]) -> bool:
        actual = record.get(self.field)
        if self.op == "==":
            return actual == self.value
        if self.op == "in":
            return actual in self.value
        if self.op == "contains":
            return isinstance(actual, (list, tuple)) and self.value in actual
        if actual is None:
            return False
        if self.op == "<":
            return actual < self.value
        if self.op == "<=":
            return actual <= self.value
        if self.op == ">=":
            return actual >= self.value
        raise ValueError(f"Unsupported filter operator: {self.op}")


@dataclass(frozen=True, slots=True)
class ListQuery:
    """Owner-scoped, optionally filtered, ordered and limited list request."""

    owner_id: str | None = None
    date_field: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    filters: tuple[Filter, ...] = ()
    order_by: str = "created_at"
    descending: bool = True
    limit: int | None = None
    offset: int = 0

    def where(self, *filters: Filter) -> "ListQuery":
        return ListQuery(
            owner_id=self.owner_id,
            date_field=self.date_field,
            start=self.start,
            end=self.end,
            filters=self.filters + filters,
            order_by=self.order_by,
            descending=self.descending,
            limit=self.limit,
            offset=self.offset,
        )


def match_query(query: ListQuery, record: Mapping[str, Any]) -> bool:
    if query.owner_id is not None and record.get("user_id") != query.owner_id:
        return False
    if query.date_field is not None:
        value = record.get(query.date_field)
        if value is None:
            return False
        if query.start is not None and value < query.start:
            return False
        if query.end is not None and value > query.end:
            return False
    return all(item.test(record) for item in query.filters)


def apply_query(query: ListQuery, records: Iterable[Mapping[str, Any]]) -> list[Entity]:
    """Filter, order and page ``records`` the way every bundled store does."""

    matched = [dict(record) for record in records if match_query(query, record)]
    present = [record for record in matched if record.get(query.order_by) is not None]
    missing = [record for record in matched if record.get(query.order_by) is None]
    present.sort(key=lambda record: record[query.order_by], reverse=query.descending)
    ordered = present + missing
    start = max(query.offset, 0)
    if query.limit is None:
        return ordered[start:]
    return ordered[start : start + query.limit]


class EntityAdapter(Protocol):
    """CRUD and list primitives for one collection."""

    entity_type: EntityType

    async def create(self, data: Mapping[str, Any]) -> Entity: ...

    async def get_by_id(self, entity_id: str) -> Entity | None: ...

    async def update(self, entity_id: str, partial: Mapping[str, Any]) -> Entity: ...

    async def delete(self, entity_id: str) -> None: ...

    async def list(self, query: ListQuery) -> Sequence[Entity]: ...


class RemoteStore(Protocol):
    def collection(self, entity_type: EntityType) -> EntityAdapter: ...


@dataclass(slots=True)
class StoreStats:
    """Per-collection call counters kept by the bundled stores."""

    calls: dict[str, int] = field(default_factory=dict)

    def record(self, operation: str) -> None:
        self.calls[operation] = self.calls.get(operation, 0) + 1

    def total(self, *operations: str) -> int:
        if not operations:
            return sum(self.calls.values())
        return sum(self.calls.get(name, 0) for name in operations)


__all__ = [
    "EntityAdapter",
    "Filter",
    "FilterOp",
    "ListQuery",
    "RemoteStore",
    "StoreStats",
    "apply_query",
    "match_query",
]
