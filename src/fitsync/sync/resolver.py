"""Translate query keys into remote store calls."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from logging import getLogger
from typing import Any

from fitsync.adapters.base import Filter, ListQuery, RemoteStore
from fitsync.adapters.memory import utcnow
from fitsync.domain.entities import ORDER_FIELDS, EntityType
from fitsync.errors import NotFound
from fitsync.sync.config import QueryDefaults
from fitsync.sync.keys import DETAIL, OWNER, QueryKey

logger = getLogger(__name__)

ListBuilder = Callable[["QueryResolver", QueryKey], ListQuery]

# Parameters carried by owner-list keys that shape the query rather than
# filter it.
_PAGING_PARAMS = frozenset({"limit", "offset"})


def _as_datetime(value: object) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _as_int(value: object, default: int) -> int:
    if value is None:
        return default
    return int(value)  # type: ignore[arg-type]


class QueryResolver:
    """Build the adapter request behind each query kind and run it."""

    __slots__ = ("_store", "_defaults", "_clock")

    def __init__(
        self,
        store: RemoteStore,
        defaults: QueryDefaults,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._defaults = defaults
        self._clock = clock

    async def fetch(self, key: QueryKey) -> Any:
        adapter = self._store.collection(key.entity_type)
        if key.kind == DETAIL:
            if key.entity_id is None:
                raise ValueError(f"Detail key without entity id: {key}")
            record = await adapter.get_by_id(key.entity_id)
            if record is None:
                raise NotFound(str(key.entity_type), key.entity_id)
            return record

        query = self.build_query(key)
        logger.debug("Fetching %s with %r", key, query)
        records = list(await adapter.list(query))
        if key.shape == "entity":
            return records[0] if records else None
        return records

    def build_query(self, key: QueryKey) -> ListQuery:
        builder = _BUILDERS.get((key.entity_type, key.kind))
        if builder is None:
            raise KeyError(f"No list query defined for {key.entity_type}.{key.kind}")
        return builder(self, key)

    def _owner_list(self, key: QueryKey, *, default_limit: int | None = None) -> ListQuery:
        filters = tuple(
            Filter(name, "==", value)
            for name, value in key.params
            if name not in _PAGING_PARAMS
        )
        limit = default_limit if default_limit is not None else self._defaults.default_limit
        return ListQuery(
            owner_id=key.owner_id,
            filters=filters,
            order_by=ORDER_FIELDS[key.entity_type],
            limit=_as_int(key.param("limit"), limit),
            offset=_as_int(key.param("offset"), 0),
        )

    def _date_range(self, key: QueryKey) -> ListQuery:
        return ListQuery(
            owner_id=key.owner_id,
            date_field=ORDER_FIELDS[key.entity_type],
            start=_as_datetime(key.param("start")),
            end=_as_datetime(key.param("end")),
            order_by=ORDER_FIELDS[key.entity_type],
        )

    def _recent(self, key: QueryKey) -> ListQuery:
        return ListQuery(
            owner_id=key.owner_id,
            order_by=ORDER_FIELDS[key.entity_type],
            limit=_as_int(key.param("limit"), self._defaults.recent_limit),
        )

    def _by_param(self, key: QueryKey, name: str, op: str = "==") -> ListQuery:
        return ListQuery(
            owner_id=key.owner_id,
            filters=(Filter(name, op, key.param(name)),),  # type: ignore[arg-type]
            order_by=ORDER_FIELDS[key.entity_type],
        )


def _workout_templates(resolver: QueryResolver, key: QueryKey) -> ListQuery:
    return ListQuery(
        owner_id=key.owner_id,
        filters=(Filter("is_template", "==", True),),
        order_by="created_at",
    )


def _goals_with_status(status: str, *, order_by: str = "created_at") -> ListBuilder:
    def build(resolver: QueryResolver, key: QueryKey) -> ListQuery:
        limit = key.param("limit")
        return ListQuery(
            owner_id=key.owner_id,
            filters=(Filter("status", "==", status),),
            order_by=order_by,
            limit=int(limit) if limit is not None else None,  # type: ignore[arg-type]
        )

    return build


def _overdue_goals(resolver: QueryResolver, key: QueryKey) -> ListQuery:
    # Evaluated against the clock at fetch time; the key itself never changes.
    return ListQuery(
        owner_id=key.owner_id,
        filters=(
            Filter("status", "==", "active"),
            Filter("target_date", "<", resolver._clock()),
        ),
        order_by="target_date",
        descending=False,
    )


def _routines_for_day(resolver: QueryResolver, key: QueryKey) -> ListQuery:
    return ListQuery(
        owner_id=key.owner_id,
        filters=(Filter("schedule", "contains", key.param("day")),),
        order_by="created_at",
    )


def _most_used_routines(resolver: QueryResolver, key: QueryKey) -> ListQuery:
    return ListQuery(
        owner_id=key.owner_id,
        order_by="times_used",
        limit=_as_int(key.param("limit"), resolver._defaults.most_used_limit),
    )


def _public_routines(resolver: QueryResolver, key: QueryKey) -> ListQuery:
    filters = [Filter("is_public", "==", True)]
    for name in ("category", "difficulty"):
        value = key.param(name)
        if value is not None:
            filters.append(Filter(name, "==", value))
    return ListQuery(
        filters=tuple(filters),
        order_by="times_used",
        limit=_as_int(key.param("limit"), resolver._defaults.default_limit),
    )


def _recommended_routines(resolver: QueryResolver, key: QueryKey) -> ListQuery:
    categories = key.param("categories") or ()
    return ListQuery(
        filters=(
            Filter("is_public", "==", True),
            Filter("difficulty", "==", key.param("difficulty")),
            Filter("category", "in", tuple(categories)),  # type: ignore[arg-type]
        ),
        order_by="times_used",
        limit=_as_int(key.param("limit"), resolver._defaults.recent_limit),
    )


def _bmi_owner(resolver: QueryResolver, key: QueryKey) -> ListQuery:
    return resolver._owner_list(key, default_limit=resolver._defaults.bmi_default_limit)


def _latest(resolver: QueryResolver, key: QueryKey) -> ListQuery:
    return ListQuery(
        owner_id=key.owner_id,
        order_by=ORDER_FIELDS[key.entity_type],
        limit=1,
    )


_BUILDERS: dict[tuple[EntityType, str], ListBuilder] = {
    (EntityType.WORKOUT, OWNER): QueryResolver._owner_list,
    (EntityType.WORKOUT, "date_range"): QueryResolver._date_range,
    (EntityType.WORKOUT, "templates"): _workout_templates,
    (EntityType.WORKOUT, "recent"): QueryResolver._recent,
    (EntityType.GOAL, OWNER): QueryResolver._owner_list,
    (EntityType.GOAL, "active"): _goals_with_status("active"),
    (EntityType.GOAL, "overdue"): _overdue_goals,
    (EntityType.GOAL, "completed"): _goals_with_status("completed", order_by="completed_at"),
    (EntityType.GOAL, "category"): lambda r, k: r._by_param(k, "category"),
    (EntityType.ROUTINE, OWNER): QueryResolver._owner_list,
    (EntityType.ROUTINE, "day"): _routines_for_day,
    (EntityType.ROUTINE, "category"): lambda r, k: r._by_param(k, "category"),
    (EntityType.ROUTINE, "most_used"): _most_used_routines,
    (EntityType.ROUTINE, "public"): _public_routines,
    (EntityType.ROUTINE, "recommended"): _recommended_routines,
    (EntityType.BMI_ENTRY, OWNER): _bmi_owner,
    (EntityType.BMI_ENTRY, "date_range"): QueryResolver._date_range,
    (EntityType.BMI_ENTRY, "latest"): _latest,
    (EntityType.BMI_ENTRY, "recent"): QueryResolver._recent,
    (EntityType.BMI_ENTRY, "category"): lambda r, k: r._by_param(k, "category"),
}


__all__ = ["QueryResolver"]
