"""Query keys: structural identifiers for cached read results.

A key names one cache slot: an entity type, a query kind and the scope the
query was issued for (owner, entity id, filter parameters). Keys compare and
hash by value, so two factories producing identical components address the
same slot.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Hashable, Iterable, Literal

from fitsync.domain.entities import EntityType

ValueShape = Literal["entity", "list"]

DETAIL = "detail"
OWNER = "owner"


@dataclass(frozen=True, slots=True)
class QueryKind:
    name: str
    shape: ValueShape
    owner_scoped: bool = True


# Every query kind per entity type. Staleness and invalidation tables are
# checked against this registry.
QUERY_KINDS: dict[EntityType, dict[str, QueryKind]] = {
    EntityType.WORKOUT: {
        DETAIL: QueryKind(DETAIL, "entity", owner_scoped=False),
        OWNER: QueryKind(OWNER, "list"),
        "date_range": QueryKind("date_range", "list"),
        "templates": QueryKind("templates", "list"),
        "recent": QueryKind("recent", "list"),
    },
    EntityType.GOAL: {
        DETAIL: QueryKind(DETAIL, "entity", owner_scoped=False),
        OWNER: QueryKind(OWNER, "list"),
        "active": QueryKind("active", "list"),
        "overdue": QueryKind("overdue", "list"),
        "completed": QueryKind("completed", "list"),
        "category": QueryKind("category", "list"),
    },
    EntityType.ROUTINE: {
        DETAIL: QueryKind(DETAIL, "entity", owner_scoped=False),
        OWNER: QueryKind(OWNER, "list"),
        "day": QueryKind("day", "list"),
        "category": QueryKind("category", "list"),
        "most_used": QueryKind("most_used", "list"),
        "public": QueryKind("public", "list", owner_scoped=False),
        "recommended": QueryKind("recommended", "list", owner_scoped=False),
    },
    EntityType.BMI_ENTRY: {
        DETAIL: QueryKind(DETAIL, "entity", owner_scoped=False),
        OWNER: QueryKind(OWNER, "list"),
        "date_range": QueryKind("date_range", "list"),
        "latest": QueryKind("latest", "entity"),
        "recent": QueryKind("recent", "list"),
        "category": QueryKind("category", "list"),
    },
}


def query_kind(entity_type: EntityType, kind: str) -> QueryKind:
    try:
        return QUERY_KINDS[entity_type][kind]
    except KeyError:
        raise KeyError(f"Unknown query kind {entity_type}.{kind}") from None


def _freeze(value: object) -> Hashable:
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_freeze(item) for item in value]
        if isinstance(value, (set, frozenset)):
            items.sort(key=repr)
        return tuple(items)
    if isinstance(value, datetime):
        return value.isoformat()
    return value  # type: ignore[return-value]


def _params(**params: object) -> tuple[tuple[str, Hashable], ...]:
    return tuple(
        sorted((name, _freeze(value)) for name, value in params.items() if value is not None)
    )


@dataclass(frozen=True, slots=True)
class QueryKey:
    entity_type: EntityType
    kind: str
    owner_id: str | None = None
    entity_id: str | None = None
    params: tuple[tuple[str, Hashable], ...] = ()

    @property
    def shape(self) -> ValueShape:
        return query_kind(self.entity_type, self.kind).shape

    @property
    def is_list(self) -> bool:
        return self.shape == "list"

    def param(self, name: str, default: object = None) -> object:
        for key, value in self.params:
            if key == name:
                return value
        return default

    def __str__(self) -> str:
        parts = [str(self.entity_type), self.kind]
        if self.owner_id is not None:
            parts.append(f"user={self.owner_id}")
        if self.entity_id is not None:
            parts.append(f"id={self.entity_id}")
        parts.extend(f"{name}={value}" for name, value in self.params)
        return ":".join(parts)


@dataclass(frozen=True, slots=True)
class KeyPattern:
    """Partial key; unset components match anything."""

    entity_type: EntityType | None = None
    kind: str | None = None
    owner_id: str | None = None
    entity_id: str | None = None

    def matches(self, key: QueryKey) -> bool:
        if self.entity_type is not None and key.entity_type != self.entity_type:
            return False
        if self.kind is not None and key.kind != self.kind:
            return False
        if self.owner_id is not None and key.owner_id != self.owner_id:
            return False
        if self.entity_id is not None and key.entity_id != self.entity_id:
            return False
        return True

    def __str__(self) -> str:
        return ":".join(
            str(part) if part is not None else "*"
            for part in (self.entity_type, self.kind, self.owner_id, self.entity_id)
        )


KeyOrPattern = QueryKey | KeyPattern


def matches(target: KeyOrPattern, key: QueryKey) -> bool:
    if isinstance(target, QueryKey):
        return target == key
    return target.matches(key)


def entity_pattern(entity_type: EntityType) -> KeyPattern:
    return KeyPattern(entity_type=entity_type)


def owner_pattern(entity_type: EntityType, owner_id: str) -> KeyPattern:
    return KeyPattern(entity_type=entity_type, owner_id=owner_id)


# -- Workouts -----------------------------------------------------------------


def workout(workout_id: str) -> QueryKey:
    return QueryKey(EntityType.WORKOUT, DETAIL, entity_id=workout_id)


def user_workouts(user_id: str, **filters: object) -> QueryKey:
    return QueryKey(EntityType.WORKOUT, OWNER, owner_id=user_id, params=_params(**filters))


def workouts_by_date(user_id: str, start: datetime, end: datetime) -> QueryKey:
    return QueryKey(
        EntityType.WORKOUT,
        "date_range",
        owner_id=user_id,
        params=_params(start=start, end=end),
    )


def workout_templates(user_id: str) -> QueryKey:
    return QueryKey(EntityType.WORKOUT, "templates", owner_id=user_id)


def recent_workouts(user_id: str, limit: int) -> QueryKey:
    return QueryKey(EntityType.WORKOUT, "recent", owner_id=user_id, params=_params(limit=limit))


# -- Goals --------------------------------------------------------------------


def goal(goal_id: str) -> QueryKey:
    return QueryKey(EntityType.GOAL, DETAIL, entity_id=goal_id)


def user_goals(user_id: str, **filters: object) -> QueryKey:
    return QueryKey(EntityType.GOAL, OWNER, owner_id=user_id, params=_params(**filters))


def active_goals(user_id: str) -> QueryKey:
    return QueryKey(EntityType.GOAL, "active", owner_id=user_id)


def overdue_goals(user_id: str) -> QueryKey:
    return QueryKey(EntityType.GOAL, "overdue", owner_id=user_id)


def completed_goals(user_id: str, limit: int) -> QueryKey:
    return QueryKey(EntityType.GOAL, "completed", owner_id=user_id, params=_params(limit=limit))


def goals_by_category(user_id: str, category: str) -> QueryKey:
    return QueryKey(
        EntityType.GOAL, "category", owner_id=user_id, params=_params(category=category)
    )


# -- Routines -----------------------------------------------------------------


def routine(routine_id: str) -> QueryKey:
    return QueryKey(EntityType.ROUTINE, DETAIL, entity_id=routine_id)


def user_routines(user_id: str, **filters: object) -> QueryKey:
    return QueryKey(EntityType.ROUTINE, OWNER, owner_id=user_id, params=_params(**filters))


def routines_for_day(user_id: str, day: str) -> QueryKey:
    return QueryKey(EntityType.ROUTINE, "day", owner_id=user_id, params=_params(day=day))


def routines_by_category(user_id: str, category: str) -> QueryKey:
    return QueryKey(
        EntityType.ROUTINE, "category", owner_id=user_id, params=_params(category=category)
    )


def most_used_routines(user_id: str, limit: int) -> QueryKey:
    return QueryKey(
        EntityType.ROUTINE, "most_used", owner_id=user_id, params=_params(limit=limit)
    )


def public_routines(
    category: str | None = None, difficulty: str | None = None, limit: int | None = None
) -> QueryKey:
    return QueryKey(
        EntityType.ROUTINE,
        "public",
        params=_params(category=category, difficulty=difficulty, limit=limit),
    )


def recommended_routines(
    difficulty: str, categories: Iterable[str], limit: int | None = None
) -> QueryKey:
    return QueryKey(
        EntityType.ROUTINE,
        "recommended",
        params=_params(difficulty=difficulty, categories=tuple(categories), limit=limit),
    )


# -- BMI history --------------------------------------------------------------


def bmi_entry(entry_id: str) -> QueryKey:
    return QueryKey(EntityType.BMI_ENTRY, DETAIL, entity_id=entry_id)


def user_bmi_history(user_id: str, **filters: object) -> QueryKey:
    return QueryKey(EntityType.BMI_ENTRY, OWNER, owner_id=user_id, params=_params(**filters))


def bmi_history_in_range(user_id: str, start: datetime, end: datetime) -> QueryKey:
    return QueryKey(
        EntityType.BMI_ENTRY,
        "date_range",
        owner_id=user_id,
        params=_params(start=start, end=end),
    )


def latest_bmi(user_id: str) -> QueryKey:
    return QueryKey(EntityType.BMI_ENTRY, "latest", owner_id=user_id)


def recent_bmi(user_id: str, limit: int) -> QueryKey:
    return QueryKey(EntityType.BMI_ENTRY, "recent", owner_id=user_id, params=_params(limit=limit))


def bmi_by_category(user_id: str, category: str) -> QueryKey:
    return QueryKey(
        EntityType.BMI_ENTRY, "category", owner_id=user_id, params=_params(category=category)
    )


def detail_key(entity_type: EntityType, entity_id: str) -> QueryKey:
    return QueryKey(entity_type, DETAIL, entity_id=entity_id)


def owner_key(entity_type: EntityType, user_id: str, **filters: object) -> QueryKey:
    return QueryKey(entity_type, OWNER, owner_id=user_id, params=_params(**filters))


__all__ = [
    "DETAIL",
    "KeyOrPattern",
    "KeyPattern",
    "OWNER",
    "QUERY_KINDS",
    "QueryKey",
    "QueryKind",
    "active_goals",
    "bmi_by_category",
    "bmi_entry",
    "bmi_history_in_range",
    "completed_goals",
    "detail_key",
    "entity_pattern",
    "goal",
    "goals_by_category",
    "latest_bmi",
    "matches",
    "most_used_routines",
    "overdue_goals",
    "owner_key",
    "owner_pattern",
    "public_routines",
    "query_kind",
    "recent_bmi",
    "recent_workouts",
    "recommended_routines",
    "routine",
    "routines_by_category",
    "routines_for_day",
    "user_bmi_history",
    "user_goals",
    "user_routines",
    "user_workouts",
    "workout",
    "workout_templates",
    "workouts_by_date",
]
