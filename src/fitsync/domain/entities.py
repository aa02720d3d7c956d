"""Entity records and their structural update types.

Entities travel through the cache and the adapters as plain ``dict`` records.
The TypedDicts below document their shape; the ``*Update`` types double as the
whitelist of fields a partial update may touch.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Mapping, TypedDict

from fitsync.errors import ValidationFailure


class EntityType(str, Enum):
    WORKOUT = "workouts"
    GOAL = "goals"
    ROUTINE = "routines"
    BMI_ENTRY = "bmi_history"

    def __str__(self) -> str:
        return self.value


GoalStatus = Literal["active", "paused", "completed", "cancelled"]
GOAL_STATUSES: tuple[str, ...] = ("active", "paused", "completed", "cancelled")

Units = Literal["metric", "imperial"]


class Workout(TypedDict, total=False):
    id: str
    user_id: str
    name: str
    date: datetime
    exercises: list[dict[str, Any]]
    duration: float
    notes: str
    is_template: bool
    created_at: datetime
    updated_at: datetime


class WorkoutUpdate(TypedDict, total=False):
    name: str
    date: datetime
    exercises: list[dict[str, Any]]
    duration: float
    notes: str
    is_template: bool


class Goal(TypedDict, total=False):
    id: str
    user_id: str
    title: str
    description: str
    category: str
    type: str
    priority: str
    status: GoalStatus
    target_value: float
    current_value: float
    unit: str
    target_date: datetime
    related_exercise: str
    related_muscle_groups: list[str]
    milestones: list[dict[str, Any]]
    is_public: bool
    reminder_frequency: str
    progress_percentage: int
    last_updated: datetime
    completed_at: datetime
    created_at: datetime
    updated_at: datetime


class GoalUpdate(TypedDict, total=False):
    title: str
    description: str
    category: str
    type: str
    priority: str
    status: GoalStatus
    target_value: float
    current_value: float
    unit: str
    target_date: datetime
    related_exercise: str
    related_muscle_groups: list[str]
    milestones: list[dict[str, Any]]
    is_public: bool
    reminder_frequency: str


class Routine(TypedDict, total=False):
    id: str
    user_id: str
    name: str
    description: str
    category: str
    difficulty: str
    exercises: list[dict[str, Any]]
    schedule: list[str]
    estimated_duration: float
    is_public: bool
    tags: list[str]
    times_used: int
    average_rating: float
    created_at: datetime
    updated_at: datetime


class RoutineUpdate(TypedDict, total=False):
    name: str
    description: str
    category: str
    difficulty: str
    exercises: list[dict[str, Any]]
    schedule: list[str]
    estimated_duration: float
    is_public: bool
    tags: list[str]


class BMIEntry(TypedDict, total=False):
    id: str
    user_id: str
    weight: float
    height: float
    units: Units
    bmi: float
    category: str
    recorded_at: datetime
    notes: str
    source: str
    created_at: datetime
    updated_at: datetime


class BMIEntryUpdate(TypedDict, total=False):
    weight: float
    height: float
    units: Units
    notes: str


Entity = dict[str, Any]

_UPDATE_TYPES: dict[EntityType, type] = {
    EntityType.WORKOUT: WorkoutUpdate,
    EntityType.GOAL: GoalUpdate,
    EntityType.ROUTINE: RoutineUpdate,
    EntityType.BMI_ENTRY: BMIEntryUpdate,
}

UPDATABLE_FIELDS: dict[EntityType, frozenset[str]] = {
    entity_type: frozenset(update_type.__annotations__)
    for entity_type, update_type in _UPDATE_TYPES.items()
}

# Fields stamped by the store; never accepted from callers on create.
SYSTEM_FIELDS = frozenset({"id", "user_id", "created_at", "updated_at"})

CREATE_DEFAULTS: dict[EntityType, Mapping[str, Any]] = {
    EntityType.WORKOUT: {"is_template": False},
    EntityType.GOAL: {
        "status": "active",
        "progress_percentage": 0,
        "current_value": 0,
        "priority": "medium",
        "is_public": False,
        "reminder_frequency": "weekly",
    },
    EntityType.ROUTINE: {"times_used": 0, "is_public": False},
    EntityType.BMI_ENTRY: {"source": "manual"},
}

# Timestamp each entity list is ordered by, newest first.
ORDER_FIELDS: dict[EntityType, str] = {
    EntityType.WORKOUT: "date",
    EntityType.GOAL: "created_at",
    EntityType.ROUTINE: "created_at",
    EntityType.BMI_ENTRY: "recorded_at",
}

DATETIME_FIELDS: dict[EntityType, frozenset[str]] = {
    EntityType.WORKOUT: frozenset({"date", "created_at", "updated_at"}),
    EntityType.GOAL: frozenset(
        {"target_date", "last_updated", "completed_at", "created_at", "updated_at"}
    ),
    EntityType.ROUTINE: frozenset({"created_at", "updated_at"}),
    EntityType.BMI_ENTRY: frozenset({"recorded_at", "created_at", "updated_at"}),
}


def coerce_entity_type(value: EntityType | str) -> EntityType:
    try:
        return EntityType(value)
    except ValueError as exc:
        raise ValidationFailure(f"Unknown entity type: {value!r}") from exc


def allowed_update_fields(entity_type: EntityType | str) -> frozenset[str]:
    return UPDATABLE_FIELDS[coerce_entity_type(entity_type)]


def validate_update(
    entity_type: EntityType | str, changes: Mapping[str, Any]
) -> dict[str, Any]:
    """Return ``changes`` as a dict, rejecting fields outside the update type."""

    if not isinstance(changes, Mapping):
        raise ValidationFailure("Update payload must be a mapping")
    allowed = allowed_update_fields(entity_type)
    unknown = sorted(set(changes) - allowed)
    if unknown:
        raise ValidationFailure(
            f"Fields not updatable on {entity_type}: {', '.join(unknown)}",
            field=unknown[0],
        )
    return dict(changes)


def validate_create(
    entity_type: EntityType | str, data: Mapping[str, Any]
) -> dict[str, Any]:
    """Return create ``data`` as a dict, rejecting store-managed fields."""

    if not isinstance(data, Mapping):
        raise ValidationFailure("Create payload must be a mapping")
    reserved = sorted(SYSTEM_FIELDS & set(data))
    if reserved:
        raise ValidationFailure(
            f"Fields are assigned by the store: {', '.join(reserved)}",
            field=reserved[0],
        )
    return dict(data)


__all__ = [
    "BMIEntry",
    "BMIEntryUpdate",
    "CREATE_DEFAULTS",
    "DATETIME_FIELDS",
    "Entity",
    "EntityType",
    "GOAL_STATUSES",
    "Goal",
    "GoalStatus",
    "GoalUpdate",
    "ORDER_FIELDS",
    "Routine",
    "RoutineUpdate",
    "SYSTEM_FIELDS",
    "UPDATABLE_FIELDS",
    "Workout",
    "WorkoutUpdate",
    "allowed_update_fields",
    "coerce_entity_type",
    "validate_create",
    "validate_update",
]
