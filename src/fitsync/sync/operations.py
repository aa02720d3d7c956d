"""Mutation operations as tagged variants.

Each operation kind has its own dataclass carrying exactly the payload it
needs. The coordinator dispatches on ``operation.kind`` through a handler
table instead of branching on loosely typed payloads.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Mapping

from fitsync.domain.entities import (
    EntityType,
    coerce_entity_type,
    validate_create,
    validate_update,
)
from fitsync.errors import ValidationFailure


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    PROGRESS_UPDATE = "progress_update"
    USAGE_INCREMENT = "usage_increment"

    def __str__(self) -> str:
        return self.value


_CRUD = frozenset({OperationKind.CREATE, OperationKind.UPDATE, OperationKind.DELETE})

SUPPORTED_OPERATIONS: dict[EntityType, frozenset[OperationKind]] = {
    EntityType.WORKOUT: _CRUD,
    EntityType.GOAL: _CRUD | {OperationKind.PROGRESS_UPDATE},
    EntityType.ROUTINE: _CRUD | {OperationKind.USAGE_INCREMENT},
    EntityType.BMI_ENTRY: _CRUD,
}


@dataclass(frozen=True, slots=True)
class CreateEntity:
    entity_type: EntityType
    data: Mapping[str, Any] = field(default_factory=dict)

    kind: ClassVar[OperationKind] = OperationKind.CREATE

    @property
    def entity_id(self) -> str | None:
        return None

    @property
    def fields(self) -> frozenset[str]:
        return frozenset(self.data)


@dataclass(frozen=True, slots=True)
class UpdateEntity:
    entity_type: EntityType
    entity_id: str
    changes: Mapping[str, Any] = field(default_factory=dict)

    kind: ClassVar[OperationKind] = OperationKind.UPDATE

    @property
    def fields(self) -> frozenset[str]:
        return frozenset(self.changes)


@dataclass(frozen=True, slots=True)
class DeleteEntity:
    entity_type: EntityType
    entity_id: str

    kind: ClassVar[OperationKind] = OperationKind.DELETE

    @property
    def fields(self) -> frozenset[str]:
        return frozenset()


@dataclass(frozen=True, slots=True)
class UpdateGoalProgress:
    goal_id: str
    new_value: float

    kind: ClassVar[OperationKind] = OperationKind.PROGRESS_UPDATE

    @property
    def entity_type(self) -> EntityType:
        return EntityType.GOAL

    @property
    def entity_id(self) -> str:
        return self.goal_id

    @property
    def fields(self) -> frozenset[str]:
        return frozenset({"current_value"})


@dataclass(frozen=True, slots=True)
class IncrementRoutineUsage:
    routine_id: str

    kind: ClassVar[OperationKind] = OperationKind.USAGE_INCREMENT

    @property
    def entity_type(self) -> EntityType:
        return EntityType.ROUTINE

    @property
    def entity_id(self) -> str:
        return self.routine_id

    @property
    def fields(self) -> frozenset[str]:
        return frozenset({"times_used"})


Operation = (
    CreateEntity
    | UpdateEntity
    | DeleteEntity
    | UpdateGoalProgress
    | IncrementRoutineUsage
)


def _require_id(payload: Mapping[str, Any]) -> str:
    entity_id = payload.get("id")
    if not isinstance(entity_id, str) or not entity_id:
        raise ValidationFailure("Operation payload requires an 'id'", field="id")
    return entity_id


def coerce_kind(value: OperationKind | str) -> OperationKind:
    try:
        return OperationKind(value)
    except ValueError as exc:
        raise ValidationFailure(f"Unknown operation kind: {value!r}") from exc


def build_operation(
    entity_type: EntityType | str,
    kind: OperationKind | str,
    payload: Mapping[str, Any],
) -> Operation:
    """Turn an ``(entity type, kind, payload)`` triple into an operation.

    Payload shapes:

    - ``create``: the new record's fields
    - ``update``: ``{"id": ..., "changes": {...}}``
    - ``delete``: ``{"id": ...}``
    - ``progress_update``: ``{"id": ..., "new_value": ...}``
    - ``usage_increment``: ``{"id": ...}``
    """

    resolved_type = coerce_entity_type(entity_type)
    resolved_kind = coerce_kind(kind)
    if resolved_kind not in SUPPORTED_OPERATIONS[resolved_type]:
        raise ValidationFailure(
            f"Operation {resolved_kind} is not supported for {resolved_type}"
        )
    if not isinstance(payload, Mapping):
        raise ValidationFailure("Operation payload must be a mapping")

    if resolved_kind is OperationKind.CREATE:
        return CreateEntity(resolved_type, validate_create(resolved_type, payload))
    if resolved_kind is OperationKind.UPDATE:
        changes = payload.get("changes")
        if changes is None:
            raise ValidationFailure("Update payload requires 'changes'", field="changes")
        return UpdateEntity(
            resolved_type, _require_id(payload), validate_update(resolved_type, changes)
        )
    if resolved_kind is OperationKind.DELETE:
        return DeleteEntity(resolved_type, _require_id(payload))
    if resolved_kind is OperationKind.PROGRESS_UPDATE:
        if "new_value" not in payload:
            raise ValidationFailure(
                "Progress payload requires 'new_value'", field="new_value"
            )
        return UpdateGoalProgress(_require_id(payload), payload["new_value"])
    return IncrementRoutineUsage(_require_id(payload))


__all__ = [
    "CreateEntity",
    "DeleteEntity",
    "IncrementRoutineUsage",
    "Operation",
    "OperationKind",
    "SUPPORTED_OPERATIONS",
    "UpdateEntity",
    "UpdateGoalProgress",
    "build_operation",
    "coerce_kind",
]
