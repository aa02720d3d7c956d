"""Optimistic value rules, one handler per operation kind.

A handler validates an operation, computes the provisional cache values it
implies from the current cache state, and performs the remote call. Handlers
never write to the cache themselves; the coordinator snapshots and applies
whatever ``plan`` returns.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from logging import getLogger
from typing import Any, Protocol, TypeVar

from ulid import ULID

from fitsync.adapters.base import EntityAdapter
from fitsync.domain.entities import CREATE_DEFAULTS, Entity, EntityType
from fitsync.domain.goals import apply_progress, validate_progress
from fitsync.errors import NotFound, ValidationFailure
from fitsync.sync.cache import QueryCache
from fitsync.sync.keys import KeyPattern, QueryKey, detail_key, owner_key
from fitsync.sync.operations import (
    CreateEntity,
    DeleteEntity,
    IncrementRoutineUsage,
    Operation,
    OperationKind,
    UpdateEntity,
    UpdateGoalProgress,
)

logger = getLogger(__name__)

EntityLoader = Callable[[EntityType, str], Awaitable[Entity]]
OptimisticPlan = dict[QueryKey, Any]

OpT = TypeVar("OpT", contravariant=True)


@dataclass(slots=True)
class HandlerContext:
    """Per-mutation inputs shared by the validate, plan and remote steps."""

    owner_id: str
    now: datetime
    load: EntityLoader
    temp_id_prefix: str = "temp-"
    base: Entity | None = None
    temp_id: str | None = None


class OptimisticHandler(Protocol[OpT]):
    async def validate(self, operation: OpT, ctx: HandlerContext) -> None: ...

    def plan(self, operation: OpT, cache: QueryCache, ctx: HandlerContext) -> OptimisticPlan: ...

    async def remote(
        self, operation: OpT, adapter: EntityAdapter, ctx: HandlerContext
    ) -> Entity | None: ...


def _cached_items(
    cache: QueryCache, entity_type: EntityType, owner_id: str | None = None
) -> list[tuple[QueryKey, Any]]:
    pattern = KeyPattern(entity_type=entity_type, owner_id=owner_id)
    return [(key, cache.peek(key)) for key in cache.keys(pattern)]


def _merge_everywhere(
    cache: QueryCache,
    entity_type: EntityType,
    entity_id: str,
    fields: dict[str, Any],
) -> OptimisticPlan:
    """Merge ``fields`` into every cached copy of the entity."""

    planned: OptimisticPlan = {}
    for key, value in _cached_items(cache, entity_type):
        if isinstance(value, list):
            if not any(item.get("id") == entity_id for item in value):
                continue
            planned[key] = [
                {**item, **fields} if item.get("id") == entity_id else item
                for item in value
            ]
        elif isinstance(value, dict) and value.get("id") == entity_id:
            planned[key] = {**value, **fields}
    return planned


def find_cached_entity(
    cache: QueryCache, entity_type: EntityType, entity_id: str
) -> Entity | None:
    """Return the entity from its detail key or any cached list holding it."""

    cached = cache.peek(detail_key(entity_type, entity_id))
    if isinstance(cached, dict):
        return cached
    for _, value in _cached_items(cache, entity_type):
        if isinstance(value, list):
            for item in value:
                if item.get("id") == entity_id:
                    return item
        elif isinstance(value, dict) and value.get("id") == entity_id:
            return value
    return None


class CreateHandler:
    async def validate(self, operation: CreateEntity, ctx: HandlerContext) -> None:
        ctx.temp_id = f"{ctx.temp_id_prefix}{ULID()}"

    def plan(
        self, operation: CreateEntity, cache: QueryCache, ctx: HandlerContext
    ) -> OptimisticPlan:
        entity_type = operation.entity_type
        placeholder: Entity = dict(CREATE_DEFAULTS[entity_type])
        placeholder.update(operation.data)
        placeholder.update(
            id=ctx.temp_id,
            user_id=ctx.owner_id,
            created_at=ctx.now,
            updated_at=ctx.now,
        )
        planned: OptimisticPlan = {}
        for key, value in _cached_items(cache, entity_type, ctx.owner_id):
            if key.is_list and isinstance(value, list):
                planned[key] = [placeholder, *value]
        owner_list = owner_key(entity_type, ctx.owner_id)
        planned.setdefault(owner_list, [placeholder])
        return planned

    async def remote(
        self, operation: CreateEntity, adapter: EntityAdapter, ctx: HandlerContext
    ) -> Entity:
        return await adapter.create({**operation.data, "user_id": ctx.owner_id})


class UpdateHandler:
    async def validate(self, operation: UpdateEntity, ctx: HandlerContext) -> None:
        if not operation.changes:
            raise ValidationFailure("Update carries no changes", field="changes")

    def plan(
        self, operation: UpdateEntity, cache: QueryCache, ctx: HandlerContext
    ) -> OptimisticPlan:
        fields = {**operation.changes, "updated_at": ctx.now}
        return _merge_everywhere(cache, operation.entity_type, operation.entity_id, fields)

    async def remote(
        self, operation: UpdateEntity, adapter: EntityAdapter, ctx: HandlerContext
    ) -> Entity:
        return await adapter.update(operation.entity_id, dict(operation.changes))


class DeleteHandler:
    async def validate(self, operation: DeleteEntity, ctx: HandlerContext) -> None:
        return None

    def plan(
        self, operation: DeleteEntity, cache: QueryCache, ctx: HandlerContext
    ) -> OptimisticPlan:
        # Single-entity keys are left to invalidation.
        planned: OptimisticPlan = {}
        for key, value in _cached_items(cache, operation.entity_type):
            if not isinstance(value, list):
                continue
            kept = [item for item in value if item.get("id") != operation.entity_id]
            if len(kept) != len(value):
                planned[key] = kept
        return planned

    async def remote(
        self, operation: DeleteEntity, adapter: EntityAdapter, ctx: HandlerContext
    ) -> None:
        await adapter.delete(operation.entity_id)
        return None


class GoalProgressHandler:
    async def validate(self, operation: UpdateGoalProgress, ctx: HandlerContext) -> None:
        goal = await ctx.load(EntityType.GOAL, operation.goal_id)
        validate_progress(goal, operation.new_value)
        ctx.base = goal

    def plan(
        self, operation: UpdateGoalProgress, cache: QueryCache, ctx: HandlerContext
    ) -> OptimisticPlan:
        assert ctx.base is not None
        fields = apply_progress(ctx.base, operation.new_value, ctx.now)
        return _merge_everywhere(cache, EntityType.GOAL, operation.goal_id, fields)

    async def remote(
        self, operation: UpdateGoalProgress, adapter: EntityAdapter, ctx: HandlerContext
    ) -> Entity:
        # Progress is recomputed against the stored goal, not the cached copy.
        current = await adapter.get_by_id(operation.goal_id)
        if current is None:
            raise NotFound(str(EntityType.GOAL), operation.goal_id)
        fields = apply_progress(current, operation.new_value, ctx.now)
        fields.pop("updated_at", None)
        return await adapter.update(operation.goal_id, fields)


class RoutineUsageHandler:
    async def validate(self, operation: IncrementRoutineUsage, ctx: HandlerContext) -> None:
        ctx.base = await ctx.load(EntityType.ROUTINE, operation.routine_id)

    def plan(
        self, operation: IncrementRoutineUsage, cache: QueryCache, ctx: HandlerContext
    ) -> OptimisticPlan:
        assert ctx.base is not None
        fields = {
            "times_used": int(ctx.base.get("times_used") or 0) + 1,
            "updated_at": ctx.now,
        }
        return _merge_everywhere(cache, EntityType.ROUTINE, operation.routine_id, fields)

    async def remote(
        self, operation: IncrementRoutineUsage, adapter: EntityAdapter, ctx: HandlerContext
    ) -> Entity:
        current = await adapter.get_by_id(operation.routine_id)
        if current is None:
            raise NotFound(str(EntityType.ROUTINE), operation.routine_id)
        times_used = int(current.get("times_used") or 0) + 1
        return await adapter.update(operation.routine_id, {"times_used": times_used})


OPTIMISTIC_HANDLERS: dict[OperationKind, OptimisticHandler[Any]] = {
    OperationKind.CREATE: CreateHandler(),
    OperationKind.UPDATE: UpdateHandler(),
    OperationKind.DELETE: DeleteHandler(),
    OperationKind.PROGRESS_UPDATE: GoalProgressHandler(),
    OperationKind.USAGE_INCREMENT: RoutineUsageHandler(),
}


def handler_for(operation: Operation) -> OptimisticHandler[Any]:
    try:
        return OPTIMISTIC_HANDLERS[operation.kind]
    except KeyError:
        raise ValidationFailure(f"No handler for operation {operation.kind}") from None


__all__ = [
    "EntityLoader",
    "HandlerContext",
    "OPTIMISTIC_HANDLERS",
    "OptimisticHandler",
    "OptimisticPlan",
    "find_cached_entity",
    "handler_for",
]
