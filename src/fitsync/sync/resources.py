"""Per-entity query and mutation facades bound to a session."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import TYPE_CHECKING, Any

from fitsync.domain.entities import Entity, EntityType
from fitsync.sync import keys
from fitsync.sync.operations import (
    CreateEntity,
    IncrementRoutineUsage,
    OperationKind,
    UpdateGoalProgress,
)

if TYPE_CHECKING:
    from fitsync.sync.session import SyncSession


class EntityResource:
    entity_type: EntityType

    def __init__(self, session: "SyncSession") -> None:
        self._session = session

    @property
    def _queries(self):
        return self._session.config.queries

    async def get(self, entity_id: str) -> Entity:
        return await self._session.read(keys.detail_key(self.entity_type, entity_id))

    async def list(self, **filters: object) -> list[Entity]:
        user_id = self._session.require_user()
        return await self._session.read(keys.owner_key(self.entity_type, user_id, **filters))

    async def create(self, data: Mapping[str, Any]) -> Entity:
        return await self._session.dispatch(self.entity_type, OperationKind.CREATE, data)

    async def update(self, entity_id: str, changes: Mapping[str, Any]) -> Entity:
        return await self._session.dispatch(
            self.entity_type, OperationKind.UPDATE, {"id": entity_id, "changes": changes}
        )

    async def delete(self, entity_id: str) -> None:
        await self._session.dispatch(self.entity_type, OperationKind.DELETE, {"id": entity_id})


class WorkoutResource(EntityResource):
    entity_type = EntityType.WORKOUT

    async def by_date(self, start: datetime, end: datetime) -> list[Entity]:
        user_id = self._session.require_user()
        return await self._session.read(keys.workouts_by_date(user_id, start, end))

    async def templates(self) -> list[Entity]:
        user_id = self._session.require_user()
        return await self._session.read(keys.workout_templates(user_id))

    async def recent(self, limit: int | None = None) -> list[Entity]:
        user_id = self._session.require_user()
        limit = limit if limit is not None else self._queries.recent_limit
        return await self._session.read(keys.recent_workouts(user_id, limit))


class GoalResource(EntityResource):
    entity_type = EntityType.GOAL

    async def active(self) -> list[Entity]:
        user_id = self._session.require_user()
        return await self._session.read(keys.active_goals(user_id))

    async def overdue(self) -> list[Entity]:
        user_id = self._session.require_user()
        return await self._session.read(keys.overdue_goals(user_id))

    async def completed(self, limit: int | None = None) -> list[Entity]:
        user_id = self._session.require_user()
        limit = limit if limit is not None else self._queries.completed_limit
        return await self._session.read(keys.completed_goals(user_id, limit))

    async def by_category(self, category: str) -> list[Entity]:
        user_id = self._session.require_user()
        return await self._session.read(keys.goals_by_category(user_id, category))

    async def update_progress(self, goal_id: str, new_value: float) -> Entity:
        return await self._session.mutate(UpdateGoalProgress(goal_id, new_value))


class RoutineResource(EntityResource):
    entity_type = EntityType.ROUTINE

    async def for_day(self, day: str) -> list[Entity]:
        user_id = self._session.require_user()
        return await self._session.read(keys.routines_for_day(user_id, day))

    async def by_category(self, category: str) -> list[Entity]:
        user_id = self._session.require_user()
        return await self._session.read(keys.routines_by_category(user_id, category))

    async def most_used(self, limit: int | None = None) -> list[Entity]:
        user_id = self._session.require_user()
        limit = limit if limit is not None else self._queries.most_used_limit
        return await self._session.read(keys.most_used_routines(user_id, limit))

    async def public(
        self,
        category: str | None = None,
        difficulty: str | None = None,
        limit: int | None = None,
    ) -> list[Entity]:
        return await self._session.read(keys.public_routines(category, difficulty, limit))

    async def recommended(
        self, difficulty: str, categories: Iterable[str], limit: int | None = None
    ) -> list[Entity]:
        return await self._session.read(
            keys.recommended_routines(difficulty, categories, limit)
        )

    async def increment_usage(self, routine_id: str) -> Entity:
        return await self._session.mutate(IncrementRoutineUsage(routine_id))


class BMIHistoryResource(EntityResource):
    entity_type = EntityType.BMI_ENTRY

    async def in_range(self, start: datetime, end: datetime) -> list[Entity]:
        user_id = self._session.require_user()
        return await self._session.read(keys.bmi_history_in_range(user_id, start, end))

    async def latest(self) -> Entity | None:
        user_id = self._session.require_user()
        return await self._session.read(keys.latest_bmi(user_id))

    async def recent(self, limit: int | None = None) -> list[Entity]:
        user_id = self._session.require_user()
        limit = limit if limit is not None else self._queries.recent_limit
        return await self._session.read(keys.recent_bmi(user_id, limit))

    async def by_category(self, category: str) -> list[Entity]:
        user_id = self._session.require_user()
        return await self._session.read(keys.bmi_by_category(user_id, category))

    async def create_from_profile(
        self, *, weight: float, height: float, units: str = "metric"
    ) -> Entity:
        """Record the measurements from a profile update as a history entry."""

        data = {
            "weight": weight,
            "height": height,
            "units": units,
            "source": "profile_update",
            "recorded_at": self._session.now(),
        }
        return await self._session.mutate(CreateEntity(self.entity_type, data))


__all__ = [
    "BMIHistoryResource",
    "EntityResource",
    "GoalResource",
    "RoutineResource",
    "WorkoutResource",
]
