from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from fitsync.adapters.base import ListQuery
from fitsync.adapters.memory import MemoryStore
from fitsync.domain.entities import Entity, EntityType
from fitsync.settings import settings
from fitsync.sync.config import SyncConfig
from fitsync.sync.session import SyncSession

USER = "user-1"
OTHER_USER = "user-2"
START = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic clock the cache reads staleness against."""

    def __init__(self, start: float = 1000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeNow:
    """Wall clock used for entity timestamps."""

    def __init__(self, start: datetime = START) -> None:
        self.value = start

    def __call__(self) -> datetime:
        return self.value

    def advance(self, **delta: float) -> None:
        self.value += timedelta(**delta)


class Script:
    """Failures and pauses to inject into store calls."""

    def __init__(self) -> None:
        self._failures: dict[tuple[EntityType, str], list[BaseException]] = {}
        self._gates: dict[tuple[EntityType, str], asyncio.Event] = {}
        self._arrived: dict[tuple[EntityType, str], asyncio.Event] = {}

    def fail_next(
        self,
        entity_type: EntityType,
        operation: str,
        exc: BaseException | None = None,
    ) -> None:
        self._failures.setdefault((entity_type, operation), []).append(
            exc or RuntimeError("store unavailable")
        )

    def hold(self, entity_type: EntityType, operation: str) -> asyncio.Event:
        """Pause the next matching call until the returned event is set."""

        gate = asyncio.Event()
        self._gates[(entity_type, operation)] = gate
        self._arrived[(entity_type, operation)] = asyncio.Event()
        return gate

    async def arrived(self, entity_type: EntityType, operation: str) -> None:
        await self._arrived[(entity_type, operation)].wait()

    async def before(self, entity_type: EntityType, operation: str) -> None:
        key = (entity_type, operation)
        gate = self._gates.pop(key, None)
        if gate is not None:
            self._arrived[key].set()
            await gate.wait()
        failures = self._failures.get(key)
        if failures:
            raise failures.pop(0)


class ScriptedCollection:
    def __init__(self, inner: Any, script: Script) -> None:
        self._inner = inner
        self._script = script
        self.entity_type = inner.entity_type

    async def create(self, data: Mapping[str, Any]) -> Entity:
        await self._script.before(self.entity_type, "create")
        return await self._inner.create(data)

    async def get_by_id(self, entity_id: str) -> Entity | None:
        await self._script.before(self.entity_type, "get_by_id")
        return await self._inner.get_by_id(entity_id)

    async def update(self, entity_id: str, partial: Mapping[str, Any]) -> Entity:
        await self._script.before(self.entity_type, "update")
        return await self._inner.update(entity_id, partial)

    async def delete(self, entity_id: str) -> None:
        await self._script.before(self.entity_type, "delete")
        await self._inner.delete(entity_id)

    async def list(self, query: ListQuery) -> Sequence[Entity]:
        await self._script.before(self.entity_type, "list")
        return await self._inner.list(query)


class ScriptedStore:
    """Memory store whose calls can be failed or paused from a test."""

    def __init__(self, inner: MemoryStore) -> None:
        self.inner = inner
        self.script = Script()
        self._collections = {
            entity_type: ScriptedCollection(inner.collection(entity_type), self.script)
            for entity_type in EntityType
        }

    def collection(self, entity_type: EntityType) -> ScriptedCollection:
        return self._collections[EntityType(entity_type)]

    def seed(self, entity_type: EntityType, *records: Mapping[str, Any]) -> list[Entity]:
        return self.inner.collection(entity_type).seed(records)

    def calls(self, entity_type: EntityType, *operations: str) -> int:
        return self.inner.collection(entity_type).stats.total(*operations)


def make_goal(**overrides: Any) -> dict[str, Any]:
    goal = {
        "id": "goal-1",
        "user_id": USER,
        "title": "Squat 200kg",
        "category": "strength",
        "status": "active",
        "target_value": 200,
        "current_value": 150,
        "progress_percentage": 75,
        "unit": "kg",
        "target_date": START + timedelta(days=30),
        "completed_at": None,
        "created_at": START - timedelta(days=10),
        "updated_at": START - timedelta(days=1),
    }
    goal.update(overrides)
    return goal


def make_routine(**overrides: Any) -> dict[str, Any]:
    routine = {
        "id": "routine-1",
        "user_id": USER,
        "name": "Push day",
        "category": "strength",
        "difficulty": "intermediate",
        "schedule": ["monday", "thursday"],
        "exercises": [],
        "is_public": False,
        "times_used": 4,
        "created_at": START - timedelta(days=5),
        "updated_at": START - timedelta(days=5),
    }
    routine.update(overrides)
    return routine


def make_workout(**overrides: Any) -> dict[str, Any]:
    workout = {
        "id": "workout-1",
        "user_id": USER,
        "name": "Morning run",
        "date": START - timedelta(days=1),
        "exercises": [],
        "duration": 30,
        "is_template": False,
        "created_at": START - timedelta(days=1),
        "updated_at": START - timedelta(days=1),
    }
    workout.update(overrides)
    return workout


def make_bmi(**overrides: Any) -> dict[str, Any]:
    entry = {
        "id": "bmi-1",
        "user_id": USER,
        "weight": 80,
        "height": 180,
        "units": "metric",
        "bmi": 24.7,
        "category": "normal_weight",
        "recorded_at": START - timedelta(days=7),
        "source": "manual",
        "created_at": START - timedelta(days=7),
        "updated_at": START - timedelta(days=7),
    }
    entry.update(overrides)
    return entry


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def now() -> FakeNow:
    return FakeNow()


@pytest.fixture
def store(now: FakeNow) -> ScriptedStore:
    return ScriptedStore(MemoryStore(clock=now))


@pytest.fixture
def config() -> SyncConfig:
    return SyncConfig.from_settings(settings)


@pytest.fixture
def session(store: ScriptedStore, config: SyncConfig, clock: FakeClock, now: FakeNow) -> SyncSession:
    return SyncSession(store, config, user_id=USER, clock=clock, now=now)
