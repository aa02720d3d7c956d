from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from conftest import START, USER, FakeNow
from fitsync.adapters.base import Filter, ListQuery
from fitsync.adapters.sqlite_store import SQLiteStore
from fitsync.domain.entities import EntityType
from fitsync.errors import NotFound


@pytest.mark.asyncio
async def test_documents_round_trip_through_sqlite(tmp_path: Path, now: FakeNow) -> None:
    async with SQLiteStore(str(tmp_path / "docs.sqlite3"), clock=now) as store:
        goals = store.collection(EntityType.GOAL)
        created = await goals.create(
            {
                "user_id": USER,
                "title": "Bench 100kg",
                "target_value": 100,
                "target_date": START + timedelta(days=60),
            }
        )

        fetched = await goals.get_by_id(created["id"])
        assert fetched == created
        assert fetched["target_date"] == START + timedelta(days=60)
        assert fetched["created_at"] == START

        now.advance(minutes=1)
        updated = await goals.update(created["id"], {"current_value": 40})
        assert updated["current_value"] == 40
        assert updated["updated_at"] == START + timedelta(minutes=1)
        assert (await goals.get_by_id(created["id"]))["current_value"] == 40


@pytest.mark.asyncio
async def test_list_is_scoped_by_owner_and_collection(tmp_path: Path, now: FakeNow) -> None:
    async with SQLiteStore(str(tmp_path / "docs.sqlite3"), clock=now) as store:
        routines = store.collection(EntityType.ROUTINE)
        await routines.create({"user_id": USER, "name": "Push", "schedule": ["monday"]})
        await routines.create({"user_id": USER, "name": "Pull", "schedule": ["tuesday"]})
        await routines.create({"user_id": "user-9", "name": "Legs", "schedule": ["monday"]})
        await store.collection(EntityType.WORKOUT).create({"user_id": USER, "name": "Run"})

        mine = await routines.list(ListQuery(owner_id=USER))
        assert sorted(routine["name"] for routine in mine) == ["Pull", "Push"]

        monday = await routines.list(
            ListQuery(owner_id=USER, filters=(Filter("schedule", "contains", "monday"),))
        )
        assert [routine["name"] for routine in monday] == ["Push"]


@pytest.mark.asyncio
async def test_missing_documents(tmp_path: Path, now: FakeNow) -> None:
    async with SQLiteStore(str(tmp_path / "docs.sqlite3"), clock=now) as store:
        workouts = store.collection(EntityType.WORKOUT)
        created = await workouts.create({"user_id": USER, "name": "Run"})
        await workouts.delete(created["id"])

        assert await workouts.get_by_id(created["id"]) is None
        with pytest.raises(NotFound):
            await workouts.delete(created["id"])
        with pytest.raises(NotFound):
            await workouts.update(created["id"], {"name": "Walk"})


def test_collection_requires_init(tmp_path: Path) -> None:
    store = SQLiteStore(str(tmp_path / "docs.sqlite3"))

    with pytest.raises(RuntimeError):
        store.collection(EntityType.GOAL)
