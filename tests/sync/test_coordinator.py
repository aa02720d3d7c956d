from __future__ import annotations

import asyncio
import dataclasses

import pytest

from conftest import (
    START,
    USER,
    FakeClock,
    FakeNow,
    ScriptedStore,
    make_bmi,
    make_goal,
    make_routine,
    make_workout,
)
from fitsync.domain.entities import EntityType
from fitsync.errors import AdapterFailure, AuthRequired, NotFound, ValidationFailure
from fitsync.sync import keys
from fitsync.sync.cache import CacheEvent
from fitsync.sync.config import SyncConfig
from fitsync.sync.coordinator import IllegalTransition, MutationContext, MutationState
from fitsync.sync.operations import DeleteEntity, UpdateGoalProgress
from fitsync.sync.pulse import MUTATION_ROLLBACK, MUTATION_STATE, PulseEvent
from fitsync.sync.session import SyncSession


def _states(session: SyncSession) -> list[str]:
    states: list[str] = []

    def listener(event: PulseEvent) -> None:
        states.append(event.payload["state"])

    session.pulse.subscribe(listener, topics=[MUTATION_STATE], replay_last=False)
    return states


@pytest.mark.asyncio
async def test_failed_update_restores_snapshot_exactly(
    session: SyncSession, store: ScriptedStore
) -> None:
    store.seed(EntityType.GOAL, make_goal())
    await session.goals.list()
    await session.goals.get("goal-1")
    list_key, detail_key = keys.user_goals(USER), keys.goal("goal-1")
    before = {key: session.cache.entry(key) for key in (list_key, detail_key)}

    store.script.fail_next(EntityType.GOAL, "update")
    with pytest.raises(AdapterFailure) as excinfo:
        await session.goals.update("goal-1", {"title": "Deadlift 250kg"})

    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert excinfo.value.entity_type == "goals"
    assert {key: session.cache.entry(key) for key in before} == before
    rolled_back = session.pulse.latest(MUTATION_ROLLBACK)["keys"]
    assert sorted(rolled_back) == sorted([str(list_key), str(detail_key)])
    assert session.coordinator.in_flight == ()


@pytest.mark.asyncio
async def test_state_history_for_success_and_failure(
    session: SyncSession, store: ScriptedStore
) -> None:
    store.seed(EntityType.GOAL, make_goal())
    await session.goals.list()
    states = _states(session)

    await session.goals.update("goal-1", {"title": "Front squat"})
    assert states == ["applying", "calling", "succeeded", "idle"]

    states.clear()
    store.script.fail_next(EntityType.GOAL, "update")
    with pytest.raises(AdapterFailure):
        await session.goals.update("goal-1", {"title": "Back squat"})
    assert states == ["applying", "calling", "failed", "idle"]


def test_context_rejects_illegal_transition() -> None:
    context = MutationContext(operation=UpdateGoalProgress("g1", 1), owner_id=USER)

    context.transition(MutationState.APPLYING)
    with pytest.raises(IllegalTransition):
        context.transition(MutationState.SUCCEEDED)
    assert context.history == [MutationState.IDLE, MutationState.APPLYING]


@pytest.mark.asyncio
async def test_progress_completion_is_idempotent(
    session: SyncSession, store: ScriptedStore, now: FakeNow
) -> None:
    store.seed(EntityType.GOAL, make_goal())
    await session.goals.list()

    first = await session.goals.update_progress("goal-1", 200)
    completed_at = first["completed_at"]
    now.advance(hours=2)
    second = await session.goals.update_progress("goal-1", 200)

    assert first["status"] == "completed"
    assert first["progress_percentage"] == 100
    assert completed_at is not None
    assert second["completed_at"] == completed_at
    assert second["status"] == "completed"


@pytest.mark.asyncio
async def test_progress_below_current_value_is_rejected_untouched(
    session: SyncSession, store: ScriptedStore
) -> None:
    store.seed(EntityType.GOAL, make_goal())
    await session.goals.list()
    before = session.cache.entry(keys.user_goals(USER))
    states = _states(session)

    with pytest.raises(ValidationFailure):
        await session.goals.update_progress("goal-1", 100)

    assert session.cache.entry(keys.user_goals(USER)) == before
    assert store.calls(EntityType.GOAL, "get_by_id", "update") == 0
    assert states == []


@pytest.mark.asyncio
async def test_progress_on_unknown_goal_raises_not_found(
    session: SyncSession, store: ScriptedStore
) -> None:
    with pytest.raises(NotFound):
        await session.goals.update_progress("missing", 10)
    assert len(session.cache) == 0


@pytest.mark.asyncio
async def test_progress_writes_optimistic_values_everywhere(
    session: SyncSession, store: ScriptedStore
) -> None:
    store.seed(EntityType.GOAL, make_goal())
    await session.goals.list()
    await session.goals.active()
    await session.goals.get("goal-1")
    gate = store.script.hold(EntityType.GOAL, "get_by_id")

    pending = asyncio.create_task(session.goals.update_progress("goal-1", 180))
    await store.script.arrived(EntityType.GOAL, "get_by_id")
    for key in (keys.user_goals(USER), keys.active_goals(USER)):
        assert session.cache.peek(key)[0]["progress_percentage"] == 90
    assert session.cache.peek(keys.goal("goal-1"))["current_value"] == 180

    gate.set()
    result = await pending
    assert result["current_value"] == 180
    assert not session.cache.is_fresh(keys.active_goals(USER))


@pytest.mark.asyncio
async def test_create_placeholder_is_replaced_after_refetch(
    session: SyncSession, store: ScriptedStore
) -> None:
    await session.goals.list()
    await session.goals.active()
    gate = store.script.hold(EntityType.GOAL, "create")

    pending = asyncio.create_task(
        session.goals.create({"title": "Run 10k", "target_value": 10, "unit": "km"})
    )
    await store.script.arrived(EntityType.GOAL, "create")
    for key in (keys.user_goals(USER), keys.active_goals(USER)):
        (placeholder,) = session.cache.peek(key)
        assert placeholder["id"].startswith("temp-")
        assert placeholder["status"] == "active"
        assert placeholder["user_id"] == USER

    gate.set()
    created = await pending
    listed = await session.goals.list()

    assert [goal["id"] for goal in listed] == [created["id"]]
    assert not created["id"].startswith("temp-")


@pytest.mark.asyncio
async def test_create_without_cached_lists_seeds_owner_list(
    session: SyncSession, store: ScriptedStore
) -> None:
    gate = store.script.hold(EntityType.ROUTINE, "create")

    pending = asyncio.create_task(session.routines.create({"name": "Legs"}))
    await store.script.arrived(EntityType.ROUTINE, "create")
    assert session.cache.keys() == [keys.user_routines(USER)]

    store.script.fail_next(EntityType.ROUTINE, "create")
    gate.set()
    with pytest.raises(AdapterFailure):
        await pending
    assert len(session.cache) == 0


@pytest.mark.asyncio
async def test_bmi_entry_converges_to_server_values(
    session: SyncSession, store: ScriptedStore
) -> None:
    assert await session.bmi_history.latest() is None
    await session.bmi_history.recent()

    created = await session.bmi_history.create_from_profile(weight=80, height=180)
    latest = await session.bmi_history.latest()
    recent = await session.bmi_history.recent()

    assert latest == created
    assert latest["bmi"] == 24.7
    assert latest["category"] == "normal_weight"
    assert latest["source"] == "profile_update"
    assert [entry["id"] for entry in recent] == [created["id"]]


@pytest.mark.asyncio
async def test_delete_prunes_lists_and_invalidates_detail(
    session: SyncSession, store: ScriptedStore
) -> None:
    store.seed(EntityType.BMI_ENTRY, make_bmi(), make_bmi(id="bmi-2"))
    await session.bmi_history.list()
    await session.bmi_history.get("bmi-1")

    await session.bmi_history.delete("bmi-1")

    assert [entry["id"] for entry in session.cache.peek(keys.user_bmi_history(USER))] == [
        "bmi-2"
    ]
    with pytest.raises(NotFound):
        await session.bmi_history.get("bmi-1")


@pytest.mark.asyncio
async def test_usage_increment_invalidates_owner_and_most_used(
    session: SyncSession, store: ScriptedStore
) -> None:
    store.seed(EntityType.ROUTINE, make_routine())
    await session.routines.list()
    await session.routines.most_used()
    most_used = keys.most_used_routines(USER, session.config.queries.most_used_limit)

    result = await session.routines.increment_usage("routine-1")

    assert result["times_used"] == 5
    for key in (keys.user_routines(USER), most_used):
        assert session.cache.peek(key)[0]["times_used"] == 5
        assert not session.cache.is_fresh(key)
    await session.routines.list()
    assert store.calls(EntityType.ROUTINE, "list") == 3


@pytest.mark.asyncio
async def test_mutations_require_a_signed_in_user(
    session: SyncSession, store: ScriptedStore
) -> None:
    session.sign_out()

    with pytest.raises(AuthRequired):
        await session.goals.create({"title": "Swim"})
    with pytest.raises(AuthRequired):
        await session.dispatch("goals", "progress_update", {"id": "goal-1", "new_value": 1})
    with pytest.raises(AuthRequired):
        await session.mutate(DeleteEntity(EntityType.GOAL, "goal-1"))
    assert store.calls(EntityType.GOAL) == 0


@pytest.mark.asyncio
async def test_dispatch_routes_tagged_payloads(
    session: SyncSession, store: ScriptedStore
) -> None:
    store.seed(EntityType.GOAL, make_goal())

    result = await session.dispatch("goals", "progress_update", {"id": "goal-1", "new_value": 160})

    assert result["progress_percentage"] == 80
    with pytest.raises(ValidationFailure):
        await session.dispatch("workouts", "progress_update", {"id": "w1", "new_value": 1})


@pytest.mark.asyncio
async def test_cancelled_mutation_rolls_back(session: SyncSession, store: ScriptedStore) -> None:
    store.seed(EntityType.GOAL, make_goal())
    await session.goals.list()
    before = session.cache.entry(keys.user_goals(USER))
    store.script.hold(EntityType.GOAL, "update")

    pending = asyncio.create_task(session.goals.update("goal-1", {"title": "Bench"}))
    await store.script.arrived(EntityType.GOAL, "update")
    assert session.cache.peek(keys.user_goals(USER))[0]["title"] == "Bench"
    pending.cancel()

    with pytest.raises(asyncio.CancelledError):
        await pending
    assert session.cache.entry(keys.user_goals(USER)) == before
    assert session.coordinator.in_flight == ()


@pytest.mark.asyncio
async def test_mutation_supersedes_in_flight_fetch(
    session: SyncSession, store: ScriptedStore, clock: FakeClock
) -> None:
    store.seed(EntityType.GOAL, make_goal())
    await session.goals.list()
    key = keys.user_goals(USER)
    events: list[CacheEvent] = []
    session.cache.add_listener(events.append)
    clock.advance(600)
    gate = store.script.hold(EntityType.GOAL, "list")

    reading = asyncio.create_task(session.goals.list())
    await store.script.arrived(EntityType.GOAL, "list")
    await session.goals.update("goal-1", {"title": "Overhead press"})
    gate.set()
    returned = await reading

    assert CacheEvent("superseded", key) in events
    assert returned[0]["title"] == "Overhead press"
    assert not session.cache.is_fresh(key)


@pytest.mark.asyncio
async def test_unserialized_rollback_overwrites_newer_optimistic_value(
    session: SyncSession, store: ScriptedStore
) -> None:
    """Concurrent mutations on one key race: an older rollback wins."""

    store.seed(EntityType.GOAL, make_goal())
    await session.goals.list()
    gate = store.script.hold(EntityType.GOAL, "update")

    older = asyncio.create_task(session.goals.update("goal-1", {"title": "First"}))
    await store.script.arrived(EntityType.GOAL, "update")
    await session.goals.update("goal-1", {"title": "Second"})
    store.script.fail_next(EntityType.GOAL, "update")
    gate.set()

    with pytest.raises(AdapterFailure):
        await older
    assert session.cache.peek(keys.user_goals(USER))[0]["title"] == "Squat 200kg"
    stored = await store.inner.collection(EntityType.GOAL).get_by_id("goal-1")
    assert stored["title"] == "Second"


@pytest.mark.asyncio
async def test_serialized_mutations_queue_per_owner(
    store: ScriptedStore, config: SyncConfig, clock: FakeClock, now: FakeNow
) -> None:
    """With same-key serialization on, a second mutation waits for the first to settle."""

    session = SyncSession(
        store,
        dataclasses.replace(config, serialize_same_key=True),
        user_id=USER,
        clock=clock,
        now=now,
    )
    store.seed(EntityType.GOAL, make_goal())
    await session.goals.list()
    gate = store.script.hold(EntityType.GOAL, "update")

    older = asyncio.create_task(session.goals.update("goal-1", {"title": "First"}))
    await store.script.arrived(EntityType.GOAL, "update")
    newer = asyncio.create_task(session.goals.update("goal-1", {"title": "Second"}))
    for _ in range(5):
        await asyncio.sleep(0)
    assert not newer.done()
    assert len(session.coordinator.in_flight) == 1

    store.script.fail_next(EntityType.GOAL, "update")
    gate.set()
    with pytest.raises(AdapterFailure):
        await older
    await newer

    assert session.coordinator.serializes_same_key
    assert session.cache.peek(keys.user_goals(USER))[0]["title"] == "Second"


@pytest.mark.asyncio
async def test_create_leaves_no_placeholder_in_any_cached_list(
    session: SyncSession, store: ScriptedStore
) -> None:
    store.seed(EntityType.ROUTINE, make_routine())
    store.seed(EntityType.WORKOUT, make_workout(id="template-1", is_template=True))
    readers = [
        session.routines.list,
        lambda: session.routines.for_day("monday"),
        lambda: session.routines.by_category("strength"),
        session.routines.most_used,
        session.workouts.list,
        session.workouts.templates,
        session.workouts.recent,
    ]
    for read in readers:
        await read()

    await session.routines.create({"name": "Legs", "category": "strength", "schedule": ["monday"]})
    await session.workouts.create({"name": "Intervals", "date": START})

    for read in readers:
        assert not [item["id"] for item in await read() if item["id"].startswith("temp-")]


@pytest.mark.asyncio
async def test_merged_progress_is_refetched_from_every_cached_list(
    session: SyncSession, store: ScriptedStore
) -> None:
    store.seed(EntityType.GOAL, make_goal())
    by_category = keys.goals_by_category(USER, "strength")
    await session.goals.by_category("strength")

    await session.goals.update_progress("goal-1", 170)

    assert not session.cache.is_fresh(by_category)
    (refetched,) = await session.goals.by_category("strength")
    assert refetched["current_value"] == 170
    assert store.calls(EntityType.GOAL, "list") == 2


@pytest.mark.asyncio
async def test_merged_usage_is_refetched_from_every_cached_list(
    session: SyncSession, store: ScriptedStore
) -> None:
    store.seed(EntityType.ROUTINE, make_routine(is_public=True))
    await session.routines.for_day("monday")
    await session.routines.by_category("strength")
    await session.routines.public()

    await session.routines.increment_usage("routine-1")

    for key in (
        keys.routines_for_day(USER, "monday"),
        keys.routines_by_category(USER, "strength"),
        keys.public_routines(None, None, None),
    ):
        assert session.cache.peek(key)[0]["times_used"] == 5
        assert not session.cache.is_fresh(key)


@pytest.mark.asyncio
async def test_rollback_restores_entries_evicted_by_optimistic_write(
    store: ScriptedStore, config: SyncConfig, clock: FakeClock, now: FakeNow
) -> None:
    session = SyncSession(
        store,
        dataclasses.replace(config, cache_maxsize=2),
        user_id=USER,
        clock=clock,
        now=now,
    )
    await session.workouts.list()
    await session.routines.list()
    before = {
        key: session.cache.entry(key)
        for key in (keys.user_workouts(USER), keys.user_routines(USER))
    }

    store.script.fail_next(EntityType.GOAL, "create")
    with pytest.raises(AdapterFailure):
        await session.goals.create({"title": "Row 2k"})

    assert {key: session.cache.entry(key) for key in before} == before
    assert keys.user_goals(USER) not in session.cache
