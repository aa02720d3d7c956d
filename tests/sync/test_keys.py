from __future__ import annotations

from datetime import datetime, timezone

from fitsync.domain.entities import EntityType
from fitsync.sync import keys
from fitsync.sync.keys import KeyPattern, QueryKey, matches


def test_identical_components_address_the_same_slot() -> None:
    start = datetime(2025, 1, 1, tzinfo=timezone.utc)
    end = datetime(2025, 1, 31, tzinfo=timezone.utc)

    assert keys.workouts_by_date("u1", start, end) == keys.workouts_by_date("u1", start, end)
    assert hash(keys.goal("g1")) == hash(keys.goal("g1"))
    assert keys.recent_bmi("u1", 5) != keys.recent_bmi("u1", 10)
    assert keys.user_goals("u1", status="active") == keys.user_goals("u1", status="active")
    assert keys.user_goals("u1") == keys.owner_key(EntityType.GOAL, "u1")


def test_params_are_order_independent() -> None:
    first = keys.public_routines(category="strength", difficulty="beginner")
    second = keys.public_routines(difficulty="beginner", category="strength")

    assert first == second
    assert first.param("limit") is None
    assert first.owner_id is None


def test_recommended_categories_are_frozen() -> None:
    key = keys.recommended_routines("beginner", ["cardio", "strength"])

    assert key.param("categories") == ("cardio", "strength")
    hash(key)


def test_shapes() -> None:
    assert keys.latest_bmi("u1").shape == "entity"
    assert keys.bmi_entry("b1").shape == "entity"
    assert keys.user_bmi_history("u1").is_list


def test_patterns() -> None:
    detail = keys.routine("r1")
    owner_list = keys.user_routines("u1")
    most_used = keys.most_used_routines("u1", 5)

    pattern = KeyPattern(entity_type=EntityType.ROUTINE, owner_id="u1")
    assert pattern.matches(owner_list)
    assert pattern.matches(most_used)
    assert not pattern.matches(detail)
    assert KeyPattern(kind="most_used").matches(most_used)
    assert matches(detail, QueryKey(EntityType.ROUTINE, "detail", entity_id="r1"))
    assert str(KeyPattern(entity_type=EntityType.GOAL)) == "goals:*:*:*"
