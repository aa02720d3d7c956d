"""Server-side field derivation shared by the bundled stores.

A real document store computes these when it persists a document; the
bundled stores call the same helpers so the values a client sees after a
refetch differ from its optimistic guesses in the same ways.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from fitsync.domain.bmi import derive_bmi_fields
from fitsync.domain.entities import CREATE_DEFAULTS, Entity, EntityType

_BMI_INPUTS = frozenset({"weight", "height", "units"})


def prepare_create(
    entity_type: EntityType,
    data: Mapping[str, Any],
    *,
    entity_id: str,
    now: datetime,
) -> Entity:
    record: Entity = dict(CREATE_DEFAULTS[entity_type])
    record.update(data)
    record["id"] = entity_id
    record["created_at"] = now
    record["updated_at"] = now
    if entity_type is EntityType.BMI_ENTRY:
        record.setdefault("recorded_at", now)
        record.update(derive_bmi_fields(record))
    return record


def prepare_update(
    entity_type: EntityType,
    existing: Mapping[str, Any],
    partial: Mapping[str, Any],
    *,
    now: datetime,
) -> Entity:
    record: Entity = dict(existing)
    record.update(partial)
    record["id"] = existing["id"]
    record["user_id"] = existing.get("user_id")
    record["created_at"] = existing.get("created_at")
    record["updated_at"] = now
    if entity_type is EntityType.BMI_ENTRY and _BMI_INPUTS & set(partial):
        record.update(derive_bmi_fields(record))
    return record


__all__ = ["prepare_create", "prepare_update"]
