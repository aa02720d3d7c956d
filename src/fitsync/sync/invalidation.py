"""Static invalidation table for successful mutations.

Contract:
- Every supported ``(entity type, operation kind)`` pair has an entry; the
  table is checked for totality at import time.
- Every entry includes the owner's ``owner`` list for that entity type.
- Rules name query kinds from the key registry. ``owner`` scope invalidates
  all keys of that kind for the mutating user, ``entity`` scope the detail
  key of the mutated entity, ``global`` the kind for every user.
- Keys written by the optimistic step are invalidated alongside the table's
  patterns, so no provisional value outlives a successful mutation.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from logging import getLogger
from typing import Literal

from fitsync.domain.entities import EntityType
from fitsync.errors import ConfigurationError
from fitsync.sync.cache import QueryCache
from fitsync.sync.keys import DETAIL, OWNER, QUERY_KINDS, KeyPattern, QueryKey
from fitsync.sync.operations import (
    SUPPORTED_OPERATIONS,
    CreateEntity,
    Operation,
    OperationKind,
)
from fitsync.sync.pulse import CACHE_INVALIDATION, SyncPulse

logger = getLogger(__name__)

RuleScope = Literal["owner", "entity", "global"]
RulePredicate = Callable[[Operation], bool]


@dataclass(frozen=True, slots=True)
class InvalidationRule:
    kind: str
    scope: RuleScope = "owner"
    when: RulePredicate | None = None

    def applies(self, operation: Operation) -> bool:
        return self.when is None or bool(self.when(operation))


@dataclass(frozen=True, slots=True)
class InvalidationSpec:
    rules: tuple[InvalidationRule, ...]

    def kinds(self) -> tuple[str, ...]:
        return tuple(rule.kind for rule in self.rules)


@dataclass(frozen=True, slots=True)
class InvalidationPlan:
    entity_type: EntityType
    operation: OperationKind
    reason: str
    patterns: tuple[KeyPattern, ...]
    keys: tuple[QueryKey, ...] = ()

    def covers(self, key: QueryKey) -> bool:
        return key in self.keys or any(pattern.matches(key) for pattern in self.patterns)


def _owner(*kinds: str, when: RulePredicate | None = None) -> tuple[InvalidationRule, ...]:
    return tuple(InvalidationRule(kind, "owner", when) for kind in kinds)


def _global(*kinds: str, when: RulePredicate | None = None) -> tuple[InvalidationRule, ...]:
    return tuple(InvalidationRule(kind, "global", when) for kind in kinds)


_DETAIL = (InvalidationRule(DETAIL, "entity"),)


def _touches_template(operation: Operation) -> bool:
    return "is_template" in operation.fields


def _creates_public(operation: Operation) -> bool:
    return isinstance(operation, CreateEntity) and bool(operation.data.get("is_public"))


def _spec(*groups: tuple[InvalidationRule, ...]) -> InvalidationSpec:
    return InvalidationSpec(rules=tuple(rule for group in groups for rule in group))


_WORKOUT_LISTS = _owner(OWNER, "recent", "date_range")
_GOAL_LISTS = _owner(OWNER, "active", "overdue", "completed", "category")
_ROUTINE_LISTS = _owner(OWNER, "day", "category")
_BMI_LISTS = _owner(OWNER, "date_range", "recent", "latest", "category")

INVALIDATION_TABLE: dict[tuple[EntityType, OperationKind], InvalidationSpec] = {
    (EntityType.WORKOUT, OperationKind.CREATE): _spec(
        _WORKOUT_LISTS, _owner("templates", when=_touches_template)
    ),
    (EntityType.WORKOUT, OperationKind.UPDATE): _spec(
        _DETAIL, _WORKOUT_LISTS, _owner("templates", when=_touches_template)
    ),
    (EntityType.WORKOUT, OperationKind.DELETE): _spec(
        _DETAIL, _WORKOUT_LISTS, _owner("templates")
    ),
    (EntityType.GOAL, OperationKind.CREATE): _spec(_GOAL_LISTS),
    (EntityType.GOAL, OperationKind.UPDATE): _spec(_DETAIL, _GOAL_LISTS),
    (EntityType.GOAL, OperationKind.DELETE): _spec(_DETAIL, _GOAL_LISTS),
    (EntityType.GOAL, OperationKind.PROGRESS_UPDATE): _spec(
        _DETAIL, _owner(OWNER, "active", "overdue", "completed")
    ),
    (EntityType.ROUTINE, OperationKind.CREATE): _spec(
        _ROUTINE_LISTS, _global("public", when=_creates_public)
    ),
    (EntityType.ROUTINE, OperationKind.UPDATE): _spec(
        _DETAIL, _ROUTINE_LISTS, _global("public", "recommended")
    ),
    (EntityType.ROUTINE, OperationKind.DELETE): _spec(
        _DETAIL, _ROUTINE_LISTS, _owner("most_used"), _global("public", "recommended")
    ),
    (EntityType.ROUTINE, OperationKind.USAGE_INCREMENT): _spec(
        _DETAIL, _owner(OWNER, "most_used")
    ),
    (EntityType.BMI_ENTRY, OperationKind.CREATE): _spec(_BMI_LISTS),
    (EntityType.BMI_ENTRY, OperationKind.UPDATE): _spec(_DETAIL, _BMI_LISTS),
    (EntityType.BMI_ENTRY, OperationKind.DELETE): _spec(_DETAIL, _BMI_LISTS),
}


def table_problems(
    table: dict[tuple[EntityType, OperationKind], InvalidationSpec],
) -> list[str]:
    """Return every way ``table`` falls short of the supported operations."""

    problems: list[str] = []
    for entity_type, kinds in SUPPORTED_OPERATIONS.items():
        for kind in sorted(kinds, key=str):
            spec = table.get((entity_type, kind))
            if spec is None:
                problems.append(f"missing entry for {entity_type}.{kind}")
                continue
            if OWNER not in spec.kinds():
                problems.append(f"{entity_type}.{kind} does not invalidate the owner list")
            unknown = [name for name in spec.kinds() if name not in QUERY_KINDS[entity_type]]
            if unknown:
                problems.append(
                    f"{entity_type}.{kind} names unknown query kinds: {', '.join(unknown)}"
                )
    for entity_type, kind in table:
        if kind not in SUPPORTED_OPERATIONS.get(entity_type, frozenset()):
            problems.append(f"entry for unsupported operation {entity_type}.{kind}")
    return problems


def _check_table() -> None:
    problems = table_problems(INVALIDATION_TABLE)
    if problems:
        raise ConfigurationError("Invalid invalidation table: " + "; ".join(problems))


_check_table()


def _dedupe_patterns(items: Iterable[KeyPattern]) -> tuple[KeyPattern, ...]:
    return tuple(dict.fromkeys(items))


def _pattern_for(
    rule: InvalidationRule,
    entity_type: EntityType,
    owner_id: str | None,
    entity_id: str | None,
) -> KeyPattern | None:
    if rule.scope == "entity":
        if entity_id is None:
            return None
        return KeyPattern(entity_type=entity_type, kind=rule.kind, entity_id=entity_id)
    if rule.scope == "global":
        return KeyPattern(entity_type=entity_type, kind=rule.kind)
    if owner_id is None:
        return None
    return KeyPattern(entity_type=entity_type, kind=rule.kind, owner_id=owner_id)


def build_invalidation_plan(
    operation: Operation,
    *,
    owner_id: str | None,
    entity_id: str | None = None,
    reason: str | None = None,
    affected: Iterable[QueryKey] = (),
) -> InvalidationPlan:
    """Resolve the table entry for ``operation`` into concrete key patterns.

    ``entity_id`` overrides the operation's own id; a create only learns its
    id once the store has answered. ``affected`` lists the keys the optimistic
    step wrote; those the patterns miss are carried as explicit keys.
    """

    entity_type = operation.entity_type
    spec = INVALIDATION_TABLE.get((entity_type, operation.kind))
    if spec is None:
        raise ConfigurationError(
            f"No invalidation entry for {entity_type}.{operation.kind}"
        )
    target_id = entity_id if entity_id is not None else operation.entity_id
    patterns = (
        _pattern_for(rule, entity_type, owner_id, target_id)
        for rule in spec.rules
        if rule.applies(operation)
    )
    resolved_reason = str(reason or "").strip() or f"{entity_type}.{operation.kind}"
    resolved = _dedupe_patterns(p for p in patterns if p is not None)
    extra = tuple(
        key
        for key in dict.fromkeys(affected)
        if not any(pattern.matches(key) for pattern in resolved)
    )
    return InvalidationPlan(
        entity_type=entity_type,
        operation=operation.kind,
        reason=resolved_reason,
        patterns=resolved,
        keys=extra,
    )


@dataclass(slots=True)
class InvalidationRouter:
    """Apply invalidation plans to a query cache after successful mutations."""

    cache: QueryCache
    pulse: SyncPulse | None = None

    def route(
        self,
        operation: Operation,
        *,
        owner_id: str | None,
        entity_id: str | None = None,
        affected: Iterable[QueryKey] = (),
    ) -> InvalidationPlan:
        plan = build_invalidation_plan(
            operation, owner_id=owner_id, entity_id=entity_id, affected=affected
        )
        self.apply(plan, owner_id=owner_id)
        return plan

    def apply(self, plan: InvalidationPlan, *, owner_id: str | None = None) -> list[QueryKey]:
        touched: list[QueryKey] = []
        for pattern in plan.patterns:
            touched.extend(self.cache.invalidate(pattern))
        for key in plan.keys:
            touched.extend(self.cache.invalidate(key))
        self._pulse(
            "invalidate",
            user_id=owner_id,
            reason=plan.reason,
            patterns=[str(pattern) for pattern in plan.patterns],
            extra_keys=[str(key) for key in plan.keys],
            keys=[str(key) for key in touched],
        )
        return touched

    def _pulse(self, action: str, **payload: object) -> None:
        event_payload = {"action": action, **payload}
        if self.pulse is not None:
            self.pulse.emit(CACHE_INVALIDATION, event_payload)
        logger.debug("Invalidation action=%s payload=%r", action, event_payload)


__all__ = [
    "INVALIDATION_TABLE",
    "InvalidationPlan",
    "InvalidationRouter",
    "InvalidationRule",
    "InvalidationSpec",
    "build_invalidation_plan",
    "table_problems",
]
