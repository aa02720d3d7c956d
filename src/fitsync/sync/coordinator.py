"""Optimistic mutation protocol.

Order of a mutation:

1. Owner check (``AuthRequired``) and validation (``ValidationFailure`` or
   ``NotFound``). Nothing in the cache has been touched yet.
2. In-flight fetches for every key the optimistic step writes are cancelled,
   then those entries are deep-copied into the snapshot.
3. Optimistic values are written and the remote call is made. Entries the
   bounded cache evicts to make room for them join the snapshot.
4. On success the invalidation plan for the operation is applied, together
   with every key the optimistic step wrote, and the store's entity
   returned. On failure, including cancellation of the task, the snapshot is
   restored verbatim. Remote errors surface as ``AdapterFailure`` chained to
   the cause; cancellation propagates.

Mutations on the same key are not serialized unless ``serialize_same_key``
is set, in which case one mutation at a time runs per entity type and owner.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from logging import getLogger
from typing import Any

from ulid import ULID

from fitsync.adapters.base import RemoteStore
from fitsync.adapters.memory import utcnow
from fitsync.domain.entities import Entity, EntityType
from fitsync.errors import AdapterFailure, AuthRequired, NotFound
from fitsync.sync.cache import CacheEntry, QueryCache
from fitsync.sync.invalidation import InvalidationPlan, InvalidationRouter
from fitsync.sync.keys import QueryKey
from fitsync.sync.operations import Operation, OperationKind, build_operation
from fitsync.sync.optimistic import HandlerContext, find_cached_entity, handler_for
from fitsync.sync.pulse import MUTATION_ROLLBACK, MUTATION_STATE, SyncPulse

logger = getLogger(__name__)

UserProvider = Callable[[], str | None]


class MutationState(str, Enum):
    IDLE = "idle"
    APPLYING = "applying"
    CALLING = "calling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


_TRANSITIONS: dict[MutationState, frozenset[MutationState]] = {
    MutationState.IDLE: frozenset({MutationState.APPLYING}),
    MutationState.APPLYING: frozenset({MutationState.CALLING, MutationState.FAILED}),
    MutationState.CALLING: frozenset({MutationState.SUCCEEDED, MutationState.FAILED}),
    MutationState.SUCCEEDED: frozenset({MutationState.IDLE}),
    MutationState.FAILED: frozenset({MutationState.IDLE}),
}


class IllegalTransition(RuntimeError):
    pass


@dataclass(slots=True)
class MutationContext:
    """State of one mutation, alive from validation until it settles."""

    operation: Operation
    owner_id: str
    id: str = field(default_factory=lambda: str(ULID()))
    affected_keys: tuple[QueryKey, ...] = ()
    snapshot: dict[QueryKey, CacheEntry | None] = field(default_factory=dict)
    optimistic_values: dict[QueryKey, Any] = field(default_factory=dict)
    state: MutationState = MutationState.IDLE
    history: list[MutationState] = field(default_factory=lambda: [MutationState.IDLE])
    invalidation: InvalidationPlan | None = None

    @property
    def entity_type(self) -> EntityType:
        return self.operation.entity_type

    @property
    def kind(self) -> OperationKind:
        return self.operation.kind

    def transition(self, state: MutationState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise IllegalTransition(f"Mutation {self.id}: {self.state} -> {state}")
        self.state = state
        self.history.append(state)


class MutationCoordinator:
    """Run operations through snapshot, optimistic write, remote call and settle."""

    def __init__(
        self,
        cache: QueryCache,
        store: RemoteStore,
        router: InvalidationRouter,
        *,
        user_provider: UserProvider,
        pulse: SyncPulse | None = None,
        clock: Callable[[], datetime] = utcnow,
        serialize_same_key: bool = False,
        temp_id_prefix: str = "temp-",
    ) -> None:
        self._cache = cache
        self._store = store
        self._router = router
        self._user_provider = user_provider
        self._pulse = pulse
        self._clock = clock
        self._serialize = serialize_same_key
        self._temp_id_prefix = temp_id_prefix
        self._in_flight: dict[str, MutationContext] = {}
        self._scope_locks: dict[tuple[EntityType, str], asyncio.Lock] = {}
        self._scope_users: dict[tuple[EntityType, str], int] = {}

    @property
    def serializes_same_key(self) -> bool:
        return self._serialize

    @property
    def in_flight(self) -> tuple[MutationContext, ...]:
        return tuple(self._in_flight.values())

    async def dispatch(
        self,
        entity_type: EntityType | str,
        kind: OperationKind | str,
        payload: Mapping[str, Any],
    ) -> Entity | None:
        self._require_owner()
        return await self.mutate(build_operation(entity_type, kind, payload))

    async def mutate(self, operation: Operation) -> Entity | None:
        owner_id = self._require_owner()
        if not self._serialize:
            return await self._run(operation, owner_id)
        async with self._scope(operation.entity_type, owner_id):
            return await self._run(operation, owner_id)

    def _require_owner(self) -> str:
        owner_id = self._user_provider()
        if not owner_id:
            raise AuthRequired()
        return owner_id

    @asynccontextmanager
    async def _scope(self, entity_type: EntityType, owner_id: str) -> AsyncIterator[None]:
        scope = (entity_type, owner_id)
        lock = self._scope_locks.setdefault(scope, asyncio.Lock())
        self._scope_users[scope] = self._scope_users.get(scope, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._scope_users[scope] - 1
            if remaining:
                self._scope_users[scope] = remaining
            else:
                self._scope_users.pop(scope, None)
                self._scope_locks.pop(scope, None)

    async def _run(self, operation: Operation, owner_id: str) -> Entity | None:
        handler = handler_for(operation)
        handler_ctx = HandlerContext(
            owner_id=owner_id,
            now=self._clock(),
            load=self._load,
            temp_id_prefix=self._temp_id_prefix,
        )
        await handler.validate(operation, handler_ctx)

        context = MutationContext(operation=operation, owner_id=owner_id)
        self._in_flight[context.id] = context
        try:
            self._transition(context, MutationState.APPLYING)
            try:
                planned = handler.plan(operation, self._cache, handler_ctx)
                self._apply_optimistic(context, planned)
            except BaseException:
                self._settle_failure(context)
                raise

            self._transition(context, MutationState.CALLING)
            adapter = self._store.collection(operation.entity_type)
            try:
                result = await handler.remote(operation, adapter, handler_ctx)
            except asyncio.CancelledError:
                self._settle_failure(context)
                raise
            except AdapterFailure:
                self._settle_failure(context)
                raise
            except Exception as exc:
                self._settle_failure(context)
                raise AdapterFailure(
                    str(operation.entity_type), str(operation.kind), str(exc)
                ) from exc

            self._transition(context, MutationState.SUCCEEDED)
            entity_id = result.get("id") if isinstance(result, dict) else None
            context.invalidation = self._router.route(
                operation,
                owner_id=owner_id,
                entity_id=entity_id,
                affected=context.affected_keys,
            )
            self._transition(context, MutationState.IDLE)
            return result
        finally:
            self._in_flight.pop(context.id, None)

    def _apply_optimistic(self, context: MutationContext, planned: dict[QueryKey, Any]) -> None:
        keys = tuple(planned)
        for key in keys:
            self._cache.cancel(key)
        context.snapshot = {key: self._cache.entry(key) for key in keys}
        context.affected_keys = keys
        context.optimistic_values = planned
        for key, value in planned.items():
            for evicted in self._cache.write(key, value):
                context.snapshot.setdefault(evicted.key, evicted)

    def _settle_failure(self, context: MutationContext) -> None:
        self._transition(context, MutationState.FAILED)
        self._rollback(context)
        self._transition(context, MutationState.IDLE)

    def _rollback(self, context: MutationContext) -> None:
        for key, entry in context.snapshot.items():
            self._cache.restore(key, entry)
        if not context.snapshot:
            return
        logger.warning(
            "Rolled back %s.%s for %d cache keys",
            context.entity_type,
            context.kind,
            len(context.snapshot),
        )
        self._emit(
            MUTATION_ROLLBACK,
            mutation_id=context.id,
            entity_type=str(context.entity_type),
            kind=str(context.kind),
            keys=[str(key) for key in context.snapshot],
        )

    def _transition(self, context: MutationContext, state: MutationState) -> None:
        previous = context.state
        context.transition(state)
        logger.debug(
            "Mutation %s %s.%s: %s -> %s",
            context.id,
            context.entity_type,
            context.kind,
            previous,
            state,
        )
        self._emit(
            MUTATION_STATE,
            mutation_id=context.id,
            entity_type=str(context.entity_type),
            kind=str(context.kind),
            previous=str(previous),
            state=str(state),
        )

    async def _load(self, entity_type: EntityType, entity_id: str) -> Entity:
        cached = find_cached_entity(self._cache, entity_type, entity_id)
        if cached is not None:
            return cached
        record = await self._store.collection(entity_type).get_by_id(entity_id)
        if record is None:
            raise NotFound(str(entity_type), entity_id)
        return record

    def _emit(self, topic: str, **payload: object) -> None:
        if self._pulse is not None:
            self._pulse.emit(topic, payload)


__all__ = [
    "IllegalTransition",
    "MutationContext",
    "MutationCoordinator",
    "MutationState",
]
