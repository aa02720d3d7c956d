"""Session lifecycle: one cache, coordinator and poller per signed-in client."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from fitsync.adapters.base import RemoteStore
from fitsync.adapters.memory import utcnow
from fitsync.domain.entities import Entity, EntityType
from fitsync.errors import AuthRequired
from fitsync.logging_setup import configure_logging
from fitsync.settings import settings as default_settings
from fitsync.sync.cache import QueryCache
from fitsync.sync.config import SyncConfig
from fitsync.sync.coordinator import MutationCoordinator
from fitsync.sync.invalidation import InvalidationRouter
from fitsync.sync.keys import QueryKey
from fitsync.sync.operations import Operation, OperationKind
from fitsync.sync.poller import RefetchPoller
from fitsync.sync.pulse import SyncPulse
from fitsync.sync.resolver import QueryResolver
from fitsync.sync.resources import (
    BMIHistoryResource,
    GoalResource,
    RoutineResource,
    WorkoutResource,
)

logger = logging.getLogger(__name__)


class SyncSession:
    """Own the sync components for one client session.

    The cache lives exactly as long as the session: ``stop`` and
    ``sign_out`` clear it, and nothing outside the session holds a reference
    to it.
    """

    def __init__(
        self,
        store: RemoteStore,
        config: SyncConfig,
        *,
        user_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config
        self._user_id = user_id
        self._now = now
        self.pulse = SyncPulse()
        self.resolver = QueryResolver(store, config.queries, clock=now)
        self.cache = QueryCache(
            policy=config.staleness,
            fetcher=self.resolver.fetch,
            maxsize=config.cache_maxsize,
            clock=clock,
        )
        self.router = InvalidationRouter(self.cache, self.pulse)
        self.coordinator = MutationCoordinator(
            self.cache,
            store,
            self.router,
            user_provider=lambda: self._user_id,
            pulse=self.pulse,
            clock=now,
            serialize_same_key=config.serialize_same_key,
            temp_id_prefix=config.temp_id_prefix,
        )
        self.poller = RefetchPoller(
            self.cache, tick_seconds=config.poll_tick_seconds, pulse=self.pulse
        )
        self.workouts = WorkoutResource(self)
        self.goals = GoalResource(self)
        self.routines = RoutineResource(self)
        self.bmi_history = BMIHistoryResource(self)
        self._lock = asyncio.Lock()
        self._started = False

    @classmethod
    def create(
        cls,
        store: RemoteStore,
        *,
        user_id: str | None = None,
        settings: Any = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
    ) -> "SyncSession":
        """Build a session from settings and install the logging configuration."""

        configure_logging()
        config = SyncConfig.from_settings(settings if settings is not None else default_settings)
        return cls(store, config, user_id=user_id, clock=clock, now=now)

    async def __aenter__(self) -> "SyncSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    @property
    def started(self) -> bool:
        return self._started

    @property
    def user_id(self) -> str | None:
        return self._user_id

    def now(self) -> datetime:
        return self._now()

    async def start(self) -> None:
        async with self._lock:
            if self._started:
                return
            await self.poller.start()
            self._started = True
            logger.info("Sync session started")

    async def stop(self) -> None:
        async with self._lock:
            if not self._started:
                return
            self._started = False
        await self.poller.stop()
        self.cache.clear()
        logger.info("Sync session stopped")

    def sign_in(self, user_id: str) -> None:
        if not user_id:
            raise AuthRequired("A user id is required to sign in")
        if self._user_id is not None and self._user_id != user_id:
            self.cache.clear()
        self._user_id = user_id
        logger.debug("Signed in %s", user_id)

    def sign_out(self) -> None:
        self._user_id = None
        self.cache.clear()
        logger.debug("Signed out; cache cleared")

    def require_user(self) -> str:
        if not self._user_id:
            raise AuthRequired()
        return self._user_id

    async def read(self, key: QueryKey, *, force: bool = False) -> Any:
        return await self.cache.read(key, force=force)

    async def mutate(self, operation: Operation) -> Entity | None:
        return await self.coordinator.mutate(operation)

    async def dispatch(
        self,
        entity_type: EntityType | str,
        kind: OperationKind | str,
        payload: Mapping[str, Any],
    ) -> Entity | None:
        return await self.coordinator.dispatch(entity_type, kind, payload)


__all__ = ["SyncSession"]
