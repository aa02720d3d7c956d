from __future__ import annotations

import copy
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from logging import getLogger
from typing import Any, Protocol

from cachetools import LRUCache

from fitsync.sync.config import StalenessPolicy
from fitsync.sync.keys import KeyOrPattern, QueryKey, matches

logger = getLogger(__name__)

Clock = Callable[[], float]
Fetcher = Callable[[QueryKey], Awaitable[Any]]


@dataclass(slots=True)
class CacheEntry:
    key: QueryKey
    value: Any
    fetched_at: float
    stale_after: float

    def is_fresh(self, now: float) -> bool:
        return now < self.stale_after


class CacheBackend(Protocol):
    def get(self, key: QueryKey, default: CacheEntry | None = None) -> CacheEntry | None: ...

    def __setitem__(self, key: QueryKey, value: CacheEntry) -> None: ...

    def pop(self, key: QueryKey, default: CacheEntry | None = None) -> CacheEntry | None: ...

    def keys(self) -> Iterable[QueryKey]: ...

    def clear(self) -> None: ...


@dataclass(slots=True)
class CacheEvent:
    name: str
    key: QueryKey


CacheListener = Callable[[CacheEvent], None]


EvictionHook = Callable[[QueryKey, CacheEntry], None]


class EvictionTrackingLRU(LRUCache):
    """LRU backend that reports entries dropped to stay within ``maxsize``."""

    def __init__(self, maxsize: int, on_evict: EvictionHook | None = None) -> None:
        super().__init__(maxsize=maxsize)
        self._on_evict = on_evict

    def popitem(self) -> tuple[QueryKey, CacheEntry]:
        key, entry = super().popitem()
        if self._on_evict is not None:
            self._on_evict(key, entry)
        return key, entry


def default_backend_factory(
    maxsize: int, on_evict: EvictionHook | None = None
) -> EvictionTrackingLRU:
    return EvictionTrackingLRU(maxsize, on_evict)


class QueryCache:
    """Staleness-aware read-through cache of query results.

    Every key carries a generation counter while fetches for it are in flight.
    Writes, restores, invalidations and cancellations bump it; a fetch stores
    its result only if the generation it started under is still current, so a
    superseded fetch can never overwrite a newer optimistic value.
    """

    __slots__ = (
        "_entries",
        "_policy",
        "_fetcher",
        "_clock",
        "_generations",
        "_inflight",
        "_polled",
        "_listeners",
        "_evicting",
    )

    def __init__(
        self,
        *,
        policy: StalenessPolicy,
        fetcher: Fetcher | None = None,
        maxsize: int = 512,
        clock: Clock = time.monotonic,
        backend: CacheBackend | None = None,
    ) -> None:
        self._evicting: list[CacheEntry] | None = None
        self._entries: CacheBackend = (
            backend
            if backend is not None
            else default_backend_factory(maxsize, self._record_eviction)
        )
        self._policy = policy
        self._fetcher = fetcher
        self._clock = clock
        self._generations: dict[QueryKey, int] = {}
        self._inflight: dict[QueryKey, int] = {}
        self._polled: set[QueryKey] = set()
        self._listeners: list[CacheListener] = []

    @property
    def policy(self) -> StalenessPolicy:
        return self._policy

    def now(self) -> float:
        return self._clock()

    def add_listener(self, listener: CacheListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: CacheListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            logger.debug("Attempted to remove unknown listener %r", listener)

    async def read(
        self,
        key: QueryKey,
        staleness: float | None = None,
        *,
        fetcher: Fetcher | None = None,
        force: bool = False,
    ) -> Any:
        """Return the value for ``key``, fetching it when stale or missing."""

        entry = self._entries.get(key)
        if entry is not None and not force and entry.is_fresh(self._clock()):
            self._notify("hit", key)
            return copy.deepcopy(entry.value)

        self._notify("miss", key)
        window = staleness if staleness is not None else self._policy.staleness_for(key)
        fetch = fetcher or self._fetcher
        if fetch is None:
            raise RuntimeError(f"No fetcher available for {key}")

        generation = self._generations.get(key, 0)
        self._inflight[key] = self._inflight.get(key, 0) + 1
        try:
            value = await fetch(key)
            if self._generations.get(key, 0) != generation:
                logger.debug("Discarding superseded fetch for %s", key)
                self._notify("superseded", key)
                current = self._entries.get(key)
                if current is not None:
                    return copy.deepcopy(current.value)
                return value
            fetched_at = self._clock()
            self._entries[key] = CacheEntry(
                key=key,
                value=copy.deepcopy(value),
                fetched_at=fetched_at,
                stale_after=fetched_at + window,
            )
        finally:
            self._release(key)

        if self._policy.refetch_interval_for(key) is not None:
            self._polled.add(key)
        self._notify("store", key)
        return value

    def write(self, key: QueryKey, value: Any) -> list[CacheEntry]:
        """Replace the value for ``key`` and supersede in-flight fetches.

        Returns the entries the backend evicted to make room, so a caller
        holding a snapshot can put them back.
        """

        now = self._clock()
        self._bump(key)
        self._evicting = []
        try:
            self._entries[key] = CacheEntry(
                key=key,
                value=copy.deepcopy(value),
                fetched_at=now,
                stale_after=now + self._policy.staleness_for(key),
            )
        finally:
            evicted, self._evicting = self._evicting, None
        for entry in evicted:
            self._notify("evict", entry.key)
        self._notify("write", key)
        return evicted

    def restore(self, key: QueryKey, entry: CacheEntry | None) -> None:
        """Put back ``entry`` exactly as captured, or drop ``key`` if it was absent."""

        self._bump(key)
        if entry is None:
            self._entries.pop(key, None)
        else:
            self._entries[key] = copy.deepcopy(entry)
        self._notify("restore", key)

    def invalidate(self, target: KeyOrPattern) -> list[QueryKey]:
        """Mark every entry matching ``target`` stale and return the keys touched."""

        now = self._clock()
        touched: list[QueryKey] = []
        for key in self.keys(target):
            entry = self._entries.get(key)
            if entry is None:
                continue
            entry.stale_after = now
            touched.append(key)
        self.cancel(target)
        for key in touched:
            self._notify("invalidate", key)
        return touched

    def cancel(self, target: KeyOrPattern) -> list[QueryKey]:
        """Supersede in-flight fetches for ``target``; their results are discarded."""

        cancelled = [key for key in list(self._inflight) if matches(target, key)]
        for key in cancelled:
            self._bump(key)
        return cancelled

    def entry(self, key: QueryKey) -> CacheEntry | None:
        entry = self._entries.get(key)
        return copy.deepcopy(entry) if entry is not None else None

    def peek(self, key: QueryKey) -> Any | None:
        entry = self._entries.get(key)
        return copy.deepcopy(entry.value) if entry is not None else None

    def is_fresh(self, key: QueryKey) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.is_fresh(self._clock())

    def keys(self, target: KeyOrPattern | None = None) -> list[QueryKey]:
        all_keys = list(self._entries.keys())
        if target is None:
            return all_keys
        return [key for key in all_keys if matches(target, key)]

    def is_fetching(self, key: QueryKey) -> bool:
        return self._inflight.get(key, 0) > 0

    def polled_keys(self) -> list[QueryKey]:
        """Return read keys with a refetch interval that are still cached."""

        present = set(self._entries.keys())
        self._polled &= present
        return sorted(self._polled, key=str)

    def clear(self) -> None:
        for key in list(self._inflight):
            self._bump(key)
        self._entries.clear()
        self._polled.clear()

    def __contains__(self, key: object) -> bool:
        return isinstance(key, QueryKey) and self._entries.get(key) is not None

    def __len__(self) -> int:
        return len(list(self._entries.keys()))

    def _record_eviction(self, key: QueryKey, entry: CacheEntry) -> None:
        if self._evicting is not None:
            self._evicting.append(entry)

    def _bump(self, key: QueryKey) -> None:
        if key in self._inflight:
            self._generations[key] = self._generations.get(key, 0) + 1

    def _release(self, key: QueryKey) -> None:
        remaining = self._inflight.get(key, 0) - 1
        if remaining > 0:
            self._inflight[key] = remaining
            return
        self._inflight.pop(key, None)
        self._generations.pop(key, None)

    def _notify(self, name: str, key: QueryKey) -> None:
        if not self._listeners:
            return
        event = CacheEvent(name=name, key=key)
        for listener in tuple(self._listeners):
            try:
                listener(event)
            except Exception:  # pragma: no cover
                logger.exception("Query cache listener %r failed", listener)


__all__ = [
    "CacheEntry",
    "CacheEvent",
    "CacheListener",
    "EvictionTrackingLRU",
    "Fetcher",
    "QueryCache",
    "default_backend_factory",
]
