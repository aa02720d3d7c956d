from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from fitsync.sync.cache import QueryCache
from fitsync.sync.keys import QueryKey
from fitsync.sync.pulse import QUERY_POLL, SyncPulse

logger = logging.getLogger(__name__)


class RefetchPoller:
    """Force-refetch keys whose query kind has a fixed refetch interval.

    Only keys that were read at least once and are still cached are polled.
    The interval counts from the entry's last fetch, so a normal stale read
    also resets it.
    """

    def __init__(
        self,
        cache: QueryCache,
        *,
        tick_seconds: float = 15.0,
        pulse: SyncPulse | None = None,
    ) -> None:
        self._cache = cache
        self._tick_seconds = tick_seconds
        self._pulse = pulse
        self._task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def due(self) -> list[QueryKey]:
        now = self._cache.now()
        due: list[QueryKey] = []
        for key in self._cache.polled_keys():
            interval = self._cache.policy.refetch_interval_for(key)
            entry = self._cache.entry(key)
            if interval is None or entry is None:
                continue
            if now - entry.fetched_at >= interval:
                due.append(key)
        return due

    async def tick(self) -> list[QueryKey]:
        """Refetch every due key once and return the keys refreshed."""

        refreshed: list[QueryKey] = []
        for key in self.due():
            try:
                await self._cache.read(key, force=True)
            except Exception:
                logger.warning("Scheduled refetch of %s failed", key, exc_info=True)
                continue
            refreshed.append(key)
        if refreshed:
            logger.debug("Polled %d keys", len(refreshed))
            if self._pulse is not None:
                self._pulse.emit(QUERY_POLL, {"keys": [str(key) for key in refreshed]})
        return refreshed

    async def start(self) -> None:
        async with self._lock:
            if self.running:
                return
            self._task = asyncio.create_task(self._loop(), name="fitsync-refetch-poller")

    async def stop(self) -> None:
        async with self._lock:
            task = self._task
            self._task = None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._tick_seconds)
            await self.tick()


__all__ = ["RefetchPoller"]
