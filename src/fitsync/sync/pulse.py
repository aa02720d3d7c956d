from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Protocol

from blinker import Namespace, Signal

logger = logging.getLogger(__name__)

CACHE_INVALIDATION = "cache.invalidation"
MUTATION_STATE = "mutation.state"
MUTATION_ROLLBACK = "mutation.rollback"
QUERY_POLL = "query.poll"

TOPICS = (CACHE_INVALIDATION, MUTATION_STATE, MUTATION_ROLLBACK, QUERY_POLL)


@dataclass(slots=True, frozen=True)
class PulseEvent:
    """Snapshot of a published sync pulse."""

    topic: str
    payload: Mapping[str, Any]
    timestamp: float

    def as_payload(self) -> dict[str, Any]:
        return dict(self.payload)


class PulseListener(Protocol):
    def __call__(self, event: PulseEvent) -> None: ...


class SyncPulse:
    """Pub/sub for sync lifecycle events.

    Listeners run synchronously inside ``emit``; a failing listener is logged
    and never interrupts the mutation or fetch that emitted the event.
    """

    def __init__(self) -> None:
        self._latest: dict[str, PulseEvent] = {}
        self._namespace = Namespace()
        self._broadcast_signal = Signal("sync_pulse:*")

    def signal(self, topic: str) -> Signal:
        return self._namespace.signal(topic)

    def emit(self, topic: str, payload: Mapping[str, Any]) -> PulseEvent:
        data = MappingProxyType(dict(payload))
        event = PulseEvent(topic=topic, payload=data, timestamp=time.monotonic())
        self._latest[topic] = event
        self._notify_signal(self.signal(topic), event)
        self._notify_signal(self._broadcast_signal, event)
        return event

    def _notify_signal(self, signal: Signal, event: PulseEvent) -> None:
        for receiver in list(signal.receivers_for(self)):
            try:
                receiver(self, event=event)
            except Exception:
                logger.exception("Sync pulse listener failed for topic %s", event.topic)

    def subscribe(
        self,
        listener: PulseListener,
        *,
        topics: Iterable[str] | None = None,
        replay_last: bool = True,
    ) -> Callable[[], None]:
        """Subscribe to pulse events and optionally replay the latest values."""

        topic_list = list(dict.fromkeys(topics)) if topics is not None else None

        def _receiver(sender: Any, *, event: PulseEvent | None = None, **_: Any) -> None:
            if event is not None:
                listener(event)

        if topic_list is None:
            signals = [self._broadcast_signal]
        else:
            signals = [self.signal(topic) for topic in topic_list]
        for sig in signals:
            sig.connect(_receiver, sender=self, weak=False)

        if replay_last:
            for name, event in list(self._latest.items()):
                if topic_list is not None and name not in topic_list:
                    continue
                try:
                    listener(event)
                except Exception:
                    logger.exception(
                        "Sync pulse listener failed during replay for topic %s", name
                    )

        def unsubscribe() -> None:
            for sig in signals:
                sig.disconnect(_receiver, sender=self)

        return unsubscribe

    def latest(self, topic: str) -> dict[str, Any] | None:
        event = self._latest.get(topic)
        return event.as_payload() if event is not None else None

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {topic: event.as_payload() for topic, event in self._latest.items()}


__all__ = [
    "CACHE_INVALIDATION",
    "MUTATION_ROLLBACK",
    "MUTATION_STATE",
    "PulseEvent",
    "PulseListener",
    "QUERY_POLL",
    "SyncPulse",
    "TOPICS",
]
