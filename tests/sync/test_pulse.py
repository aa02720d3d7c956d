from __future__ import annotations

import logging

import pytest

from fitsync.sync.pulse import MUTATION_STATE, QUERY_POLL, PulseEvent, SyncPulse


def test_subscribe_replays_latest_and_filters_topics() -> None:
    pulse = SyncPulse()
    pulse.emit(QUERY_POLL, {"keys": ["a"]})
    pulse.emit(MUTATION_STATE, {"state": "applying"})
    seen: list[PulseEvent] = []

    unsubscribe = pulse.subscribe(seen.append, topics=[QUERY_POLL])
    pulse.emit(QUERY_POLL, {"keys": ["b"]})
    pulse.emit(MUTATION_STATE, {"state": "calling"})
    unsubscribe()
    pulse.emit(QUERY_POLL, {"keys": ["c"]})

    assert [event.payload["keys"] for event in seen] == [["a"], ["b"]]
    assert pulse.latest(QUERY_POLL) == {"keys": ["c"]}
    assert pulse.snapshot()[MUTATION_STATE] == {"state": "calling"}


def test_failing_listener_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    pulse = SyncPulse()
    seen: list[str] = []

    def broken(event: PulseEvent) -> None:
        raise RuntimeError("listener bug")

    pulse.subscribe(broken)
    pulse.subscribe(lambda event: seen.append(event.topic))

    with caplog.at_level(logging.ERROR, logger="fitsync.sync.pulse"):
        pulse.emit(MUTATION_STATE, {"state": "idle"})

    assert seen == [MUTATION_STATE]
    assert "listener failed" in caplog.text
