"""Integration tests for TTL-bounded outcome correlation."""

from __future__ import annotations

import json
import threading
import time

import pytest

from core.locks import FairLock
from frontier.inflight import CorrelationLost, InFlightTracker


class EvictionRecorder:
    """Collect eviction callbacks."""

    def __init__(self) -> None:
        self.calls: list[tuple[object, list[object]]] = []

    def __call__(self, token, units) -> None:
        self.calls.append((token, list(units)))


@pytest.mark.integration
def test_resolve_before_ttl_returns_units(clock):
    evictions = EvictionRecorder()
    tracker = InFlightTracker(10.0, on_evict=evictions, clock_fn=clock)
    tracker.register("doc-1", "unit-a")

    clock.advance(9.9)

    assert tracker.resolve("doc-1") == ["unit-a"]
    assert evictions.calls == []
    assert len(tracker) == 0


@pytest.mark.integration
def test_expired_token_is_evicted_exactly_once(clock, capsys):
    evictions = EvictionRecorder()
    tracker = InFlightTracker(10.0, on_evict=evictions, clock_fn=clock, run_id="run-ttl")
    tracker.register("doc-1", "unit-a")

    clock.advance(10.0)

    assert tracker.evict_expired() == 1
    assert evictions.calls == [("doc-1", ["unit-a"])]
    assert tracker.resolve("doc-1") is None
    assert tracker.evict_expired() == 0
    assert len(evictions.calls) == 1

    events = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]
    evicted = [event for event in events if event["event_type"] == "inflight_evicted"]
    assert len(evicted) == 1
    assert evicted[0]["token"] == "doc-1"
    assert evicted[0]["run_id"] == "run-ttl"
    assert evicted[0]["level"] == "warning"


@pytest.mark.integration
def test_late_resolution_finds_token_already_evicted(clock):
    evictions = EvictionRecorder()
    tracker = InFlightTracker(10.0, on_evict=evictions, clock_fn=clock)
    tracker.register("doc-1", "unit-a")

    clock.advance(12.0)

    assert tracker.resolve("doc-1") is None
    assert evictions.calls == [("doc-1", ["unit-a"])]


@pytest.mark.integration
def test_register_appends_units_and_refreshes_expiry(clock):
    tracker = InFlightTracker(10.0, clock_fn=clock)
    tracker.register("doc-1", "unit-a")
    clock.advance(6.0)
    tracker.register("doc-1", "unit-b")
    clock.advance(6.0)

    assert tracker.evict_expired() == 0
    assert tracker.resolve("doc-1") == ["unit-a", "unit-b"]


@pytest.mark.integration
def test_sweep_only_evicts_tokens_past_their_ttl(clock):
    evictions = EvictionRecorder()
    tracker = InFlightTracker(10.0, on_evict=evictions, clock_fn=clock)
    tracker.register("old", 1)
    clock.advance(5.0)
    tracker.register("young", 2)
    clock.advance(5.0)

    assert tracker.evict_expired() == 1
    assert evictions.calls == [("old", [1])]
    assert "young" in tracker
    assert tracker.tokens() == ["young"]


@pytest.mark.integration
def test_resolve_many_skips_unknown_tokens(clock):
    tracker = InFlightTracker(10.0, clock_fn=clock)
    tracker.register("a", 1)
    tracker.register("b", 2)

    found = tracker.resolve_many(["a", "missing", "b"])

    assert found == {"a": [1], "b": [2]}
    assert len(tracker) == 0


@pytest.mark.integration
def test_invalidate_drops_token_without_callback(clock):
    evictions = EvictionRecorder()
    tracker = InFlightTracker(10.0, on_evict=evictions, clock_fn=clock)
    tracker.register("doc-1", "unit-a")

    assert tracker.invalidate("doc-1") == ["unit-a"]
    assert tracker.invalidate("doc-1") is None

    clock.advance(20.0)
    assert tracker.evict_expired() == 0
    assert evictions.calls == []


@pytest.mark.integration
def test_eviction_callback_runs_outside_the_lock(clock):
    observed: list[list[str] | None] = []

    def on_evict(token, units) -> None:
        observed.append(tracker.resolve("other"))

    tracker: InFlightTracker[str] = InFlightTracker(1.0, on_evict=on_evict, clock_fn=clock)
    tracker.register("doc-1", "a")
    clock.advance(0.5)
    tracker.register("other", "b")
    clock.advance(0.6)

    # re-entering the tracker from the callback must not deadlock
    assert tracker.evict_expired() == 1
    assert observed == [["b"]]


@pytest.mark.integration
def test_failing_eviction_callback_still_delivers_remaining_tokens(clock, capsys):
    fired: list[str] = []

    def on_evict(token, units) -> None:
        fired.append(token)
        if token == "t1":
            raise RuntimeError("callback broke")

    tracker: InFlightTracker[str] = InFlightTracker(5.0, on_evict=on_evict, clock_fn=clock, run_id="run-evict")
    tracker.register("t1", "a")
    tracker.register("t2", "b")
    clock.advance(10.0)

    with pytest.raises(RuntimeError, match="callback broke"):
        tracker.evict_expired()

    assert fired == ["t1", "t2"]
    assert len(tracker) == 0
    events = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]
    failures = [event for event in events if event["event_type"] == "inflight_evict_callback_failed"]
    assert len(failures) == 1
    assert failures[0]["token"] == "t1"
    assert failures[0]["error_type"] == "RuntimeError"


@pytest.mark.integration
def test_correlation_lost_carries_token():
    error = CorrelationLost("doc-9")

    assert error.token == "doc-9"
    assert "doc-9" in str(error)


@pytest.mark.integration
def test_ttl_must_be_positive():
    with pytest.raises(ValueError):
        InFlightTracker(0)


@pytest.mark.integration
def test_fair_lock_serves_waiters_in_arrival_order():
    lock = FairLock()
    order: list[int] = []
    lock.acquire()

    def waiter(index: int) -> None:
        with lock:
            order.append(index)

    threads = []
    for index in range(4):
        thread = threading.Thread(target=waiter, args=(index,))
        thread.start()
        threads.append(thread)
        deadline = time.monotonic() + 5.0
        while len(lock._waiters) < index + 1 and time.monotonic() < deadline:
            time.sleep(0.001)

    lock.release()
    for thread in threads:
        thread.join(timeout=5.0)

    assert order == [0, 1, 2, 3]
    assert not lock.locked()


@pytest.mark.integration
def test_fair_lock_release_when_unlocked_raises():
    with pytest.raises(RuntimeError):
        FairLock().release()


@pytest.mark.integration
def test_concurrent_register_and_resolve_lose_nothing():
    tracker: InFlightTracker[int] = InFlightTracker(60.0)
    resolved: list[int] = []
    lock = threading.Lock()

    def producer(offset: int) -> None:
        for index in range(100):
            tracker.register(f"t{offset}-{index}", index)

    def consumer(offset: int) -> None:
        for index in range(100):
            units = None
            while units is None:
                units = tracker.resolve(f"t{offset}-{index}")
            with lock:
                resolved.extend(units)

    threads = []
    for offset in range(3):
        threads.append(threading.Thread(target=producer, args=(offset,)))
        threads.append(threading.Thread(target=consumer, args=(offset,)))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10.0)

    assert len(resolved) == 300
    assert len(tracker) == 0
