"""Per-origin politeness bookkeeping for the frontier."""

from __future__ import annotations

from typing import Callable


class OriginPoliteness:
    """
    Track when each origin may next be dispatched.

    Non-blocking: the frontier asks `is_ready` and skips origins that are not.
    The gap is computed from the last dispatch at query time, so a crawl delay
    learned after a dispatch still applies to the next one.
    Not thread safe on its own; URLFrontier calls it under its lock.
    """

    def __init__(
        self,
        min_interval_seconds: float,
        clock_fn: Callable[[], float],
    ) -> None:
        """Initialize the delay policy with the frontier's clock."""
        if min_interval_seconds < 0:
            raise ValueError("min_interval_seconds must be >= 0")
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock_fn
        self._last_dispatch: dict[str, float] = {}
        self._crawl_delays: dict[str, float] = {}

    def interval_for(self, key: str) -> float:
        """Effective gap between two dispatches for `key`."""
        return max(self.min_interval_seconds, self._crawl_delays.get(key, 0.0))

    def next_ready_in(self, key: str, now: float | None = None) -> float:
        """Seconds until `key` becomes eligible (0 when ready)."""
        last = self._last_dispatch.get(key)
        if last is None:
            return 0.0
        current = self._clock() if now is None else now
        return max(0.0, last + self.interval_for(key) - current)

    def is_ready(self, key: str, now: float | None = None) -> bool:
        return self.next_ready_in(key, now) <= 0.0

    def mark_dispatched(self, key: str, now: float | None = None) -> None:
        self._last_dispatch[key] = self._clock() if now is None else now

    def set_crawl_delay(self, key: str, delay_seconds: float | None) -> None:
        """Record a robots.txt crawl delay; None or <= 0 clears it."""
        if delay_seconds is None or delay_seconds <= 0:
            self._crawl_delays.pop(key, None)
        else:
            self._crawl_delays[key] = float(delay_seconds)

    def forget(self, key: str, now: float | None = None) -> None:
        """Drop state for a pruned origin once its gap has elapsed."""
        if self.is_ready(key, now):
            self._last_dispatch.pop(key, None)
            self._crawl_delays.pop(key, None)

    def forget_expired(self, active_keys: set[str], now: float | None = None) -> int:
        """Drop elapsed state of origins not in `active_keys`; returns count dropped."""
        current = self._clock() if now is None else now
        stale = [
            key for key in self._last_dispatch
            if key not in active_keys and self.is_ready(key, current)
        ]
        for key in stale:
            self._last_dispatch.pop(key, None)
            self._crawl_delays.pop(key, None)
        return len(stale)
