"""Thread-safe named counters emitted by the crawl core."""

from __future__ import annotations

import threading
from collections import defaultdict


class CrawlCounters:
    """Named monotonically increasing counters, optionally reset on snapshot."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: dict[str, int] = defaultdict(int)

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[name] += amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts.get(name, 0)

    def snapshot(self, reset: bool = False) -> dict[str, int]:
        """Return a copy of all counters, clearing them when `reset` is set."""
        with self._lock:
            copy = dict(self._counts)
            if reset:
                self._counts.clear()
        return copy
