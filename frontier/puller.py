"""Feed the frontier from URLs that are due in the status store."""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime
from typing import Callable

from core.config import CrawlConfig
from core.counters import CrawlCounters
from core.pipeline import StatusStore
from core.structured_logging import emit_json_event
from frontier.buffer import URLFrontier


class StatusStorePuller:
    """
    Query due records and enqueue them into the frontier.

    A query runs when the frontier reported an empty transition since the
    last one, or when `min_interval_seconds` have passed. Records rejected by
    the frontier are still queued or in flight and are counted as
    `already_being_processed`.
    """

    def __init__(
        self,
        store: StatusStore,
        frontier: URLFrontier,
        limit: int = 100,
        max_per_origin: int = 5,
        min_interval_seconds: float = 5.0,
        counters: CrawlCounters | None = None,
        clock_fn: Callable[[], float] | None = None,
        now_fn: Callable[[], datetime] | None = None,
        run_id: str | None = None,
    ) -> None:
        self.store = store
        self.frontier = frontier
        self.limit = limit
        self.max_per_origin = max_per_origin
        self.min_interval_seconds = min_interval_seconds
        self.counters = counters or CrawlCounters()
        self.run_id = run_id
        self._clock = clock_fn or time.monotonic
        self._now = now_fn or (lambda: datetime.now(UTC))
        self._lock = threading.Lock()
        self._last_pull: float | None = None
        self._drained = threading.Event()
        frontier.on_empty_transition(self._drained.set)

    @classmethod
    def from_config(
        cls,
        config: CrawlConfig,
        store: StatusStore,
        frontier: URLFrontier,
        **kwargs,
    ) -> StatusStorePuller:
        return cls(
            store,
            frontier,
            limit=config.pull_limit,
            max_per_origin=config.max_per_origin,
            min_interval_seconds=config.min_pull_interval_seconds,
            **kwargs,
        )

    def maybe_pull(self) -> int:
        """Pull if the frontier drained or the minimum interval elapsed; returns URLs enqueued."""
        now = self._clock()
        last = self._last_pull
        if (
            last is not None
            and not self._drained.is_set()
            and now - last < self.min_interval_seconds
        ):
            return 0
        return self.pull()

    def pull(self) -> int:
        """Query the store now; returns the number of URLs the frontier accepted."""
        with self._lock:
            self._drained.clear()
            self._last_pull = self._clock()
            started = time.monotonic()
            records = self.store.due(self._now(), self.limit, self.max_per_origin)
            query_ms = int((time.monotonic() - started) * 1000)

            enqueued = 0
            already_processed = 0
            for record in records:
                accepted = self.frontier.enqueue(
                    record.url,
                    record.metadata_bag(),
                    partition_key=record.origin or None,
                )
                if accepted:
                    enqueued += 1
                else:
                    already_processed += 1

        self.counters.incr("queries")
        self.counters.incr("docs", len(records))
        self.counters.incr("already_being_processed", already_processed)
        emit_json_event(
            "puller_query",
            run_id=self.run_id,
            level="debug",
            component="puller",
            hits=len(records),
            enqueued=enqueued,
            already_being_processed=already_processed,
            query_ms=query_ms,
        )
        return enqueued
