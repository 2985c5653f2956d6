"""
URL frontier: pending URLs partitioned by origin, handed out fairly.

A URL can be in the frontier at most once: either queued under its origin or
in flight (dequeued but not yet acknowledged or failed). Two fairness policies
are supported and chosen at construction time:

SIMPLE
    Origins are visited in rotation, one URL per visit. An origin that still
    has URLs after a visit goes to the tail of the rotation; new origins join
    at the tail, right behind the cursor, so a burst of new hosts cannot push
    ahead of hosts already waiting.

PRIORITY
    Same rotation, but every `rerank_period_seconds` the rotation is re-sorted
    by the number of acknowledgments each origin received since the previous
    re-rank (most first, ties by origin creation order), and the counters are
    reset.

Per-origin politeness is enforced here: an origin is skipped until
max(min_interval, robots crawl delay) has elapsed since its last dispatch.
"""

from __future__ import annotations

import itertools
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from core.config import CrawlConfig, FairnessPolicy
from core.metadata import Metadata
from core.models import QueuedURL
from core.structured_logging import emit_json_event
from frontier.politeness import OriginPoliteness
from quality.urlnorm import origin_key


EmptyQueueListener = Callable[[], None]

# Elapsed politeness state of pruned origins is swept every N dequeues.
_POLITENESS_SWEEP_EVERY = 1024


@dataclass(slots=True)
class OriginQueue:
    """Pending URLs of one origin plus its fairness counter."""

    key: str
    seq: int
    entries: deque[tuple[str, Metadata]] = field(default_factory=deque)
    acks: int = 0


class URLFrontier:
    """Thread-safe, origin-partitioned URL queue with fair dequeue."""

    def __init__(
        self,
        policy: FairnessPolicy | str = FairnessPolicy.SIMPLE,
        min_interval_seconds: float = 0.0,
        rerank_period_seconds: float = 10.0,
        max_queue_depth: int | None = None,
        clock_fn: Callable[[], float] | None = None,
        run_id: str | None = None,
    ) -> None:
        """Initialize queues, policy and politeness with an optional test clock."""
        if rerank_period_seconds <= 0:
            raise ValueError("rerank_period_seconds must be > 0")
        if max_queue_depth is not None and max_queue_depth < 1:
            raise ValueError("max_queue_depth must be >= 1")

        self.policy = FairnessPolicy(policy)
        self.rerank_period_seconds = rerank_period_seconds
        self.max_queue_depth = max_queue_depth
        self.run_id = run_id

        self._clock = clock_fn or time.monotonic
        self._lock = threading.Lock()
        self._politeness = OriginPoliteness(min_interval_seconds, self._clock)

        self._queues: dict[str, OriginQueue] = {}
        self._rotation: deque[str] = deque()
        self._queued: set[str] = set()
        self._in_flight: dict[str, str] = {}
        self._seq = itertools.count()
        self._size = 0
        self._dequeues = 0
        self._last_rerank = self._clock()
        self._listeners: list[EmptyQueueListener] = []

    @classmethod
    def from_config(
        cls,
        config: CrawlConfig,
        clock_fn: Callable[[], float] | None = None,
        run_id: str | None = None,
    ) -> URLFrontier:
        return cls(
            policy=config.fairness_policy,
            min_interval_seconds=config.min_interval_seconds,
            rerank_period_seconds=config.rerank_period_seconds,
            max_queue_depth=config.max_queue_depth,
            clock_fn=clock_fn,
            run_id=run_id,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def enqueue(
        self,
        url: str,
        metadata: Metadata | None = None,
        partition_key: str | None = None,
    ) -> bool:
        """
        Queue `url` under its origin.

        Returns False without mutating anything when the URL is already queued
        or in flight, when its origin queue is full, or when no partition key
        can be derived from it.
        """
        key = partition_key if partition_key is not None else origin_key(url)
        if not key:
            return False

        with self._lock:
            if url in self._queued or url in self._in_flight:
                return False
            queue = self._queues.get(key)
            if queue is None:
                queue = OriginQueue(key=key, seq=next(self._seq))
                self._queues[key] = queue
                self._rotation.append(key)
            elif self.max_queue_depth is not None and len(queue.entries) >= self.max_queue_depth:
                return False
            queue.entries.append((url, metadata if metadata is not None else Metadata()))
            self._queued.add(url)
            self._size += 1
            return True

    def dequeue_next(self) -> QueuedURL | None:
        """
        Return the next URL under the active policy, or None.

        None means nothing is eligible right now (frontier empty, or every
        origin with pending URLs is inside its politeness gap). Never blocks.
        """
        became_empty = False
        with self._lock:
            now = self._clock()
            if (
                self.policy is FairnessPolicy.PRIORITY
                and now - self._last_rerank >= self.rerank_period_seconds
            ):
                self._rerank_locked(now)

            chosen_index = -1
            for index, key in enumerate(self._rotation):
                if self._politeness.is_ready(key, now):
                    chosen_index = index
                    break
            if chosen_index < 0:
                return None

            key = self._rotation[chosen_index]
            del self._rotation[chosen_index]
            queue = self._queues[key]
            url, metadata = queue.entries.popleft()

            self._queued.discard(url)
            self._in_flight[url] = key
            self._size -= 1
            self._politeness.mark_dispatched(key, now)

            if queue.entries:
                self._rotation.append(key)
            else:
                self._prune_locked(key, now)

            self._dequeues += 1
            if self._dequeues % _POLITENESS_SWEEP_EVERY == 0:
                self._politeness.forget_expired(set(self._queues), now)

            became_empty = self._size == 0
            listeners = list(self._listeners) if became_empty else []

        for listener in listeners:
            listener()
        return QueuedURL(url=url, origin=key, metadata=metadata)

    def on_acknowledged(self, url: str) -> bool:
        """
        Record that `url` was processed; it may be enqueued again afterwards.

        Under the PRIORITY policy the origin's ack counter is incremented, even
        for a URL that is still queued. Returns True if `url` was in flight.
        """
        with self._lock:
            key = self._in_flight.pop(url, None)
            if self.policy is FairnessPolicy.PRIORITY:
                queue = self._queues.get(key if key is not None else origin_key(url))
                if queue is not None:
                    queue.acks += 1
            return key is not None

    def on_failed(self, url: str) -> bool:
        """Release the in-flight slot of `url` without weighting. Returns True if it was in flight."""
        with self._lock:
            return self._in_flight.pop(url, None) is not None

    def on_empty_transition(self, listener: EmptyQueueListener) -> None:
        """Register a callback fired once each time the last pending URL is dequeued."""
        with self._lock:
            self._listeners.append(listener)

    def set_crawl_delay(self, key: str, delay_seconds: float | None) -> None:
        with self._lock:
            self._politeness.set_crawl_delay(key, delay_seconds)

    def rerank(self) -> None:
        """Force a PRIORITY re-rank now; no-op for SIMPLE."""
        if self.policy is not FairnessPolicy.PRIORITY:
            return
        with self._lock:
            self._rerank_locked(self._clock())

    # ------------------------------------------------------------------
    # Queries (lock-free approximations)
    # ------------------------------------------------------------------

    def has_pending(self) -> bool:
        return self._size > 0

    def size(self) -> int:
        return self._size

    def num_origins(self) -> int:
        return len(self._queues)

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def is_in_flight(self, url: str) -> bool:
        return url in self._in_flight

    def origin_order(self) -> list[str]:
        """Snapshot of the rotation, next origin first."""
        with self._lock:
            return list(self._rotation)

    def stats(self) -> dict[str, object]:
        with self._lock:
            return {
                "policy": self.policy.value,
                "total_queued": self._size,
                "origins": len(self._queues),
                "in_flight": len(self._in_flight),
            }

    # ------------------------------------------------------------------
    # Internals (caller holds self._lock)
    # ------------------------------------------------------------------

    def _prune_locked(self, key: str, now: float) -> None:
        self._queues.pop(key, None)
        self._politeness.forget(key, now)

    def _rerank_locked(self, now: float) -> None:
        ranked = sorted(
            self._rotation,
            key=lambda k: (-self._queues[k].acks, self._queues[k].seq),
        )
        top = [(k, self._queues[k].acks) for k in ranked[:10]]
        for key in ranked:
            self._queues[key].acks = 0
        self._rotation = deque(ranked)
        self._last_rerank = now
        emit_json_event(
            "frontier_rerank",
            run_id=self.run_id,
            level="debug",
            component="frontier",
            origins=len(ranked),
            top=top,
        )
