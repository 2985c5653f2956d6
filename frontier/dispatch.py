"""
Dispatch loop: drain the frontier, fetch, and report every outcome.

Each dequeued URL ends in exactly one of `frontier.on_acknowledged` (its new
schedule record was written) or `frontier.on_failed` (processing raised, or
indexing failed in a retryable way); a failed URL stays due in the status
store and is pulled again later.
"""

from __future__ import annotations

import hashlib
import threading
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable

from core.config import CrawlConfig
from core.counters import CrawlCounters
from core.metadata import Metadata
from core.models import (
    FetchErrorCode,
    FetchLog,
    FetchOutcome,
    FetchResponse,
    QueuedURL,
    ScheduleRecord,
    outcome_for_status_code,
)
from core.pipeline import BulkSink, FetchClient, LinkExtractor, StatusStore, TransportError
from core.structured_logging import emit_json_event
from fetcher.logging import emit_fetch_log
from fetcher.robots import RobotsCache
from frontier.buffer import URLFrontier
from frontier.inflight import CorrelationLost
from frontier.puller import StatusStorePuller
from frontier.scheduler import (
    ERROR_SOURCE_KEY,
    SIGNATURE_KEY,
    STATUS_CODE_KEY,
    StatusUpdater,
    conditional_headers,
    remember_validators,
)
from indexing.bulk import BulkIndexer
from parser.links import decode_body, is_html, parse_page
from quality.urlnorm import origin_key, resolve_url


DEPTH_KEY = "depth"
REDIRECT_TO_KEY = "_redirTo"

# Transport failures worth retrying with back-off; the rest are permanent.
_SOFT_TRANSPORT_ERRORS = {FetchErrorCode.TIMEOUT, FetchErrorCode.FETCH_ERROR}


@dataclass(slots=True)
class _PendingIndex:
    """A fetched URL waiting for its bulk indexing outcome."""

    record: ScheduleRecord
    prior: ScheduleRecord | None
    metadata: Metadata
    now: datetime


class _Budget:
    """Iteration budget shared by worker threads."""

    def __init__(self, limit: int | None) -> None:
        self._lock = threading.Lock()
        self.limit = limit
        self.used = 0

    def take(self) -> bool:
        with self._lock:
            if self.limit is not None and self.used >= self.limit:
                return False
            self.used += 1
            return True

    def give_back(self) -> None:
        with self._lock:
            self.used -= 1


class Dispatcher:
    """Drive URLs from the frontier through robots, fetch, parse and status update."""

    def __init__(
        self,
        frontier: URLFrontier,
        fetch_client: FetchClient,
        store: StatusStore,
        updater: StatusUpdater,
        robots: RobotsCache | None = None,
        link_extractor: LinkExtractor | None = None,
        puller: StatusStorePuller | None = None,
        sink: BulkSink | None = None,
        max_depth: int | None = None,
        bulk_batch_size: int = 50,
        inflight_ttl_seconds: float = 60.0,
        counters: CrawlCounters | None = None,
        fetch_log_sink: Callable[[FetchLog], None] | None = None,
        log_fetches: bool = True,
        now_fn: Callable[[], datetime] | None = None,
        clock_fn: Callable[[], float] | None = None,
        sleep_fn: Callable[[float], None] | None = None,
        run_id: str | None = None,
    ) -> None:
        """Wire collaborators; a BulkIndexer is created when `sink` is given."""
        self.frontier = frontier
        self.fetch_client = fetch_client
        self.store = store
        self.updater = updater
        self.robots = robots
        self.link_extractor = link_extractor
        self.puller = puller
        self.max_depth = max_depth
        self.counters = counters or CrawlCounters()
        self.fetch_log_sink = fetch_log_sink
        self.log_fetches = log_fetches
        self.run_id = run_id
        self._now = now_fn or (lambda: datetime.now(UTC))
        self._sleep = sleep_fn or time.sleep
        self.indexer: BulkIndexer | None = None
        if sink is not None:
            self.indexer = BulkIndexer(
                sink,
                on_success=self._on_indexed,
                on_failure=self._on_index_failed,
                batch_size=bulk_batch_size,
                ttl_seconds=inflight_ttl_seconds,
                clock_fn=clock_fn,
                counters=self.counters,
                run_id=run_id,
            )

    @classmethod
    def from_config(
        cls,
        config: CrawlConfig,
        frontier: URLFrontier,
        fetch_client: FetchClient,
        store: StatusStore,
        **kwargs,
    ) -> Dispatcher:
        kwargs.setdefault("updater", StatusUpdater.from_config(config))
        return cls(
            frontier,
            fetch_client,
            store,
            max_depth=config.max_depth,
            bulk_batch_size=config.bulk_batch_size,
            inflight_ttl_seconds=config.inflight_ttl_seconds,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run_once(self) -> FetchLog | None:
        """Process one URL; None when nothing was eligible."""
        if self.puller is not None:
            self.puller.maybe_pull()

        item = self.frontier.dequeue_next()
        if item is None:
            if self.indexer is not None:
                self.indexer.tracker.evict_expired()
            return None

        try:
            fetch_log = self._process(item)
        except Exception as exc:
            self.frontier.on_failed(item.url)
            self.counters.incr("failed")
            emit_json_event(
                "dispatch_error",
                run_id=self.run_id,
                level="error",
                component="dispatch",
                url=item.url,
                origin=item.origin,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            fetch_log = FetchLog(
                url=item.url,
                origin=item.origin,
                error_code=FetchErrorCode.FETCH_ERROR,
                run_id=self.run_id,
            )

        self._log(fetch_log)
        return fetch_log

    def run(self, max_iterations: int | None = None, idle_sleep: float = 0.1) -> int:
        """Process URLs until idle (or `max_iterations`); returns URLs processed."""
        budget = _Budget(max_iterations)
        self._loop(budget, idle_sleep)
        self.flush()
        return budget.used

    def run_workers(
        self,
        num_workers: int,
        max_iterations: int | None = None,
        idle_sleep: float = 0.1,
    ) -> int:
        """Run the loop on `num_workers` threads sharing one iteration budget."""
        if num_workers < 1:
            raise ValueError("num_workers must be >= 1")
        budget = _Budget(max_iterations)
        threads = [
            threading.Thread(
                target=self._loop,
                args=(budget, idle_sleep),
                name=f"dispatch-{index}",
                daemon=True,
            )
            for index in range(num_workers)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.flush()
        return budget.used

    def flush(self) -> None:
        """Send buffered documents to the sink."""
        if self.indexer is not None:
            self.indexer.flush()

    def _loop(self, budget: _Budget, idle_sleep: float) -> None:
        while budget.take():
            if self.run_once() is not None:
                continue
            budget.give_back()
            if self._idle():
                return
            self._sleep(idle_sleep)

    def _idle(self) -> bool:
        """True when there is nothing left to do anywhere."""
        if self.frontier.has_pending():
            return False
        if self.indexer is not None and self.indexer.pending():
            self.indexer.flush()
            return False
        if self.puller is not None and self.puller.pull() > 0:
            return False
        return self.frontier.in_flight_count() == 0

    # ------------------------------------------------------------------
    # One URL
    # ------------------------------------------------------------------

    def _process(self, item: QueuedURL) -> FetchLog:
        url = item.url
        now = self._now()
        metadata = item.metadata.copy()
        prior = self.store.get(url)

        if self.robots is not None:
            rules = self.robots.rules_for(url)
            self.frontier.set_crawl_delay(item.origin, rules.crawl_delay)
            if not rules.allows(url, self.robots.user_agent):
                self.counters.incr("robots_denied")
                metadata.set_value(ERROR_SOURCE_KEY, "robots")
                self._finish(prior, item, FetchOutcome.HARD_ERROR, now, metadata)
                return FetchLog(
                    url=url,
                    origin=item.origin,
                    outcome=FetchOutcome.HARD_ERROR,
                    error_code=FetchErrorCode.BLOCKED_BY_ROBOTS,
                    run_id=self.run_id,
                )

        try:
            response = self.fetch_client.fetch(url, conditional_headers(metadata))
        except TransportError as exc:
            outcome = (
                FetchOutcome.SOFT_ERROR
                if exc.error_code in _SOFT_TRANSPORT_ERRORS
                else FetchOutcome.HARD_ERROR
            )
            metadata.set_value(ERROR_SOURCE_KEY, exc.error_code.value)
            self._finish(prior, item, outcome, now, metadata)
            return FetchLog(
                url=url,
                origin=item.origin,
                outcome=outcome,
                error_code=exc.error_code,
                run_id=self.run_id,
            )

        self.counters.incr("fetched")
        outcome = outcome_for_status_code(response.status_code)
        metadata.set_value(STATUS_CODE_KEY, str(response.status_code))
        metadata.remove(ERROR_SOURCE_KEY)
        error_code = None

        if outcome is FetchOutcome.SUCCESS:
            remember_validators(metadata, response.headers)
            if response.body:
                metadata.set_value(SIGNATURE_KEY, hashlib.md5(response.body).hexdigest())
            self._discover_outlinks(item, metadata, response, now)
        elif outcome is FetchOutcome.REDIRECTION:
            self._discover_redirect(item, metadata, response.headers.get("location"), now)
        elif outcome in (FetchOutcome.SOFT_ERROR, FetchOutcome.HARD_ERROR, FetchOutcome.NOT_FOUND):
            error_code = FetchErrorCode.HTTP_ERROR

        fetch_log = FetchLog(
            url=url,
            origin=item.origin,
            status_code=response.status_code,
            latency_ms=response.latency_ms,
            bytes_received=len(response.body),
            outcome=outcome,
            error_code=error_code,
            run_id=self.run_id,
        )

        if outcome is FetchOutcome.SUCCESS and self.indexer is not None:
            record = self.updater.apply(prior, url, outcome, now, metadata, item.origin)
            title, content = self._page_text(url, response)
            self.indexer.add(
                url,
                item.origin,
                metadata,
                content,
                _PendingIndex(record=record, prior=prior, metadata=metadata, now=now),
                title=title,
            )
            return fetch_log

        self._finish(prior, item, outcome, now, metadata)
        return fetch_log

    def _finish(
        self,
        prior: ScheduleRecord | None,
        item: QueuedURL,
        outcome: FetchOutcome,
        now: datetime,
        metadata: Metadata,
    ) -> None:
        record = self.updater.apply(prior, item.url, outcome, now, metadata, item.origin)
        self.store.upsert(record)
        self.frontier.on_acknowledged(item.url)
        self.counters.incr("acked")

    def _discover_outlinks(self, item: QueuedURL, metadata: Metadata, response: FetchResponse, now: datetime) -> None:
        if self.link_extractor is None:
            return
        depth = _depth_of(metadata)
        if self.max_depth is not None and depth >= self.max_depth:
            return
        discovered = 0
        for link in self.link_extractor.extract(item.url, response):
            if link == item.url or not origin_key(link):
                continue
            child = Metadata({DEPTH_KEY: [str(depth + 1)]})
            if self._insert_discovered(link, child, now):
                discovered += 1
        self.counters.incr("discovered", discovered)

    def _discover_redirect(
        self,
        item: QueuedURL,
        metadata: Metadata,
        location: str | None,
        now: datetime,
    ) -> None:
        target = resolve_url(item.url, location) if location else None
        if not target or target == item.url or not origin_key(target):
            return
        metadata.set_value(REDIRECT_TO_KEY, target)
        child = Metadata({DEPTH_KEY: [str(_depth_of(metadata))]})
        if self._insert_discovered(target, child, now):
            self.counters.incr("discovered")

    def _insert_discovered(self, url: str, metadata: Metadata, now: datetime) -> bool:
        record = self.updater.apply(None, url, FetchOutcome.DISCOVERED, now, metadata, origin_key(url))
        return self.store.insert_if_absent(record)

    @staticmethod
    def _page_text(url: str, response: FetchResponse) -> tuple[str | None, str]:
        if not is_html(response):
            return None, ""
        page = parse_page(url, decode_body(response))
        return page.title, page.text

    # ------------------------------------------------------------------
    # Indexing callbacks (may run on any worker thread)
    # ------------------------------------------------------------------

    def _on_indexed(self, pending: _PendingIndex) -> None:
        self.store.upsert(pending.record)
        self.frontier.on_acknowledged(pending.record.url)
        self.counters.incr("acked")

    def _on_index_failed(self, pending: _PendingIndex, error: Exception, permanent: bool) -> None:
        url = pending.record.url
        if permanent:
            metadata = pending.metadata.copy()
            metadata.set_value(ERROR_SOURCE_KEY, "indexing")
            record = self.updater.apply(
                pending.prior, url, FetchOutcome.HARD_ERROR, pending.now, metadata, pending.record.origin
            )
            try:
                self.store.upsert(record)
            except Exception:
                self.frontier.on_failed(url)
                self.counters.incr("failed")
                raise
            self.frontier.on_acknowledged(url)
            self.counters.incr("acked")
        else:
            self.frontier.on_failed(url)
            self.counters.incr("failed")
        self._log(
            FetchLog(
                url=url,
                origin=pending.record.origin,
                outcome=FetchOutcome.HARD_ERROR if permanent else FetchOutcome.SOFT_ERROR,
                error_code=(
                    FetchErrorCode.CORRELATION_LOST
                    if isinstance(error, CorrelationLost)
                    else FetchErrorCode.INDEX_FAILED
                ),
                run_id=self.run_id,
            )
        )

    def _log(self, fetch_log: FetchLog) -> None:
        if self.log_fetches:
            emit_fetch_log(fetch_log)
        if self.fetch_log_sink is not None:
            self.fetch_log_sink(fetch_log)


def _depth_of(metadata: Metadata) -> int:
    raw = metadata.get_first_value(DEPTH_KEY)
    try:
        return int(raw) if raw is not None else 0
    except ValueError:
        return 0
