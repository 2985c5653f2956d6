"""Robots.txt cache keyed by (scheme, host, port) with single-flight misses."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable
from urllib import robotparser
from urllib.parse import urljoin

from core.config import CrawlConfig, FetchSafetyConfig
from core.models import FetchErrorCode
from core.pipeline import FetchClient, TransportError
from core.structured_logging import emit_json_event
from quality.urlnorm import robots_key, robots_url_for


BLOCKED_BY_ROBOTS = "BLOCKED_BY_ROBOTS"

_REDIRECT_CODES = {301, 302, 303, 307, 308}
_TRANSIENT_ERRORS = {FetchErrorCode.TIMEOUT, FetchErrorCode.FETCH_ERROR}

RobotsKey = tuple[str, str, int]


@dataclass(frozen=True, slots=True)
class RobotRules:
    """
    Parsed robots policy for one origin.

    mode is one of:
    - "parsed": decisions come from `parser`
    - "allow_all": no restriction
    - "forbid_all": nothing may be fetched
    """

    mode: str
    parser: robotparser.RobotFileParser | None = None
    crawl_delay: float | None = None
    status_code: int | None = None
    robots_url: str = ""

    def allows(self, url: str, user_agent: str) -> bool:
        if self.mode == "allow_all":
            return True
        if self.mode == "forbid_all":
            return False
        return self.parser is not None and self.parser.can_fetch(user_agent, url)


ALLOW_ALL = RobotRules(mode="allow_all")
FORBID_ALL = RobotRules(mode="forbid_all")


@dataclass(slots=True)
class _CacheEntry:
    rules: RobotRules
    expires_at: float | None


class _Flight:
    """One in-progress robots.txt fetch that concurrent callers wait on."""

    __slots__ = ("done", "rules")

    def __init__(self) -> None:
        self.done = threading.Event()
        self.rules: RobotRules = ALLOW_ALL


class RobotsCache:
    """
    Evaluate robots rules per origin, fetching robots.txt lazily.

    Miss handling:
    - 2xx: parse and cache (also under the redirect target's key)
    - 403: forbid all unless `allow_403` (default), cached
    - >=500, timeout or connection failure: allow all, not cached
    - other transport refusals (security block, oversized body): allow all, cached
    - anything else: allow all, cached

    Only one fetch runs per key at a time; concurrent callers for the same
    key wait for it and reuse its rules.
    """

    def __init__(
        self,
        fetch_client: FetchClient,
        user_agent: str = FetchSafetyConfig.USER_AGENT,
        allow_403: bool = True,
        ttl_seconds: float | None = None,
        clock_fn: Callable[[], float] | None = None,
        run_id: str | None = None,
    ) -> None:
        """Initialize the cache around a fetch collaborator."""
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self.fetch_client = fetch_client
        self.user_agent = user_agent
        self.allow_403 = allow_403
        self.ttl_seconds = ttl_seconds
        self.run_id = run_id
        self._clock = clock_fn or time.monotonic
        self._lock = threading.Lock()
        self._cache: dict[RobotsKey, _CacheEntry] = {}
        self._flights: dict[RobotsKey, _Flight] = {}

    @classmethod
    def from_config(
        cls,
        config: CrawlConfig,
        fetch_client: FetchClient,
        clock_fn: Callable[[], float] | None = None,
        run_id: str | None = None,
    ) -> RobotsCache:
        return cls(
            fetch_client,
            user_agent=config.user_agent,
            allow_403=config.robots_403_allow,
            ttl_seconds=config.robots_ttl_seconds,
            clock_fn=clock_fn,
            run_id=run_id,
        )

    def allowed(self, url: str) -> bool:
        """Return True when robots rules permit fetching `url`."""
        return self.rules_for(url).allows(url, self.user_agent)

    def crawl_delay(self, url_or_origin: str) -> float | None:
        """Crawl-delay (seconds) declared for our agent, if any."""
        return self.rules_for(_as_url(url_or_origin)).crawl_delay

    def invalidate(self, url_or_origin: str) -> bool:
        """Drop the cached rules for an origin. Returns True if something was cached."""
        key = robots_key(_as_url(url_or_origin))
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def cached_keys(self) -> list[RobotsKey]:
        with self._lock:
            return list(self._cache)

    def rules_for(self, url: str) -> RobotRules:
        key = robots_key(url)
        if not key[1]:
            return FORBID_ALL

        with self._lock:
            entry = self._cache.get(key)
            if entry is not None:
                if entry.expires_at is None or entry.expires_at > self._clock():
                    return entry.rules
                del self._cache[key]
            flight = self._flights.get(key)
            owner = flight is None
            if owner:
                flight = _Flight()
                self._flights[key] = flight

        if not owner:
            flight.done.wait()
            return flight.rules

        try:
            flight.rules = self._load(url, key)
        finally:
            with self._lock:
                self._flights.pop(key, None)
            flight.done.set()
        return flight.rules

    def _load(self, url: str, key: RobotsKey) -> RobotRules:
        robots_url = robots_url_for(url)
        redirect_url: str | None = None
        try:
            response = self.fetch_client.fetch(robots_url)
            location = response.headers.get("location")
            if response.status_code in _REDIRECT_CODES and location:
                redirect_url = urljoin(robots_url, location.strip())
                response = self.fetch_client.fetch(redirect_url)
        except TransportError as exc:
            if exc.error_code in _TRANSIENT_ERRORS:
                self._emit_transient(robots_url, error_code=exc.error_code.value, error=str(exc))
                return ALLOW_ALL
            # deterministic refusals repeat on every attempt; cache them
            status_code = None
            rules = RobotRules(mode="allow_all", robots_url=robots_url)
        else:
            status_code = response.status_code
            if 200 <= status_code < 300:
                body = response.body[: FetchSafetyConfig.ROBOTS_MAX_BYTES]
                rules = self._parse(redirect_url or robots_url, body, status_code)
            elif status_code == 403 and not self.allow_403:
                rules = RobotRules(mode="forbid_all", status_code=status_code, robots_url=robots_url)
            elif status_code >= 500:
                self._emit_transient(robots_url, status_code=status_code)
                return ALLOW_ALL
            else:
                rules = RobotRules(mode="allow_all", status_code=status_code, robots_url=robots_url)

        expires_at = self._clock() + self.ttl_seconds if self.ttl_seconds else None
        with self._lock:
            self._cache[key] = _CacheEntry(rules, expires_at)
            if redirect_url is not None:
                redirect_key = robots_key(redirect_url)
                if redirect_key[1] and redirect_key != key:
                    self._cache[redirect_key] = _CacheEntry(rules, expires_at)

        emit_json_event(
            "robots_fetched",
            run_id=self.run_id,
            level="debug",
            robots_url=robots_url,
            redirect_url=redirect_url,
            status_code=status_code,
            robots_mode=rules.mode,
            crawl_delay=rules.crawl_delay,
        )
        return rules

    def _parse(self, robots_url: str, body: bytes, status_code: int) -> RobotRules:
        parser = robotparser.RobotFileParser()
        parser.set_url(robots_url)
        parser.parse(body.decode("utf-8", errors="replace").splitlines())
        delay = parser.crawl_delay(self.user_agent)
        return RobotRules(
            mode="parsed",
            parser=parser,
            crawl_delay=float(delay) if delay is not None else None,
            status_code=status_code,
            robots_url=robots_url,
        )

    def _emit_transient(self, robots_url: str, **payload: object) -> None:
        emit_json_event(
            "robots_transient_failure",
            run_id=self.run_id,
            level="warning",
            robots_url=robots_url,
            message=f"robots.txt unavailable for {robots_url}; allowing without caching",
            **payload,
        )


def _as_url(url_or_origin: str) -> str:
    if "://" in url_or_origin:
        return url_or_origin
    return f"http://{url_or_origin}/"
