"""
Next-fetch-time policies and the status update built on them.

Schedulers only compute timestamps; they never dispatch and never persist.
`StatusUpdater.apply` turns (prior record, outcome, now) into the next
ScheduleRecord as a pure function of its inputs, so applying the same
outcome twice to the same prior record yields the same result.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Mapping, Optional

from core.config import CrawlConfig, SchedulerName
from core.metadata import Metadata
from core.models import FetchOutcome, ScheduleRecord, Status
from quality.urlnorm import origin_key


# Metadata keys shared with the dispatch loop.
ETAG_KEY = "etag"
LAST_MODIFIED_KEY = "last-modified"
STATUS_CODE_KEY = "fetch.statusCode"
SIGNATURE_KEY = "signature"
SIGNATURE_OLD_KEY = "signatureOld"
FETCH_INTERVAL_KEY = "fetchInterval"
ERROR_SOURCE_KEY = "error.source"


class Scheduler(ABC):
    """Compute when a URL becomes eligible for fetching again."""

    @abstractmethod
    def schedule(
        self,
        now: datetime,
        status: Status,
        metadata: Metadata,
        error_count: int = 0,
    ) -> Optional[datetime]:
        """
        Return the next fetch time, or None for "never refetch".

        May record bookkeeping values in `metadata`; callers pass a copy.
        """
        pass


class DefaultScheduler(Scheduler):
    """
    Fixed intervals per status.

    Custom intervals are keyed `key=value` (applies to FETCHED) or
    `STATUS.key=value` (applies to that status) and match when the URL
    metadata holds `value` under `key`. The first match wins.
    """

    def __init__(
        self,
        default_interval_minutes: float = 1440.0,
        min_refresh_interval_minutes: float = 60.0,
        error_interval_minutes: float = 120.0,
        max_backoff_minutes: float = 10080.0,
        hard_error_interval_minutes: float = -1.0,
        custom_intervals: Mapping[str, float] | None = None,
    ) -> None:
        self.default_interval_minutes = default_interval_minutes
        self.min_refresh_interval_minutes = min_refresh_interval_minutes
        self.error_interval_minutes = error_interval_minutes
        self.max_backoff_minutes = max_backoff_minutes
        self.hard_error_interval_minutes = hard_error_interval_minutes
        self._custom: list[tuple[Status, str, str, float]] = []
        for raw_key, minutes in (custom_intervals or {}).items():
            self._custom.append(_parse_custom_interval(raw_key, float(minutes)))

    @classmethod
    def from_config(cls, config: CrawlConfig) -> DefaultScheduler:
        return cls(
            default_interval_minutes=config.default_interval_minutes,
            min_refresh_interval_minutes=config.min_refresh_interval_minutes,
            error_interval_minutes=config.error_interval_minutes,
            max_backoff_minutes=config.max_backoff_minutes,
            hard_error_interval_minutes=config.hard_error_interval_minutes,
            custom_intervals=config.custom_intervals,
        )

    def schedule(
        self,
        now: datetime,
        status: Status,
        metadata: Metadata,
        error_count: int = 0,
    ) -> Optional[datetime]:
        custom = self._custom_interval(status, metadata)

        if status is Status.DISCOVERED:
            return now
        if status is Status.FETCHED:
            minutes = custom if custom is not None else self.default_interval_minutes
            return now + timedelta(minutes=max(minutes, self.min_refresh_interval_minutes))
        if status is Status.REDIRECTION:
            minutes = custom if custom is not None else self.default_interval_minutes
            return now + timedelta(minutes=minutes)
        if status is Status.FETCH_ERROR:
            if custom is not None:
                return now + timedelta(minutes=custom)
            return now + timedelta(minutes=self.backoff_minutes(error_count))

        # Status.ERROR
        if custom is not None:
            return None if custom < 0 else now + timedelta(minutes=custom)
        if self.hard_error_interval_minutes < 0:
            return None
        return now + timedelta(
            minutes=self._doubled(
                self.hard_error_interval_minutes,
                error_count,
                max(self.max_backoff_minutes, self.hard_error_interval_minutes),
            )
        )

    def backoff_minutes(self, error_count: int) -> float:
        """Exponential back-off: error_interval * 2**(n-1), capped at max_backoff."""
        return self._doubled(self.error_interval_minutes, error_count, self.max_backoff_minutes)

    @staticmethod
    def _doubled(base_minutes: float, error_count: int, cap: float) -> float:
        exponent = max(error_count, 1) - 1
        # cap the exponent before multiplying to keep the float finite
        if exponent > 64:
            return cap
        return min(base_minutes * (2 ** exponent), cap)

    def _custom_interval(self, status: Status, metadata: Metadata) -> Optional[float]:
        for custom_status, key, value, minutes in self._custom:
            if custom_status is status and metadata.contains(key, value):
                return minutes
        return None


class AdaptiveScheduler(DefaultScheduler):
    """
    Stretch the refresh interval of pages that do not change.

    The page signature of the current fetch is compared with the one stored
    at the previous fetch (`signatureOld`). Unchanged content (or a 304)
    multiplies the previous interval by `growth_factor`, bounded by
    `max_interval_minutes`; changed content resets it to
    `min_refresh_interval_minutes`. The interval used is written back under
    `fetchInterval` and the current signature becomes `signatureOld`.
    Other statuses are handled like the default scheduler.
    """

    def __init__(
        self,
        growth_factor: float = 1.5,
        max_interval_minutes: float = 43200.0,
        **kwargs: object,
    ) -> None:
        super().__init__(**kwargs)
        if growth_factor <= 1.0:
            raise ValueError("growth_factor must be > 1")
        self.growth_factor = growth_factor
        self.max_interval_minutes = max_interval_minutes

    @classmethod
    def from_config(cls, config: CrawlConfig) -> AdaptiveScheduler:
        return cls(
            growth_factor=config.adaptive_growth_factor,
            max_interval_minutes=config.adaptive_max_interval_minutes,
            default_interval_minutes=config.default_interval_minutes,
            min_refresh_interval_minutes=config.min_refresh_interval_minutes,
            error_interval_minutes=config.error_interval_minutes,
            max_backoff_minutes=config.max_backoff_minutes,
            hard_error_interval_minutes=config.hard_error_interval_minutes,
            custom_intervals=config.custom_intervals,
        )

    def schedule(
        self,
        now: datetime,
        status: Status,
        metadata: Metadata,
        error_count: int = 0,
    ) -> Optional[datetime]:
        if status is not Status.FETCHED:
            return super().schedule(now, status, metadata, error_count)

        signature = metadata.get_first_value(SIGNATURE_KEY)
        previous = metadata.get_first_value(SIGNATURE_OLD_KEY)
        not_modified = metadata.get_first_value(STATUS_CODE_KEY) == "304"

        interval = self._previous_interval(metadata)
        if interval is None:
            interval = max(self.default_interval_minutes, self.min_refresh_interval_minutes)
        elif not_modified or (signature is not None and signature == previous):
            interval = min(interval * self.growth_factor, self.max_interval_minutes)
        else:
            interval = self.min_refresh_interval_minutes
        interval = max(interval, self.min_refresh_interval_minutes)

        metadata.set_value(FETCH_INTERVAL_KEY, _format_minutes(interval))
        if signature is not None:
            metadata.set_value(SIGNATURE_OLD_KEY, signature)
        return now + timedelta(minutes=interval)

    @staticmethod
    def _previous_interval(metadata: Metadata) -> Optional[float]:
        raw = metadata.get_first_value(FETCH_INTERVAL_KEY)
        if raw is None:
            return None
        try:
            value = float(raw)
        except ValueError:
            return None
        return value if value > 0 else None


def build_scheduler(config: CrawlConfig) -> Scheduler:
    """Instantiate the scheduler named in `config.scheduler`."""
    if config.scheduler is SchedulerName.ADAPTIVE:
        return AdaptiveScheduler.from_config(config)
    return DefaultScheduler.from_config(config)


class StatusUpdater:
    """Map fetch outcomes onto new schedule records."""

    def __init__(self, scheduler: Scheduler, max_fetch_errors: int = 3) -> None:
        if max_fetch_errors < 1:
            raise ValueError("max_fetch_errors must be >= 1")
        self.scheduler = scheduler
        self.max_fetch_errors = max_fetch_errors

    @classmethod
    def from_config(cls, config: CrawlConfig) -> StatusUpdater:
        return cls(build_scheduler(config), max_fetch_errors=config.max_fetch_errors)

    def apply(
        self,
        prior: ScheduleRecord | None,
        url: str,
        outcome: FetchOutcome,
        now: datetime,
        metadata: Metadata | None = None,
        origin: str | None = None,
    ) -> ScheduleRecord:
        """
        Compute the record that follows `prior` after `outcome` at `now`.

        Discovery of an already known URL returns `prior` unchanged. Neither
        `prior` nor `metadata` is mutated.
        """
        if outcome is FetchOutcome.DISCOVERED and prior is not None:
            return prior

        bag = metadata.copy() if metadata is not None else (
            prior.metadata_bag() if prior is not None else Metadata()
        )
        if prior is not None:
            # validators and adaptive bookkeeping survive a fetch that did not return them
            for key in (ETAG_KEY, LAST_MODIFIED_KEY, SIGNATURE_OLD_KEY, FETCH_INTERVAL_KEY):
                if key not in bag and prior.metadata.get(key):
                    bag.set_values(key, prior.metadata[key])

        error_count = prior.error_count if prior is not None else 0
        last_fetched_at = prior.last_fetched_at if prior is not None else None

        if outcome is FetchOutcome.DISCOVERED:
            status = Status.DISCOVERED
        elif outcome in (FetchOutcome.SUCCESS, FetchOutcome.NOT_MODIFIED):
            status = Status.FETCHED
            error_count = 0
            last_fetched_at = now
        elif outcome is FetchOutcome.REDIRECTION:
            status = Status.REDIRECTION
            error_count = 0
            last_fetched_at = now
        elif outcome is FetchOutcome.SOFT_ERROR:
            error_count += 1
            status = Status.ERROR if error_count >= self.max_fetch_errors else Status.FETCH_ERROR
            last_fetched_at = now
        else:
            error_count += 1
            status = Status.ERROR
            last_fetched_at = now

        next_fetch_at = self.scheduler.schedule(now, status, bag, error_count)

        return ScheduleRecord(
            url=url,
            origin=origin or (prior.origin if prior is not None else origin_key(url)),
            status=status,
            metadata=bag.to_dict(),
            last_fetched_at=last_fetched_at,
            next_fetch_at=next_fetch_at,
            error_count=error_count,
            updated_at=now,
        )


def remember_validators(metadata: Metadata, headers: Mapping[str, str]) -> None:
    """Copy ETag / Last-Modified response headers into `metadata`."""
    for key in (ETAG_KEY, LAST_MODIFIED_KEY):
        value = headers.get(key)
        if value and value.strip():
            metadata.set_value(key, value.strip())


def conditional_headers(metadata: Metadata) -> dict[str, str]:
    """Build If-None-Match / If-Modified-Since headers from stored validators."""
    headers: dict[str, str] = {}
    etag = metadata.get_first_value(ETAG_KEY)
    if etag:
        headers["If-None-Match"] = etag
    last_modified = metadata.get_first_value(LAST_MODIFIED_KEY)
    if last_modified:
        headers["If-Modified-Since"] = last_modified
    return headers


def _parse_custom_interval(raw_key: str, minutes: float) -> tuple[Status, str, str, float]:
    key_part, _, value = raw_key.partition("=")
    status = Status.FETCHED
    head, dot, rest = key_part.partition(".")
    if dot and head in Status.__members__:
        status = Status[head]
        key_part = rest
    if not key_part or not value:
        raise ValueError(f"invalid custom interval key: {raw_key!r}")
    return status, key_part, value, minutes


def _format_minutes(minutes: float) -> str:
    return f"{minutes:.2f}".rstrip("0").rstrip(".")
