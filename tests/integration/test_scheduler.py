"""Integration tests for refetch scheduling and status updates."""

from __future__ import annotations

from datetime import timedelta

import pytest

from core.config import CrawlConfig
from core.metadata import Metadata
from core.models import FetchOutcome, ScheduleRecord, Status
from frontier.scheduler import (
    FETCH_INTERVAL_KEY,
    SIGNATURE_KEY,
    SIGNATURE_OLD_KEY,
    STATUS_CODE_KEY,
    AdaptiveScheduler,
    DefaultScheduler,
    StatusUpdater,
    build_scheduler,
    conditional_headers,
    remember_validators,
)


URL = "http://a.net/page"


def _prior(fixed_now, **overrides) -> ScheduleRecord:
    values = {
        "url": URL,
        "origin": "a.net",
        "status": Status.FETCHED,
        "metadata": {},
        "last_fetched_at": fixed_now - timedelta(days=1),
        "next_fetch_at": fixed_now,
        "error_count": 0,
        "updated_at": fixed_now - timedelta(days=1),
    }
    values.update(overrides)
    return ScheduleRecord(**values)


@pytest.mark.integration
def test_default_intervals_per_status(fixed_now):
    scheduler = DefaultScheduler(
        default_interval_minutes=1440,
        min_refresh_interval_minutes=60,
        error_interval_minutes=120,
        hard_error_interval_minutes=-1,
    )
    empty = Metadata()

    assert scheduler.schedule(fixed_now, Status.DISCOVERED, empty) == fixed_now
    assert scheduler.schedule(fixed_now, Status.FETCHED, empty) == fixed_now + timedelta(minutes=1440)
    assert scheduler.schedule(fixed_now, Status.REDIRECTION, empty) == fixed_now + timedelta(minutes=1440)
    assert scheduler.schedule(fixed_now, Status.FETCH_ERROR, empty, 1) == fixed_now + timedelta(minutes=120)
    assert scheduler.schedule(fixed_now, Status.ERROR, empty, 3) is None


@pytest.mark.integration
def test_repeated_hard_errors_back_off(fixed_now):
    updater = StatusUpdater(DefaultScheduler(hard_error_interval_minutes=30, max_backoff_minutes=100))

    record = None
    gaps = []
    counts = []
    for _ in range(4):
        record = updater.apply(record, URL, FetchOutcome.HARD_ERROR, fixed_now)
        counts.append(record.error_count)
        gaps.append(record.next_fetch_at - fixed_now)

    assert counts == [1, 2, 3, 4]
    assert gaps == [
        timedelta(minutes=30),
        timedelta(minutes=60),
        timedelta(minutes=100),
        timedelta(minutes=100),
    ]


@pytest.mark.integration
def test_hard_error_interval_above_max_backoff_is_kept(fixed_now):
    scheduler = DefaultScheduler(hard_error_interval_minutes=500, max_backoff_minutes=100)

    assert scheduler.schedule(fixed_now, Status.ERROR, Metadata(), 1) == fixed_now + timedelta(minutes=500)
    assert scheduler.schedule(fixed_now, Status.ERROR, Metadata(), 3) == fixed_now + timedelta(minutes=500)


@pytest.mark.integration
def test_backoff_doubles_and_caps(fixed_now):
    scheduler = DefaultScheduler(error_interval_minutes=120, max_backoff_minutes=1000)

    assert scheduler.backoff_minutes(0) == 120
    assert scheduler.backoff_minutes(1) == 120
    assert scheduler.backoff_minutes(2) == 240
    assert scheduler.backoff_minutes(3) == 480
    assert scheduler.backoff_minutes(4) == 960
    assert scheduler.backoff_minutes(5) == 1000
    assert scheduler.backoff_minutes(500) == 1000


@pytest.mark.integration
def test_custom_intervals_match_metadata(fixed_now):
    scheduler = DefaultScheduler(
        default_interval_minutes=1440,
        min_refresh_interval_minutes=60,
        custom_intervals={
            "isFeed=true": 10,
            "section=news": 90,
            "FETCH_ERROR.isFeed=true": 5,
        },
    )
    feed = Metadata({"isFeed": ["true"]})
    news = Metadata({"section": ["sport", "news"]})

    # custom intervals below the minimum refresh are raised to it
    assert scheduler.schedule(fixed_now, Status.FETCHED, feed) == fixed_now + timedelta(minutes=60)
    assert scheduler.schedule(fixed_now, Status.FETCHED, news) == fixed_now + timedelta(minutes=90)
    assert scheduler.schedule(fixed_now, Status.FETCH_ERROR, feed, 4) == fixed_now + timedelta(minutes=5)
    assert scheduler.schedule(fixed_now, Status.FETCH_ERROR, news, 1) == fixed_now + timedelta(minutes=120)


@pytest.mark.integration
def test_malformed_custom_interval_is_rejected():
    with pytest.raises(ValueError):
        DefaultScheduler(custom_intervals={"=true": 5})
    with pytest.raises(ValueError):
        DefaultScheduler(custom_intervals={"isFeed=": 5})


@pytest.mark.integration
def test_apply_is_pure_and_idempotent(fixed_now):
    updater = StatusUpdater(DefaultScheduler())
    prior = _prior(fixed_now, metadata={"depth": ["1"]})
    metadata = Metadata({"depth": ["1"], STATUS_CODE_KEY: ["200"]})

    first = updater.apply(prior, URL, FetchOutcome.SUCCESS, fixed_now, metadata)
    second = updater.apply(prior, URL, FetchOutcome.SUCCESS, fixed_now, metadata)

    assert first == second
    assert prior.metadata == {"depth": ["1"]}
    assert metadata.get_first_value(STATUS_CODE_KEY) == "200"
    assert first.status is Status.FETCHED
    assert first.last_fetched_at == fixed_now
    assert first.updated_at == fixed_now


@pytest.mark.integration
def test_success_is_never_rescheduled_before_min_refresh(fixed_now):
    updater = StatusUpdater(
        DefaultScheduler(default_interval_minutes=1, min_refresh_interval_minutes=60)
    )

    record = updater.apply(None, URL, FetchOutcome.SUCCESS, fixed_now)

    assert record.next_fetch_at >= fixed_now + timedelta(minutes=60)
    assert record.origin == "a.net"


@pytest.mark.integration
def test_discovery_is_due_now_and_keeps_known_records(fixed_now):
    updater = StatusUpdater(DefaultScheduler())

    fresh = updater.apply(None, URL, FetchOutcome.DISCOVERED, fixed_now, Metadata({"depth": ["2"]}))
    assert fresh.status is Status.DISCOVERED
    assert fresh.next_fetch_at <= fixed_now
    assert fresh.last_fetched_at is None
    assert fresh.metadata == {"depth": ["2"]}

    prior = _prior(fixed_now, next_fetch_at=fixed_now + timedelta(days=3))
    assert updater.apply(prior, URL, FetchOutcome.DISCOVERED, fixed_now) is prior


@pytest.mark.integration
def test_soft_errors_back_off_then_become_permanent(fixed_now):
    updater = StatusUpdater(
        DefaultScheduler(error_interval_minutes=10, hard_error_interval_minutes=-1),
        max_fetch_errors=3,
    )

    record = updater.apply(None, URL, FetchOutcome.SOFT_ERROR, fixed_now)
    assert record.status is Status.FETCH_ERROR
    assert record.error_count == 1
    assert record.next_fetch_at == fixed_now + timedelta(minutes=10)

    record = updater.apply(record, URL, FetchOutcome.SOFT_ERROR, fixed_now)
    assert record.error_count == 2
    assert record.next_fetch_at == fixed_now + timedelta(minutes=20)

    record = updater.apply(record, URL, FetchOutcome.SOFT_ERROR, fixed_now)
    assert record.status is Status.ERROR
    assert record.error_count == 3
    assert record.next_fetch_at is None


@pytest.mark.integration
def test_success_resets_error_count(fixed_now):
    updater = StatusUpdater(DefaultScheduler())
    prior = _prior(fixed_now, status=Status.FETCH_ERROR, error_count=2)

    record = updater.apply(prior, URL, FetchOutcome.SUCCESS, fixed_now)

    assert record.status is Status.FETCHED
    assert record.error_count == 0


@pytest.mark.integration
def test_hard_error_and_not_found_are_permanent(fixed_now):
    updater = StatusUpdater(DefaultScheduler())

    for outcome in (FetchOutcome.HARD_ERROR, FetchOutcome.NOT_FOUND):
        record = updater.apply(None, URL, outcome, fixed_now)
        assert record.status is Status.ERROR
        assert record.next_fetch_at is None


@pytest.mark.integration
def test_redirection_is_scheduled_like_a_fetch(fixed_now):
    updater = StatusUpdater(DefaultScheduler(default_interval_minutes=30, min_refresh_interval_minutes=60))

    record = updater.apply(None, URL, FetchOutcome.REDIRECTION, fixed_now)

    assert record.status is Status.REDIRECTION
    assert record.next_fetch_at == fixed_now + timedelta(minutes=30)


@pytest.mark.integration
def test_validators_survive_a_fetch_that_omits_them(fixed_now):
    updater = StatusUpdater(DefaultScheduler())
    prior = _prior(fixed_now, metadata={"etag": ['"v1"'], "last-modified": ["Mon, 02 Mar 2026 10:00:00 GMT"]})

    record = updater.apply(prior, URL, FetchOutcome.NOT_MODIFIED, fixed_now, Metadata({STATUS_CODE_KEY: ["304"]}))

    assert record.status is Status.FETCHED
    assert record.metadata["etag"] == ['"v1"']
    assert record.metadata["last-modified"] == ["Mon, 02 Mar 2026 10:00:00 GMT"]


@pytest.mark.integration
def test_adaptive_interval_grows_for_unchanged_content(fixed_now):
    updater = StatusUpdater(
        AdaptiveScheduler(
            growth_factor=2.0,
            max_interval_minutes=1000,
            default_interval_minutes=100,
            min_refresh_interval_minutes=10,
        )
    )

    first = updater.apply(None, URL, FetchOutcome.SUCCESS, fixed_now, Metadata({SIGNATURE_KEY: ["abc"]}))
    assert first.next_fetch_at == fixed_now + timedelta(minutes=100)
    assert first.metadata[FETCH_INTERVAL_KEY] == ["100"]
    assert first.metadata[SIGNATURE_OLD_KEY] == ["abc"]

    second = updater.apply(first, URL, FetchOutcome.SUCCESS, fixed_now, Metadata({SIGNATURE_KEY: ["abc"]}))
    assert second.next_fetch_at == fixed_now + timedelta(minutes=200)
    assert second.metadata[FETCH_INTERVAL_KEY] == ["200"]

    changed = updater.apply(second, URL, FetchOutcome.SUCCESS, fixed_now, Metadata({SIGNATURE_KEY: ["xyz"]}))
    assert changed.next_fetch_at == fixed_now + timedelta(minutes=10)
    assert changed.metadata[FETCH_INTERVAL_KEY] == ["10"]
    assert changed.metadata[SIGNATURE_OLD_KEY] == ["xyz"]


@pytest.mark.integration
def test_adaptive_interval_caps_and_treats_304_as_unchanged(fixed_now):
    scheduler = AdaptiveScheduler(
        growth_factor=2.0,
        max_interval_minutes=1000,
        default_interval_minutes=100,
        min_refresh_interval_minutes=10,
    )
    metadata = Metadata({FETCH_INTERVAL_KEY: ["800"], STATUS_CODE_KEY: ["304"]})

    assert scheduler.schedule(fixed_now, Status.FETCHED, metadata) == fixed_now + timedelta(minutes=1000)
    assert metadata.get_first_value(FETCH_INTERVAL_KEY) == "1000"


@pytest.mark.integration
def test_adaptive_scheduler_delegates_other_statuses(fixed_now):
    scheduler = AdaptiveScheduler(error_interval_minutes=15)

    assert scheduler.schedule(fixed_now, Status.FETCH_ERROR, Metadata(), 1) == fixed_now + timedelta(minutes=15)
    with pytest.raises(ValueError):
        AdaptiveScheduler(growth_factor=1.0)


@pytest.mark.integration
def test_build_scheduler_from_config():
    assert type(build_scheduler(CrawlConfig())) is DefaultScheduler

    adaptive = build_scheduler(
        CrawlConfig.from_mapping(
            {
                "scheduler.class": "adaptive",
                "scheduler.adaptive.fetchInterval.rate.incr": 3,
                "scheduler.adaptive.fetchInterval.max": 500,
            }
        )
    )
    assert isinstance(adaptive, AdaptiveScheduler)
    assert adaptive.growth_factor == 3
    assert adaptive.max_interval_minutes == 500

    updater = StatusUpdater.from_config(CrawlConfig.from_mapping({"max.fetch.errors": 5}))
    assert updater.max_fetch_errors == 5


@pytest.mark.integration
def test_conditional_headers_from_remembered_validators():
    metadata = Metadata()
    remember_validators(metadata, {"etag": ' "v2" ', "last-modified": "Sun, 01 Mar 2026 12:00:00 GMT"})

    assert conditional_headers(metadata) == {
        "If-None-Match": '"v2"',
        "If-Modified-Since": "Sun, 01 Mar 2026 12:00:00 GMT",
    }
    assert conditional_headers(Metadata()) == {}


@pytest.mark.integration
def test_updater_rejects_non_positive_error_budget():
    with pytest.raises(ValueError):
        StatusUpdater(DefaultScheduler(), max_fetch_errors=0)
