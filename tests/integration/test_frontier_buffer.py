"""Integration tests for the origin-partitioned URL frontier."""

from __future__ import annotations

import threading

import pytest

from core.config import CrawlConfig, FairnessPolicy
from core.metadata import Metadata
from frontier.buffer import URLFrontier


def _drain(frontier: URLFrontier) -> list[str]:
    urls = []
    while True:
        item = frontier.dequeue_next()
        if item is None:
            return urls
        urls.append(item.url)


@pytest.mark.integration
def test_simple_policy_rotates_origins_and_rejects_duplicates(clock):
    frontier = URLFrontier(FairnessPolicy.SIMPLE, clock_fn=clock)
    assert not frontier.has_pending()

    assert frontier.enqueue("http://a.net/test.html", Metadata())
    assert frontier.enqueue("http://a.net/test2.html", Metadata())
    assert frontier.enqueue("http://b.net/test.html", Metadata())
    assert frontier.enqueue("http://c.net/test.html", Metadata())

    assert frontier.dequeue_next().url == "http://a.net/test.html"
    assert frontier.dequeue_next().url == "http://b.net/test.html"

    assert frontier.enqueue("http://c.net/test.html", Metadata()) is False
    assert frontier.enqueue("http://d.net/test.html", Metadata()) is True

    assert frontier.dequeue_next().url == "http://c.net/test.html"
    assert frontier.dequeue_next().url == "http://a.net/test2.html"
    assert frontier.dequeue_next().url == "http://d.net/test.html"
    assert not frontier.has_pending()
    assert frontier.dequeue_next() is None


@pytest.mark.integration
def test_simple_policy_gives_each_origin_equal_turns(clock):
    frontier = URLFrontier(clock_fn=clock)
    for host in ("a.net", "b.net", "c.net"):
        for page in (1, 2):
            frontier.enqueue(f"http://{host}/{page}")

    drawn = _drain(frontier)

    assert drawn == [
        "http://a.net/1",
        "http://b.net/1",
        "http://c.net/1",
        "http://a.net/2",
        "http://b.net/2",
        "http://c.net/2",
    ]


@pytest.mark.integration
def test_priority_policy_reranks_by_acknowledgments(clock):
    frontier = URLFrontier(FairnessPolicy.PRIORITY, rerank_period_seconds=10.0, clock_fn=clock)
    frontier.enqueue("http://a.net/test.html")
    frontier.enqueue("http://a.net/test2.html")
    frontier.enqueue("http://b.net/test.html")
    frontier.enqueue("http://c.net/test.html")

    for _ in range(3):
        frontier.on_acknowledged("http://c.net/test.html")
    frontier.on_acknowledged("http://b.net/test.html")

    clock.advance(10.0)

    assert _drain(frontier) == [
        "http://c.net/test.html",
        "http://b.net/test.html",
        "http://a.net/test.html",
        "http://a.net/test2.html",
    ]


@pytest.mark.integration
def test_priority_rerank_resets_counters_and_ties_keep_creation_order(clock):
    frontier = URLFrontier(FairnessPolicy.PRIORITY, clock_fn=clock)
    for host in ("a.net", "b.net", "c.net"):
        frontier.enqueue(f"http://{host}/1")
        frontier.enqueue(f"http://{host}/2")

    frontier.on_acknowledged("http://c.net/1")
    frontier.rerank()
    assert frontier.origin_order() == ["c.net", "a.net", "b.net"]

    # counters were reset: the next rerank falls back to creation order
    frontier.rerank()
    assert frontier.origin_order() == ["a.net", "b.net", "c.net"]


@pytest.mark.integration
def test_priority_rerank_is_lazy_until_period_elapses(clock):
    frontier = URLFrontier(FairnessPolicy.PRIORITY, rerank_period_seconds=10.0, clock_fn=clock)
    frontier.enqueue("http://a.net/1")
    frontier.enqueue("http://b.net/1")
    frontier.on_acknowledged("http://b.net/1")

    clock.advance(5.0)
    assert frontier.dequeue_next().url == "http://a.net/1"


@pytest.mark.integration
def test_simple_policy_ignores_acknowledgment_weighting(clock):
    frontier = URLFrontier(FairnessPolicy.SIMPLE, clock_fn=clock)
    frontier.enqueue("http://a.net/1")
    frontier.enqueue("http://b.net/1")
    frontier.on_acknowledged("http://b.net/1")
    frontier.rerank()
    clock.advance(60.0)

    assert frontier.dequeue_next().url == "http://a.net/1"


@pytest.mark.integration
def test_url_in_flight_cannot_be_requeued_until_released(clock):
    frontier = URLFrontier(clock_fn=clock)
    frontier.enqueue("http://a.net/1")

    item = frontier.dequeue_next()
    assert item.url == "http://a.net/1"
    assert frontier.is_in_flight("http://a.net/1")
    assert frontier.enqueue("http://a.net/1") is False

    assert frontier.on_failed("http://a.net/1") is True
    assert frontier.on_failed("http://a.net/1") is False
    assert frontier.enqueue("http://a.net/1") is True

    frontier.dequeue_next()
    assert frontier.on_acknowledged("http://a.net/1") is True
    assert frontier.in_flight_count() == 0
    assert frontier.enqueue("http://a.net/1") is True


@pytest.mark.integration
def test_metadata_and_origin_are_returned_with_the_url(clock):
    frontier = URLFrontier(clock_fn=clock)
    frontier.enqueue("http://a.net/1", Metadata({"depth": ["2"]}))

    item = frontier.dequeue_next()

    assert item.origin == "a.net"
    assert item.metadata.get_first_value("depth") == "2"


@pytest.mark.integration
def test_partition_key_override_groups_hosts(clock):
    frontier = URLFrontier(clock_fn=clock)
    frontier.enqueue("http://x.net/1", partition_key="shared")
    frontier.enqueue("http://y.net/1", partition_key="shared")
    frontier.enqueue("http://z.net/1")

    assert frontier.num_origins() == 2
    first = frontier.dequeue_next()
    assert first.origin == "shared"
    assert frontier.dequeue_next().url == "http://z.net/1"


@pytest.mark.integration
def test_enqueue_rejects_urls_without_partition_key(clock):
    frontier = URLFrontier(clock_fn=clock)

    assert frontier.enqueue("not a url") is False
    assert frontier.size() == 0


@pytest.mark.integration
def test_max_queue_depth_caps_each_origin(clock):
    frontier = URLFrontier(max_queue_depth=2, clock_fn=clock)

    assert frontier.enqueue("http://a.net/1")
    assert frontier.enqueue("http://a.net/2")
    assert frontier.enqueue("http://a.net/3") is False
    assert frontier.enqueue("http://b.net/1")
    assert frontier.size() == 3


@pytest.mark.integration
def test_empty_origins_are_pruned(clock):
    frontier = URLFrontier(clock_fn=clock)
    frontier.enqueue("http://a.net/1")
    frontier.enqueue("http://b.net/1")
    assert frontier.num_origins() == 2

    frontier.dequeue_next()
    assert frontier.num_origins() == 1
    frontier.dequeue_next()
    assert frontier.num_origins() == 0
    assert frontier.origin_order() == []


@pytest.mark.integration
def test_empty_transition_listener_fires_once_per_transition(clock):
    frontier = URLFrontier(clock_fn=clock)
    fired: list[int] = []
    frontier.on_empty_transition(lambda: fired.append(frontier.size()))

    frontier.enqueue("http://a.net/1")
    frontier.enqueue("http://b.net/1")
    frontier.dequeue_next()
    assert fired == []
    frontier.dequeue_next()
    assert fired == [0]

    assert frontier.dequeue_next() is None
    assert fired == [0]

    frontier.enqueue("http://c.net/1")
    frontier.dequeue_next()
    assert fired == [0, 0]


@pytest.mark.integration
def test_politeness_skips_origins_inside_their_gap(clock):
    frontier = URLFrontier(min_interval_seconds=5.0, clock_fn=clock)
    frontier.enqueue("http://a.net/1")
    frontier.enqueue("http://a.net/2")
    frontier.enqueue("http://b.net/1")

    assert frontier.dequeue_next().url == "http://a.net/1"
    assert frontier.dequeue_next().url == "http://b.net/1"
    assert frontier.dequeue_next() is None
    assert frontier.has_pending()

    clock.advance(4.9)
    assert frontier.dequeue_next() is None
    clock.advance(0.1)
    assert frontier.dequeue_next().url == "http://a.net/2"


@pytest.mark.integration
def test_politeness_survives_origin_pruning(clock):
    frontier = URLFrontier(min_interval_seconds=5.0, clock_fn=clock)
    frontier.enqueue("http://a.net/1")
    frontier.dequeue_next()
    assert frontier.num_origins() == 0

    frontier.enqueue("http://a.net/2")
    assert frontier.dequeue_next() is None
    clock.advance(5.0)
    assert frontier.dequeue_next().url == "http://a.net/2"


@pytest.mark.integration
def test_crawl_delay_extends_the_gap(clock):
    frontier = URLFrontier(min_interval_seconds=1.0, clock_fn=clock)
    frontier.set_crawl_delay("a.net", 3.0)
    frontier.enqueue("http://a.net/1")
    frontier.enqueue("http://a.net/2")

    frontier.dequeue_next()
    clock.advance(1.0)
    assert frontier.dequeue_next() is None
    clock.advance(2.0)
    assert frontier.dequeue_next().url == "http://a.net/2"


@pytest.mark.integration
def test_from_config_applies_policy_and_limits(clock):
    config = CrawlConfig.from_mapping(
        {
            "urlbuffer.policy": "priority",
            "priority.buffer.rerank.period": 2,
            "urlbuffer.max.queue.depth": 1,
            "politeness.min.interval": 0,
        }
    )
    frontier = URLFrontier.from_config(config, clock_fn=clock)

    assert frontier.policy is FairnessPolicy.PRIORITY
    assert frontier.rerank_period_seconds == 2
    assert frontier.enqueue("http://a.net/1")
    assert frontier.enqueue("http://a.net/2") is False
    assert frontier.stats() == {
        "policy": "priority",
        "total_queued": 1,
        "origins": 1,
        "in_flight": 0,
    }


@pytest.mark.integration
def test_invalid_construction_arguments_raise():
    with pytest.raises(ValueError):
        URLFrontier(rerank_period_seconds=0)
    with pytest.raises(ValueError):
        URLFrontier(max_queue_depth=0)
    with pytest.raises(ValueError):
        URLFrontier(min_interval_seconds=-1)


@pytest.mark.integration
def test_concurrent_enqueue_keeps_each_url_once(clock):
    frontier = URLFrontier(clock_fn=clock)
    urls = [f"http://host{index % 4}.net/{index}" for index in range(200)]
    accepted: list[bool] = []
    lock = threading.Lock()

    def worker() -> None:
        for url in urls:
            result = frontier.enqueue(url)
            with lock:
                accepted.append(result)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(accepted) == len(urls)
    assert frontier.size() == len(urls)
    drained = _drain(frontier)
    assert sorted(drained) == sorted(urls)
