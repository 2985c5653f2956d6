"""Crawl frontier: fair per-origin queueing, in-flight tracking and scheduling."""

from frontier.buffer import URLFrontier
from frontier.inflight import CorrelationLost, InFlightTracker
from frontier.politeness import OriginPoliteness
from frontier.puller import StatusStorePuller
from frontier.scheduler import (
    AdaptiveScheduler,
    DefaultScheduler,
    Scheduler,
    StatusUpdater,
    build_scheduler,
)

__all__ = [
    "URLFrontier",
    "CorrelationLost",
    "InFlightTracker",
    "OriginPoliteness",
    "StatusStorePuller",
    "AdaptiveScheduler",
    "DefaultScheduler",
    "Scheduler",
    "StatusUpdater",
    "build_scheduler",
]
