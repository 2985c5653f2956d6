"""Core module for crawl-frontier."""

from core.models import (
    FetchErrorCode,
    FetchLog,
    FetchOutcome,
    FetchResponse,
    QueuedURL,
    ScheduleRecord,
    Status,
)
from core.config import CrawlConfig, FetchSafetyConfig, load_config
from core.metadata import Metadata
from core.pipeline import BulkItemResult, BulkSink, FetchClient, LinkExtractor, StatusStore, TransportError

__all__ = [
    "FetchErrorCode",
    "FetchLog",
    "FetchOutcome",
    "FetchResponse",
    "QueuedURL",
    "ScheduleRecord",
    "Status",
    "CrawlConfig",
    "FetchSafetyConfig",
    "load_config",
    "Metadata",
    "BulkItemResult",
    "BulkSink",
    "FetchClient",
    "LinkExtractor",
    "StatusStore",
    "TransportError",
]
