"""
Configuration for crawl-frontier.

Two layers:
- FetchSafetyConfig: fixed safety constraints for the bundled HTTP client
  (protocols, SSRF ranges, body limits). Not configurable per run.
- CrawlConfig: the tunable surface of the frontier core, loaded from an
  opaque key/value mapping (JSON file or dict) and validated by pydantic.
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Set

from pydantic import BaseModel, Field, field_validator


class FetchSafetyConfig:
    """
    Immutable fetch-layer safety settings used by fetcher.http.
    """

    # Protocol whitelist: only http(s), no file://, gopher, etc.
    ALLOWED_PROTOCOLS: Set[str] = {"http", "https"}
    """Only HTTP(S) allowed."""

    # IP blocklist: private/internal IPs cannot be fetched (SSRF prevention)
    BLOCKED_IP_RANGES: list[str] = [
        # IPv4 private
        "127.0.0.1/8",          # Loopback
        "10.0.0.0/8",           # Private
        "172.16.0.0/12",        # Private
        "192.168.0.0/16",       # Private
        "169.254.0.0/16",       # Link-local
        "224.0.0.0/4",          # Multicast
        "0.0.0.0/8",            # This network
        # IPv6 private/link-local
        "::1/128",              # Loopback
        "fe80::/10",            # Link-local
        "fc00::/7",             # Unique local addresses
    ]
    """IP ranges that cannot be fetched (SSRF prevention)."""

    FETCH_TIMEOUT_SECONDS: int = 30
    """Maximum time to wait for a single fetch (seconds)."""

    MAX_BODY_BYTES_BY_TYPE: dict[str, int] = {
        "text/html": 5_000_000,
        "application/xhtml+xml": 5_000_000,
        "application/xml": 5_000_000,
        "text/xml": 5_000_000,
        "text/plain": 2_000_000,
        "application/json": 2_000_000,
    }
    """Max body bytes per content-type. Unlisted types use MAX_BODY_BYTES_DEFAULT."""

    MAX_BODY_BYTES_DEFAULT: int = 1_000_000

    ROBOTS_MAX_BYTES: int = 500_000
    """robots.txt bodies larger than this are truncated before parsing."""

    USER_AGENT: str = "crawl-frontier/0.1"

    @classmethod
    def validate(cls) -> None:
        """
        Validate configuration at startup.

        Raises:
            AssertionError: If any constraint is violated.
        """
        assert cls.FETCH_TIMEOUT_SECONDS > 0, "FETCH_TIMEOUT_SECONDS must be > 0"
        assert cls.MAX_BODY_BYTES_DEFAULT > 0, "MAX_BODY_BYTES_DEFAULT must be > 0"
        assert (
            all(b >= 0 for b in cls.MAX_BODY_BYTES_BY_TYPE.values())
        ), "All MAX_BODY_BYTES_BY_TYPE values must be ≥ 0"
        assert cls.ALLOWED_PROTOCOLS <= {"http", "https"}, "only http(s) may be allowed"


# Validate at module import time
FetchSafetyConfig.validate()


class FairnessPolicy(str, Enum):
    SIMPLE = "simple"
    PRIORITY = "priority"


class SchedulerName(str, Enum):
    DEFAULT = "default"
    ADAPTIVE = "adaptive"


# Dotted keys accepted by CrawlConfig.from_mapping, mapped to field names.
CONFIG_ALIASES: Dict[str, str] = {
    "politeness.min.interval": "min_interval_seconds",
    "fetcher.server.delay": "min_interval_seconds",
    "http.robots.403.allow": "robots_403_allow",
    "robots.cache.ttl": "robots_ttl_seconds",
    "inflight.ttl": "inflight_ttl_seconds",
    "urlbuffer.policy": "fairness_policy",
    "priority.buffer.rerank.period": "rerank_period_seconds",
    "urlbuffer.max.queue.depth": "max_queue_depth",
    "fetchInterval.default": "default_interval_minutes",
    "fetchInterval.min.refresh": "min_refresh_interval_minutes",
    "fetchInterval.fetch.error": "error_interval_minutes",
    "fetchInterval.max.backoff": "max_backoff_minutes",
    "max.fetch.errors": "max_fetch_errors",
    "fetchInterval.error": "hard_error_interval_minutes",
    "scheduler.class": "scheduler",
    "scheduler.adaptive.fetchInterval.max": "adaptive_max_interval_minutes",
    "scheduler.adaptive.fetchInterval.rate.incr": "adaptive_growth_factor",
    "max.depth": "max_depth",
    "spout.max.results": "pull_limit",
    "spout.max.urls.per.bucket": "max_per_origin",
    "spout.min.delay.queries": "min_pull_interval_seconds",
    "indexer.batch.size": "bulk_batch_size",
    "http.agent.name": "user_agent",
}

_CUSTOM_INTERVAL_PREFIX = "fetchInterval."


class CrawlConfig(BaseModel):
    """Tunable settings for the frontier, robots cache, tracker and scheduler."""

    # Politeness
    min_interval_seconds: float = Field(default=1.0, ge=0.0)

    # Robots
    robots_403_allow: bool = True
    robots_ttl_seconds: Optional[float] = Field(default=None, gt=0.0)

    # In-flight tracking
    inflight_ttl_seconds: float = Field(default=60.0, gt=0.0)

    # Frontier
    fairness_policy: FairnessPolicy = FairnessPolicy.SIMPLE
    rerank_period_seconds: float = Field(default=10.0, gt=0.0)
    max_queue_depth: Optional[int] = Field(default=None, ge=1)

    # Scheduling (minutes, as in the status store conventions)
    scheduler: SchedulerName = SchedulerName.DEFAULT
    default_interval_minutes: float = Field(default=1440.0, gt=0.0)
    min_refresh_interval_minutes: float = Field(default=60.0, gt=0.0)
    error_interval_minutes: float = Field(default=120.0, gt=0.0)
    max_backoff_minutes: float = Field(default=10080.0, gt=0.0)
    max_fetch_errors: int = Field(default=3, ge=1)
    hard_error_interval_minutes: float = -1.0
    custom_intervals: Dict[str, float] = Field(default_factory=dict)
    adaptive_max_interval_minutes: float = Field(default=43200.0, gt=0.0)
    adaptive_growth_factor: float = Field(default=1.5, gt=1.0)

    # Discovery
    max_depth: Optional[int] = Field(default=None, ge=0)

    # Status store puller
    pull_limit: int = Field(default=100, ge=1)
    max_per_origin: int = Field(default=5, ge=1)
    min_pull_interval_seconds: float = Field(default=5.0, ge=0.0)

    # Bulk indexing
    bulk_batch_size: int = Field(default=50, ge=1)

    user_agent: str = FetchSafetyConfig.USER_AGENT

    @field_validator("custom_intervals")
    @classmethod
    def validate_custom_intervals(cls, v: Dict[str, float]) -> Dict[str, float]:
        """Custom interval keys take the form `metadata_key=value`."""
        for key in v:
            if "=" not in key:
                raise ValueError(f"custom interval key {key!r} must look like 'key=value'")
        return v

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any] | None) -> CrawlConfig:
        """
        Build a config from an opaque key/value mapping.

        Field names and the dotted aliases in CONFIG_ALIASES are accepted.
        Keys such as `fetchInterval.isFeed=true` declare custom intervals.
        Unknown keys are ignored.
        """
        fields: dict[str, Any] = {}
        custom: dict[str, float] = {}
        for raw_key, value in (values or {}).items():
            key = str(raw_key)
            if key in cls.model_fields:
                fields[key] = value
            elif key in CONFIG_ALIASES:
                fields[CONFIG_ALIASES[key]] = value
            elif key.startswith(_CUSTOM_INTERVAL_PREFIX) and "=" in key:
                custom[key[len(_CUSTOM_INTERVAL_PREFIX):]] = float(value)
        if custom:
            merged = dict(fields.get("custom_intervals") or {})
            merged.update(custom)
            fields["custom_intervals"] = merged
        return cls.model_validate(fields)


def load_config(path: str | Path | None) -> CrawlConfig:
    """Load a JSON config file; a missing path yields defaults."""
    if path is None:
        return CrawlConfig()
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    raw = json.loads(config_path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"{config_path.name} must contain a JSON object")
    return CrawlConfig.from_mapping(raw)
