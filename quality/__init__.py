"""Quality utilities: URL normalization and partition keys."""

from quality.urlnorm import normalize_url, origin_key, resolve_url, robots_key, robots_url_for

__all__ = ["normalize_url", "origin_key", "resolve_url", "robots_key", "robots_url_for"]
