"""URL normalization and partition-key helpers."""

from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit


_REMOVABLE_QUERY_PARAMS = {
    "session",
    "sessionid",
    "sid",
    "phpsessid",
    "jsessionid",
}

_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url(url: str) -> str:
    """
    Normalize a URL for frontier deduplication.

    Rules:
    - Lowercase scheme and host, drop default ports
    - Remove fragment
    - Sort query params, drop `utm_*` and common session-id params
    - Empty path becomes "/"

    Path case and scheme are preserved; they select different resources.
    Non-http(s) URLs are returned stripped but otherwise untouched.
    """
    parsed = urlsplit(url.strip())
    scheme = parsed.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        return url.strip()

    hostname = (parsed.hostname or "").lower()
    try:
        port = parsed.port
    except ValueError:
        return url.strip()
    netloc = hostname if port in (None, _DEFAULT_PORTS[scheme]) else f"{hostname}:{port}"

    path = parsed.path or "/"
    if not path.startswith("/"):
        path = "/" + path

    query_pairs = parse_qsl(parsed.query, keep_blank_values=True)
    filtered_pairs = []
    for key, value in query_pairs:
        key_lower = key.lower()
        if key_lower.startswith("utm_"):
            continue
        if key_lower in _REMOVABLE_QUERY_PARAMS:
            continue
        filtered_pairs.append((key, value))
    filtered_pairs.sort(key=lambda item: (item[0], item[1]))
    query = urlencode(filtered_pairs, doseq=True)

    return urlunsplit((scheme, netloc, path, query, ""))


def resolve_url(base_url: str, link: str) -> str | None:
    """Resolve `link` against `base_url`; None for non-http(s) targets."""
    try:
        absolute = urljoin(base_url, link.strip())
    except ValueError:
        return None
    if urlsplit(absolute).scheme.lower() not in _DEFAULT_PORTS:
        return None
    return normalize_url(absolute)


def origin_key(url: str) -> str:
    """Default partition key: the lower-cased host; empty string when missing."""
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def robots_key(url: str) -> tuple[str, str, int]:
    """Robots cache key: (scheme, host, port) with default ports filled in."""
    parsed = urlsplit(url)
    scheme = (parsed.scheme or "http").lower()
    host = (parsed.hostname or "").lower()
    try:
        port = parsed.port
    except ValueError:
        port = None
    if port is None:
        port = _DEFAULT_PORTS.get(scheme, -1)
    return scheme, host, port


def robots_url_for(url: str) -> str:
    """Location of robots.txt for the origin of `url`."""
    scheme, host, port = robots_key(url)
    if ":" in host:
        host = f"[{host}]"
    netloc = host if port == _DEFAULT_PORTS.get(scheme) else f"{host}:{port}"
    return f"{scheme}://{netloc}/robots.txt"
