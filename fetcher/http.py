"""HTTP fetch client with SSRF protections, body limits and conditional requests."""

from __future__ import annotations

import socket
import time
from ipaddress import ip_address, ip_network
from typing import Iterable, Mapping
from urllib.parse import urlparse

import requests

from core.config import FetchSafetyConfig
from core.models import FetchErrorCode, FetchResponse
from core.pipeline import FetchClient, TransportError


class BodyLimitExceeded(Exception):
    """Raised when response body exceeds configured limits."""


def _blocked_networks() -> list:
    """Build blocked network list from fetch safety config."""
    return [ip_network(cidr, strict=False) for cidr in FetchSafetyConfig.BLOCKED_IP_RANGES]


def _resolve_ip_addresses(hostname: str) -> set[str]:
    """Resolve hostname to a set of IP addresses."""
    try:
        infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    except socket.gaierror:
        return set()
    return {item[4][0] for item in infos}


def _is_blocked_ip(ip_text: str, blocked_networks: Iterable) -> bool:
    """Check if an IP is inside blocked ranges."""
    ip_obj = ip_address(ip_text.split("%", 1)[0])
    return any(ip_obj in network for network in blocked_networks)


def _validate_url_scheme(url: str) -> bool:
    """Validate that URL uses allowed protocols."""
    parsed = urlparse(url)
    return parsed.scheme.lower() in FetchSafetyConfig.ALLOWED_PROTOCOLS


def _content_limit_for_response(content_type: str | None) -> int:
    """Compute byte limit for a response content-type."""
    if not content_type:
        return FetchSafetyConfig.MAX_BODY_BYTES_DEFAULT
    normalized = content_type.split(";", 1)[0].strip().lower()
    return FetchSafetyConfig.MAX_BODY_BYTES_BY_TYPE.get(
        normalized,
        FetchSafetyConfig.MAX_BODY_BYTES_DEFAULT,
    )


def _read_body_with_limit(response: requests.Response, max_bytes: int) -> bytes:
    """Read response body up to the configured maximum size."""
    if max_bytes == 0:
        raise BodyLimitExceeded("content type is disabled by policy")

    chunks: list[bytes] = []
    total = 0
    for chunk in response.iter_content(chunk_size=8192):
        if not chunk:
            continue
        total += len(chunk)
        if total > max_bytes:
            raise BodyLimitExceeded(f"response exceeds {max_bytes} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


class HttpFetchClient(FetchClient):
    """
    FetchClient backed by a requests.Session.

    Redirects are never followed: a 3xx comes back as a FetchResponse with
    its Location header so the caller decides what to do with the target.
    Any failure that leaves no status code raises TransportError.
    """

    def __init__(
        self,
        user_agent: str = FetchSafetyConfig.USER_AGENT,
        timeout_seconds: int = FetchSafetyConfig.FETCH_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
        check_ip_ranges: bool = True,
    ) -> None:
        """Initialize session and safety policy."""
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds
        self.check_ip_ranges = check_ip_ranges
        self._session = session or requests.Session()
        self._blocked_networks = _blocked_networks()

    def fetch(
        self,
        url: str,
        conditional_headers: Mapping[str, str] | None = None,
    ) -> FetchResponse:
        start = time.monotonic()

        if not _validate_url_scheme(url):
            raise TransportError(FetchErrorCode.SECURITY_BLOCKED, f"protocol not allowed: {url}")

        hostname = urlparse(url).hostname or ""
        if not hostname:
            raise TransportError(FetchErrorCode.FETCH_ERROR, f"missing host: {url}")

        if self.check_ip_ranges:
            resolved_ips = _resolve_ip_addresses(hostname)
            if any(_is_blocked_ip(ip_text, self._blocked_networks) for ip_text in resolved_ips):
                raise TransportError(FetchErrorCode.SECURITY_BLOCKED, f"blocked IP range: {hostname}")

        headers = {"User-Agent": self.user_agent}
        if conditional_headers:
            headers.update(conditional_headers)

        try:
            response = self._session.get(
                url,
                headers=headers,
                timeout=self.timeout_seconds,
                allow_redirects=False,
                stream=True,
            )
        except requests.Timeout as exc:
            raise TransportError(FetchErrorCode.TIMEOUT, str(exc)) from exc
        except requests.RequestException as exc:
            raise TransportError(FetchErrorCode.FETCH_ERROR, str(exc)) from exc

        try:
            response_headers = {k.lower(): v for k, v in response.headers.items()}
            if response.status_code == 304 or 300 <= response.status_code < 400:
                body = b""
            else:
                content_limit = _content_limit_for_response(response_headers.get("content-type"))
                body = _read_body_with_limit(response, content_limit)
        except BodyLimitExceeded as exc:
            raise TransportError(FetchErrorCode.BODY_TOO_LARGE, str(exc)) from exc
        except requests.Timeout as exc:
            raise TransportError(FetchErrorCode.TIMEOUT, str(exc)) from exc
        except requests.RequestException as exc:
            raise TransportError(FetchErrorCode.FETCH_ERROR, str(exc)) from exc
        finally:
            response.close()

        return FetchResponse(
            url=url,
            status_code=response.status_code,
            headers=response_headers,
            body=body,
            latency_ms=int((time.monotonic() - start) * 1000),
        )

    def close(self) -> None:
        self._session.close()
