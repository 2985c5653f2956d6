"""Outlink and visible-text extraction from fetched HTML pages."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from html.parser import HTMLParser

from core.models import FetchResponse
from core.pipeline import LinkExtractor
from quality.urlnorm import resolve_url


_HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")
_SKIP_TAGS = {"script", "style", "noscript", "template"}
_BLOCK_TAGS = {"p", "br", "li", "div", "section", "article", "h1", "h2", "h3"}


@dataclass(slots=True)
class ParsedPage:
    """Links and readable text of one HTML page."""

    url: str
    title: str | None = None
    text: str = ""
    links: list[str] = field(default_factory=list)
    refresh_url: str | None = None
    robots_nofollow: bool = False


class _PageCollector(HTMLParser):
    """Collect hrefs, <base>, meta refresh/robots, title and visible text."""

    def __init__(self, follow_nofollow: bool) -> None:
        super().__init__(convert_charrefs=True)
        self.follow_nofollow = follow_nofollow
        self.base_href: str | None = None
        self.hrefs: list[str] = []
        self.refresh: str | None = None
        self.meta_robots: str = ""
        self._title_chunks: list[str] = []
        self._in_title = False
        self._in_head = False
        self._skip_depth = 0
        self._chunks: list[str] = []

    @property
    def title(self) -> str | None:
        title = " ".join("".join(self._title_chunks).split())
        return title or None

    @property
    def text(self) -> str:
        return _normalize_whitespace("".join(self._chunks))

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        tag_lower = tag.lower()
        attributes = {name.lower(): (value or "") for name, value in attrs}

        if tag_lower == "head":
            self._in_head = True
        elif tag_lower == "title":
            self._in_title = True
        elif tag_lower == "base" and self.base_href is None and attributes.get("href"):
            self.base_href = attributes["href"]
        elif tag_lower == "meta":
            http_equiv = attributes.get("http-equiv", "").lower()
            name = attributes.get("name", "").lower()
            if http_equiv == "refresh":
                self.refresh = attributes.get("content")
            elif name == "robots":
                self.meta_robots = attributes.get("content", "").lower()
        elif tag_lower in {"a", "area"} and attributes.get("href"):
            rel = attributes.get("rel", "").lower().split()
            if "nofollow" not in rel or self.follow_nofollow:
                self.hrefs.append(attributes["href"])
        elif tag_lower in {"frame", "iframe"} and attributes.get("src"):
            self.hrefs.append(attributes["src"])

        if tag_lower in _SKIP_TAGS:
            self._skip_depth += 1
        elif tag_lower in _BLOCK_TAGS:
            self._chunks.append("\n")

    def handle_endtag(self, tag: str) -> None:
        tag_lower = tag.lower()
        if tag_lower == "head":
            self._in_head = False
        elif tag_lower == "title":
            self._in_title = False
        elif tag_lower in _SKIP_TAGS and self._skip_depth > 0:
            self._skip_depth -= 1
        elif tag_lower in _BLOCK_TAGS:
            self._chunks.append("\n")

    def handle_data(self, data: str) -> None:
        if self._in_title:
            self._title_chunks.append(data)
            return
        if self._in_head or self._skip_depth > 0:
            return
        if data.strip():
            self._chunks.append(data)
            self._chunks.append(" ")


def _normalize_whitespace(value: str) -> str:
    """Collapse whitespace while preserving paragraph breaks."""
    normalized_lines: list[str] = []
    for line in value.splitlines():
        compact = " ".join(line.split())
        if compact:
            normalized_lines.append(compact)
    return "\n\n".join(normalized_lines)


def _extract_refresh_target(content: str | None) -> str | None:
    """`0;URL=http://example.com/next` -> `http://example.com/next`."""
    if not content:
        return None
    index = content.lower().find("url=")
    if index == -1:
        return None
    target = content[index + 4:].strip().strip("'\"")
    return target or None


def decode_body(response: FetchResponse) -> str:
    """Decode body bytes using response charset hints with safe fallback."""
    if not response.body:
        return ""

    content_type = response.headers.get("content-type", "")
    charset_match = re.search(r"charset=([a-zA-Z0-9._-]+)", content_type)
    encodings = []
    if charset_match:
        encodings.append(charset_match.group(1))
    encodings.extend(["utf-8", "latin-1"])

    for encoding in encodings:
        try:
            return response.body.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue

    return response.body.decode("utf-8", errors="replace")


def is_html(response: FetchResponse) -> bool:
    content_type = response.headers.get("content-type", "").split(";", 1)[0].strip().lower()
    return not content_type or content_type in _HTML_CONTENT_TYPES


def parse_page(url: str, html_text: str, follow_nofollow: bool = False) -> ParsedPage:
    """Parse HTML into normalized absolute outlinks, title and visible text."""
    collector = _PageCollector(follow_nofollow=follow_nofollow)
    collector.feed(html_text)
    collector.close()

    nofollow = "nofollow" in collector.meta_robots or "none" in collector.meta_robots
    base = resolve_url(url, collector.base_href) if collector.base_href else None
    base = base or url

    links: list[str] = []
    seen: set[str] = set()
    if not nofollow or follow_nofollow:
        for href in collector.hrefs:
            if href.strip().lower().startswith(("javascript:", "mailto:", "tel:", "#")):
                continue
            resolved = resolve_url(base, href)
            if resolved and resolved not in seen:
                seen.add(resolved)
                links.append(resolved)

    refresh_target = _extract_refresh_target(collector.refresh)
    refresh_url = resolve_url(base, refresh_target) if refresh_target else None
    if refresh_url and refresh_url not in seen:
        links.append(refresh_url)

    return ParsedPage(
        url=url,
        title=collector.title,
        text=collector.text,
        links=links,
        refresh_url=refresh_url,
        robots_nofollow=nofollow,
    )


class HtmlLinkExtractor(LinkExtractor):
    """LinkExtractor for HTML responses; non-HTML content yields no links."""

    def __init__(self, follow_nofollow: bool = False) -> None:
        self.follow_nofollow = follow_nofollow

    def parse(self, url: str, response: FetchResponse) -> ParsedPage:
        if not is_html(response):
            return ParsedPage(url=url)
        return parse_page(url, decode_body(response), follow_nofollow=self.follow_nofollow)

    def extract(self, url: str, response: FetchResponse) -> list[str]:
        return self.parse(url, response).links
