"""Parser package: outlinks and readable text from fetched HTML."""

from parser.links import HtmlLinkExtractor, ParsedPage, parse_page

__all__ = ["HtmlLinkExtractor", "ParsedPage", "parse_page"]
