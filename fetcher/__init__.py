"""Fetcher subsystem: HTTP client with safety checks and the robots cache."""

from fetcher.http import HttpFetchClient
from fetcher.logging import emit_fetch_log, fetch_log_to_dict
from fetcher.robots import RobotRules, RobotsCache

__all__ = [
    "HttpFetchClient",
    "emit_fetch_log",
    "fetch_log_to_dict",
    "RobotRules",
    "RobotsCache",
]
