"""
Shared pytest fixtures and configuration for crawl-frontier tests.
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from pathlib import Path

import pytest

from core.models import FetchErrorCode, FetchResponse
from core.pipeline import FetchClient, TransportError
from storage.memory import MemoryStatusStore


# ============================================================================
# Fakes
# ============================================================================

class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedFetchClient(FetchClient):
    """
    FetchClient answering from per-URL scripts.

    A script item is a FetchResponse, an int status code, or an exception to
    raise. The last item of a script is repeated once the script runs out.
    Unknown URLs raise TransportError.
    """

    def __init__(self, scripts: dict[str, list[object]] | None = None) -> None:
        self.scripts = {url: list(items) for url, items in (scripts or {}).items()}
        self.calls: list[tuple[str, dict[str, str]]] = []
        self._lock = threading.Lock()

    def add(self, url: str, *items: object) -> None:
        self.scripts.setdefault(url, []).extend(items)

    def fetch(self, url, conditional_headers=None):
        with self._lock:
            self.calls.append((url, dict(conditional_headers or {})))
            script = self.scripts.get(url)
            if not script:
                raise TransportError(FetchErrorCode.FETCH_ERROR, f"no script for {url}")
            item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, int):
            return FetchResponse(url=url, status_code=item)
        return item

    def calls_for(self, url: str) -> int:
        return sum(1 for called, _ in self.calls if called == url)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def fetch_client() -> ScriptedFetchClient:
    return ScriptedFetchClient()


@pytest.fixture
def memory_store() -> MemoryStatusStore:
    return MemoryStatusStore()


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary SQLite database path."""
    return tmp_path / "crawl.db"


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "contract: contract schema compliance tests")
    config.addinivalue_line("markers", "integration: end-to-end integration tests")
    config.addinivalue_line("markers", "unit: unit tests")
