"""
Collaborator interfaces for crawl-frontier.

The frontier core talks to the outside world through four seams:

  FetchClient   - download one URL (also used for robots.txt)
  LinkExtractor - turn a fetched page into outlinks
  StatusStore   - persist per-URL schedule records
  BulkSink      - asynchronous batched document sink (index/store)

Implementations live in fetcher/, parser/, storage/ and indexing/.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional, Sequence

from core.models import FetchErrorCode, FetchResponse, ScheduleRecord


# ============================================================================
# Errors
# ============================================================================

class TransportError(Exception):
    """Raised by a FetchClient when no HTTP response could be obtained."""

    def __init__(self, error_code: FetchErrorCode, message: str = "") -> None:
        super().__init__(message or error_code.value)
        self.error_code = error_code


# ============================================================================
# Fetch
# ============================================================================

class FetchClient(ABC):
    """
    Fetch collaborator: download a single URL without following redirects.

    Responsibilities:
    - Pass conditional headers (If-None-Match / If-Modified-Since) through
    - Enforce timeouts and body limits
    - Raise TransportError when no status code is available
    """

    @abstractmethod
    def fetch(
        self,
        url: str,
        conditional_headers: Optional[Mapping[str, str]] = None,
    ) -> FetchResponse:
        """
        Fetch a single URL.

        Args:
            url: Absolute URL to fetch
            conditional_headers: Extra request headers from prior schedule metadata

        Returns:
            FetchResponse for any HTTP status code (3xx included)

        Raises:
            TransportError: DNS, connection, timeout or policy failures
        """
        pass


class LinkExtractor(ABC):
    """Parse collaborator: extract absolute outlinks from a fetched page."""

    @abstractmethod
    def extract(self, url: str, response: FetchResponse) -> list[str]:
        pass


# ============================================================================
# Status store
# ============================================================================

class StatusStore(ABC):
    """
    Persistent home of ScheduleRecords.

    Minimal contract: get + upsert. The puller additionally needs `due`, and
    discovery needs an insert that never overwrites an existing record.
    """

    @abstractmethod
    def get(self, url: str) -> Optional[ScheduleRecord]:
        pass

    @abstractmethod
    def upsert(self, record: ScheduleRecord) -> None:
        pass

    def insert_if_absent(self, record: ScheduleRecord) -> bool:
        """Insert `record` unless the URL is already known. Returns True on insert."""
        if self.get(record.url) is not None:
            return False
        self.upsert(record)
        return True

    @abstractmethod
    def due(
        self,
        now: datetime,
        limit: int,
        max_per_origin: int,
    ) -> list[ScheduleRecord]:
        """
        Return records whose next_fetch_at <= now.

        At most `max_per_origin` records per origin (earliest first) and at
        most `limit` overall, grouped by origin.
        """
        pass


# ============================================================================
# Bulk sink
# ============================================================================

@dataclass(frozen=True, slots=True)
class BulkItemResult:
    """Outcome of one document in a bulk request."""

    ok: bool
    invalid: bool = False  # content rejected permanently (bad request)
    conflict: bool = False  # document already present; counts as ok
    message: Optional[str] = None


class BulkSink(ABC):
    """
    Batched document sink.

    `send` receives (token, document) pairs and returns one result per token.
    Tokens missing from the result are left pending in the caller's tracker.
    Raising means the whole batch failed.
    """

    @abstractmethod
    def send(self, batch: Sequence[tuple[str, dict]]) -> dict[str, list[BulkItemResult]]:
        pass

    def close(self) -> None:
        return None
