"""
Core Pydantic models for crawl-frontier.

Design principles:
- Every record crossing a component boundary is explicitly typed and validated
- Schedule records are owned by the status store; the frontier only reads them
- Deterministic serialization (metadata is a plain key -> list[str] mapping)
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Optional, Dict, List
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from core.metadata import Metadata


# ============================================================================
# Enums
# ============================================================================

class Status(str, Enum):
    """Last known status of a URL in the status store."""
    DISCOVERED = "DISCOVERED"
    FETCHED = "FETCHED"
    REDIRECTION = "REDIRECTION"
    FETCH_ERROR = "FETCH_ERROR"  # Transient, will be retried with back-off
    ERROR = "ERROR"  # Permanent


class FetchOutcome(str, Enum):
    """What happened to one unit of work, as seen by the scheduler."""
    DISCOVERED = "DISCOVERED"
    SUCCESS = "SUCCESS"
    NOT_MODIFIED = "NOT_MODIFIED"
    REDIRECTION = "REDIRECTION"
    SOFT_ERROR = "SOFT_ERROR"
    HARD_ERROR = "HARD_ERROR"
    NOT_FOUND = "NOT_FOUND"


class FetchErrorCode(str, Enum):
    """Why did a fetch fail?"""
    TIMEOUT = "TIMEOUT"
    SECURITY_BLOCKED = "SECURITY_BLOCKED"  # SSRF, IP blocklist, etc.
    FETCH_ERROR = "FETCH_ERROR"  # Network error
    BLOCKED_BY_ROBOTS = "BLOCKED_BY_ROBOTS"
    BODY_TOO_LARGE = "BODY_TOO_LARGE"
    HTTP_ERROR = "HTTP_ERROR"
    INDEX_FAILED = "INDEX_FAILED"
    CORRELATION_LOST = "CORRELATION_LOST"


_RETRYABLE_CLIENT_CODES = {408, 429}
_GONE_CODES = {404, 410}


def outcome_for_status_code(status_code: int) -> FetchOutcome:
    """Map an HTTP status code onto a scheduling outcome."""
    if status_code == 304:
        return FetchOutcome.NOT_MODIFIED
    if 200 <= status_code < 300:
        return FetchOutcome.SUCCESS
    if 300 <= status_code < 400:
        return FetchOutcome.REDIRECTION
    if status_code in _GONE_CODES:
        return FetchOutcome.NOT_FOUND
    if status_code in _RETRYABLE_CLIENT_CODES or status_code >= 500:
        return FetchOutcome.SOFT_ERROR
    return FetchOutcome.HARD_ERROR


# ============================================================================
# Frontier records
# ============================================================================

@dataclass(frozen=True, slots=True)
class QueuedURL:
    """
    One unit handed out by the frontier.

    `origin` is the partition key the URL was queued under (host by default,
    or the explicit override passed to enqueue).
    """
    url: str
    origin: str
    metadata: Metadata = field(default_factory=Metadata)


# ============================================================================
# Fetch collaborator payloads
# ============================================================================

class FetchResponse(BaseModel):
    """
    Result of one fetch through the FetchClient collaborator.

    Headers are lower-cased. 304 responses carry an empty body.
    """
    url: str
    status_code: int
    headers: Dict[str, str] = Field(default_factory=dict)
    body: bytes = b""
    latency_ms: Optional[int] = None

    @field_validator("headers")
    @classmethod
    def lowercase_headers(cls, v: Dict[str, str]) -> Dict[str, str]:
        return {str(k).lower(): str(val) for k, val in v.items()}

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


# ============================================================================
# Status store
# ============================================================================

class ScheduleRecord(BaseModel):
    """
    Persistent per-URL fetch schedule.

    next_fetch_at = None means the URL must never be refetched.
    Owned by the StatusStore; schedulers only compute new instances.
    """
    url: str
    origin: str
    status: Status = Status.DISCOVERED

    metadata: Dict[str, List[str]] = Field(default_factory=dict)

    last_fetched_at: Optional[datetime] = None
    next_fetch_at: Optional[datetime] = None
    error_count: int = Field(default=0, ge=0)

    updated_at: Optional[datetime] = None

    def metadata_bag(self) -> Metadata:
        """Return a mutable Metadata copy of the stored metadata."""
        return Metadata.from_dict(self.metadata)


# ============================================================================
# Fetch / Network Logging
# ============================================================================

class FetchLog(BaseModel):
    """
    Log entry for a single dispatched URL.
    """
    id: str = Field(default_factory=lambda: str(uuid4()))
    url: str
    origin: Optional[str] = None

    status_code: Optional[int] = None  # HTTP status
    latency_ms: Optional[int] = None  # Time to response
    bytes_received: Optional[int] = None

    outcome: Optional[FetchOutcome] = None
    error_code: Optional[FetchErrorCode] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    run_id: Optional[str] = None
