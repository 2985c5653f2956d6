"""In-process status store for tests and single-run crawls."""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import UTC, datetime

from core.models import ScheduleRecord
from core.pipeline import StatusStore


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


class MemoryStatusStore(StatusStore):
    """Dict-backed StatusStore; records are copied on the way in and out."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, ScheduleRecord] = {}

    def get(self, url: str) -> ScheduleRecord | None:
        with self._lock:
            record = self._records.get(url)
        return record.model_copy(deep=True) if record is not None else None

    def upsert(self, record: ScheduleRecord) -> None:
        with self._lock:
            self._records[record.url] = record.model_copy(deep=True)

    def insert_if_absent(self, record: ScheduleRecord) -> bool:
        with self._lock:
            if record.url in self._records:
                return False
            self._records[record.url] = record.model_copy(deep=True)
            return True

    def due(self, now: datetime, limit: int, max_per_origin: int) -> list[ScheduleRecord]:
        cutoff = _as_utc(now)
        with self._lock:
            candidates = [
                record for record in self._records.values()
                if record.next_fetch_at is not None and _as_utc(record.next_fetch_at) <= cutoff
            ]
        by_origin: dict[str, list[ScheduleRecord]] = defaultdict(list)
        for record in sorted(candidates, key=lambda r: (_as_utc(r.next_fetch_at), r.url)):
            if len(by_origin[record.origin]) < max_per_origin:
                by_origin[record.origin].append(record)
        ordered = [record for origin in sorted(by_origin) for record in by_origin[origin]]
        return [record.model_copy(deep=True) for record in ordered[:limit]]

    def all_records(self) -> list[ScheduleRecord]:
        with self._lock:
            return [record.model_copy(deep=True) for record in self._records.values()]

    def __len__(self) -> int:
        return len(self._records)
