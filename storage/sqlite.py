"""SQLite persistence for URL schedule records and fetch logs."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterator

from core.models import FetchLog, ScheduleRecord, Status
from core.pipeline import StatusStore
from core.structured_logging import emit_json_event


MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def _to_db_timestamp(value: datetime | None) -> str | None:
    """Fixed-width UTC text so that string order equals time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(_TIMESTAMP_FORMAT)


def _parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse ISO datetime string into datetime, preserving None."""
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _load_metadata(raw: str | None, url: str) -> dict[str, list[str]]:
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        emit_json_event(
            event_type="storage_metadata_json_error",
            run_id=None,
            level="warning",
            component="storage",
            url=url,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return {}
    if not isinstance(payload, dict):
        return {}
    return {str(key): [str(v) for v in values] for key, values in payload.items() if values}


def _row_to_record(row: sqlite3.Row) -> ScheduleRecord:
    return ScheduleRecord(
        url=row["url"],
        origin=row["origin"],
        status=Status(row["status"]),
        metadata=_load_metadata(row["metadata"], row["url"]),
        last_fetched_at=_parse_iso_datetime(row["last_fetched_at"]),
        next_fetch_at=_parse_iso_datetime(row["next_fetch_at"]),
        error_count=row["error_count"],
        updated_at=_parse_iso_datetime(row["updated_at"]),
    )


class SQLiteStatusStore(StatusStore):
    """Persist schedule records and fetch logs to SQLite."""

    def __init__(self, db_path: str | Path, initialize: bool = True) -> None:
        """Initialize store and optionally apply the schema."""
        self.db_path = Path(db_path)
        if initialize:
            self.initialize_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(self.db_path, timeout=30)
        connection.row_factory = sqlite3.Row
        try:
            yield connection
            connection.commit()
        finally:
            connection.close()

    def initialize_schema(self) -> None:
        """Apply the initial migration (idempotent)."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        sql = (MIGRATIONS_DIR / "0001_init.sql").read_text(encoding="utf-8")
        with self._connect() as connection:
            connection.executescript(sql)

    def get(self, url: str) -> ScheduleRecord | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT * FROM url_status WHERE url = ?",
                (url,),
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def upsert(self, record: ScheduleRecord) -> None:
        """Insert or replace the record for `record.url`."""
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO url_status (
                    url,
                    origin,
                    status,
                    metadata,
                    last_fetched_at,
                    next_fetch_at,
                    error_count,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(url) DO UPDATE SET
                    origin = excluded.origin,
                    status = excluded.status,
                    metadata = excluded.metadata,
                    last_fetched_at = excluded.last_fetched_at,
                    next_fetch_at = excluded.next_fetch_at,
                    error_count = excluded.error_count,
                    updated_at = excluded.updated_at
                """,
                self._record_params(record),
            )

    def insert_if_absent(self, record: ScheduleRecord) -> bool:
        """Insert unless the URL already exists. Returns True on insert."""
        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT OR IGNORE INTO url_status (
                    url,
                    origin,
                    status,
                    metadata,
                    last_fetched_at,
                    next_fetch_at,
                    error_count,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._record_params(record),
            )
            return cursor.rowcount > 0

    def due(self, now: datetime, limit: int, max_per_origin: int) -> list[ScheduleRecord]:
        """Earliest due URLs, at most `max_per_origin` per origin, grouped by origin."""
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT * FROM (
                    SELECT
                        *,
                        ROW_NUMBER() OVER (
                            PARTITION BY origin ORDER BY next_fetch_at, url
                        ) AS ranking
                    FROM url_status
                    WHERE next_fetch_at IS NOT NULL AND next_fetch_at <= ?
                )
                WHERE ranking <= ?
                ORDER BY origin, ranking
                LIMIT ?
                """,
                (_to_db_timestamp(now), max_per_origin, limit),
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT status, COUNT(*) AS n FROM url_status GROUP BY status"
            ).fetchall()
        return {str(row["status"]): int(row["n"]) for row in rows}

    def save_fetch_log(self, fetch_log: FetchLog) -> None:
        """Insert one fetch_log row."""
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO fetch_log (
                    id,
                    url,
                    origin,
                    status_code,
                    latency_ms,
                    bytes_received,
                    outcome,
                    error_code,
                    created_at,
                    run_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    fetch_log.id,
                    fetch_log.url,
                    fetch_log.origin,
                    fetch_log.status_code,
                    fetch_log.latency_ms,
                    fetch_log.bytes_received,
                    fetch_log.outcome.value if fetch_log.outcome else None,
                    fetch_log.error_code.value if fetch_log.error_code else None,
                    fetch_log.created_at.isoformat(),
                    fetch_log.run_id,
                ),
            )

    def count_fetch_logs(self, run_id: str | None = None) -> int:
        with self._connect() as connection:
            if run_id is None:
                row = connection.execute("SELECT COUNT(*) AS n FROM fetch_log").fetchone()
            else:
                row = connection.execute(
                    "SELECT COUNT(*) AS n FROM fetch_log WHERE run_id = ?",
                    (run_id,),
                ).fetchone()
        return int(row["n"])

    @staticmethod
    def _record_params(record: ScheduleRecord) -> tuple:
        return (
            record.url,
            record.origin,
            record.status.value,
            json.dumps(record.metadata, ensure_ascii=True, sort_keys=True),
            _to_db_timestamp(record.last_fetched_at),
            _to_db_timestamp(record.next_fetch_at),
            record.error_count,
            _to_db_timestamp(record.updated_at),
        )
