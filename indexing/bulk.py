"""
Batched document indexing with tracked acknowledgments.

Every document added to the BulkIndexer is registered in an InFlightTracker
under its document id before it is buffered. When the sink answers, the
per-id results are routed back through `resolve_many`; documents whose
outcome never arrives are evicted by the tracker and reported as failed with
CorrelationLost, so no unit of work disappears silently.
"""

from __future__ import annotations

import hashlib
import json
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Hashable, Sequence

import jsonschema

from core.counters import CrawlCounters
from core.metadata import Metadata
from core.pipeline import BulkItemResult, BulkSink
from core.structured_logging import emit_json_event
from frontier.inflight import CorrelationLost, InFlightTracker


SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"
DOCUMENT_SCHEMA = json.loads((SCHEMAS_DIR / "document.schema.json").read_text(encoding="utf-8"))


class BulkItemFailed(Exception):
    """The sink reported a failure for one document."""

    def __init__(self, doc_id: str, message: str | None, permanent: bool) -> None:
        super().__init__(message or f"indexing failed for {doc_id}")
        self.doc_id = doc_id
        self.permanent = permanent


class BulkBatchFailed(Exception):
    """The sink raised while sending a whole batch."""


SuccessCallback = Callable[[Any], None]
FailureCallback = Callable[[Any, Exception, bool], None]


def document_id(url: str) -> str:
    """Stable document id: SHA-256 hex digest of the URL."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


class BulkIndexer:
    """
    Buffer documents, send them in batches, and route outcomes to callbacks.

    `on_success(unit)` fires when the sink acknowledged the document.
    `on_failure(unit, error, permanent)` fires when the sink rejected it
    (`permanent` for invalid content), when the batch raised, or when the
    tracker evicted it without an outcome.
    """

    def __init__(
        self,
        sink: BulkSink,
        on_success: SuccessCallback,
        on_failure: FailureCallback,
        batch_size: int = 50,
        ttl_seconds: float = 60.0,
        clock_fn: Callable[[], float] | None = None,
        counters: CrawlCounters | None = None,
        run_id: str | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.sink = sink
        self.batch_size = batch_size
        self.run_id = run_id
        self.counters = counters or CrawlCounters()
        self._on_success = on_success
        self._on_failure = on_failure
        self._lock = threading.Lock()
        self._buffer: list[tuple[str, dict[str, Any]]] = []
        self.tracker: InFlightTracker[Any] = InFlightTracker(
            ttl_seconds,
            on_evict=self._on_evicted,
            clock_fn=clock_fn,
            run_id=run_id,
        )

    def add(
        self,
        url: str,
        origin: str,
        metadata: Metadata,
        content: str,
        unit: Any,
        title: str | None = None,
    ) -> str:
        """Register and buffer one document; flushes when the batch is full."""
        doc_id = document_id(url)
        document = {
            "id": doc_id,
            "url": url,
            "origin": origin,
            "title": title,
            "content": content,
            "metadata": metadata.to_dict(),
            "indexed_at": datetime.now(UTC).isoformat(),
        }
        self.tracker.register(doc_id, unit)
        with self._lock:
            self._buffer.append((doc_id, document))
            full = len(self._buffer) >= self.batch_size
        if full:
            self.flush()
        return doc_id

    def flush(self) -> int:
        """
        Send buffered documents now; returns the batch size sent.

        Each unit's callback is guarded: a raising `on_success` turns into a
        retryable `on_failure` for that unit, and the remaining units are
        still delivered. If an `on_failure` itself raises, the first such
        error is re-raised once every unit has been handled.
        """
        with self._lock:
            batch, self._buffer = self._buffer, []
        if not batch:
            self.tracker.evict_expired()
            return 0

        try:
            results = self.sink.send(batch)
        except Exception as exc:
            self._fail_batch(batch, exc)
            return len(batch)

        resolved = self.tracker.resolve_many(results.keys())
        acked = failed = 0
        errors: list[Exception] = []
        for doc_id, units in resolved.items():
            item_results = results.get(doc_id) or []
            # duplicates of one id in a response: any ack wins
            if any(item.ok or item.conflict for item in item_results):
                for unit in units:
                    if self._succeed(doc_id, unit, errors):
                        acked += 1
                    else:
                        failed += 1
                continue
            error = _item_error(doc_id, item_results)
            for unit in units:
                self._fail(doc_id, unit, error, error.permanent, errors)
            failed += len(units)

        self.counters.incr("indexed", acked)
        self.counters.incr("index_failed", failed)
        emit_json_event(
            "bulk_flush",
            run_id=self.run_id,
            component="indexing",
            batch_size=len(batch),
            acked=acked,
            failed=failed,
            unresolved=len({doc_id for doc_id, _ in batch} - set(resolved)),
        )
        if errors:
            raise errors[0]
        return len(batch)

    def pending(self) -> int:
        """Documents registered but without an outcome yet."""
        return len(self.tracker)

    def buffered(self) -> int:
        return len(self._buffer)

    def close(self) -> None:
        self.flush()
        self.sink.close()

    def _succeed(self, doc_id: str, unit: Any, errors: list[Exception]) -> bool:
        try:
            self._on_success(unit)
        except Exception as exc:
            self._callback_failed(doc_id, "on_success", exc)
            self._fail(doc_id, unit, exc, False, errors)
            return False
        return True

    def _fail(
        self,
        doc_id: Hashable,
        unit: Any,
        error: Exception,
        permanent: bool,
        errors: list[Exception],
    ) -> None:
        try:
            self._on_failure(unit, error, permanent)
        except Exception as exc:
            self._callback_failed(doc_id, "on_failure", exc)
            errors.append(exc)

    def _callback_failed(self, doc_id: Hashable, callback: str, exc: Exception) -> None:
        emit_json_event(
            "bulk_callback_failed",
            run_id=self.run_id,
            level="error",
            component="indexing",
            doc_id=str(doc_id),
            callback=callback,
            error_type=type(exc).__name__,
            error=str(exc),
        )

    def _fail_batch(self, batch: Sequence[tuple[str, dict[str, Any]]], exc: Exception) -> None:
        resolved = self.tracker.resolve_many(doc_id for doc_id, _ in batch)
        error = BulkBatchFailed(f"bulk request failed: {exc}")
        errors: list[Exception] = []
        count = 0
        for doc_id, units in resolved.items():
            for unit in units:
                self._fail(doc_id, unit, error, False, errors)
                count += 1
        self.counters.incr("index_failed", count)
        emit_json_event(
            "bulk_failed",
            run_id=self.run_id,
            level="error",
            component="indexing",
            batch_size=len(batch),
            failed=count,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        if errors:
            raise errors[0]

    def _on_evicted(self, token: Hashable, units: list[Any]) -> None:
        error = CorrelationLost(token)
        errors: list[Exception] = []
        for unit in units:
            self._fail(token, unit, error, False, errors)
        self.counters.incr("evicted", len(units))
        if errors:
            raise errors[0]


def _item_error(doc_id: str, results: Sequence[BulkItemResult]) -> BulkItemFailed:
    invalid = [item for item in results if item.invalid]
    source = invalid[0] if invalid else (results[0] if results else None)
    message = source.message if source is not None else None
    return BulkItemFailed(doc_id, message, permanent=bool(invalid))


class JsonlBulkSink(BulkSink):
    """Validate documents against document.schema.json and append them to a JSONL file."""

    def __init__(self, output_path: str | Path, schema: dict[str, Any] | None = None) -> None:
        self.output_path = Path(output_path)
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        self.schema = schema or DOCUMENT_SCHEMA
        self._lock = threading.Lock()

    def send(self, batch: Sequence[tuple[str, dict]]) -> dict[str, list[BulkItemResult]]:
        results: dict[str, list[BulkItemResult]] = {}
        lines: list[str] = []
        with self._lock:
            for doc_id, document in batch:
                try:
                    jsonschema.validate(document, self.schema)
                except jsonschema.ValidationError as exc:
                    result = BulkItemResult(ok=False, invalid=True, message=exc.message)
                else:
                    lines.append(json.dumps(document, ensure_ascii=False, sort_keys=True))
                    result = BulkItemResult(ok=True)
                results.setdefault(doc_id, []).append(result)
            if lines:
                with self.output_path.open("a", encoding="utf-8") as handle:
                    handle.write("\n".join(lines) + "\n")
        return results
