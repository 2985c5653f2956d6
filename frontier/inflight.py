"""Time-bounded correlation of asynchronous outcomes with the work that caused them."""

from __future__ import annotations

import time
from typing import Callable, Generic, Hashable, Iterable, TypeVar

from core.locks import FairLock
from core.structured_logging import emit_json_event


T = TypeVar("T")


class CorrelationLost(Exception):
    """An asynchronous outcome never arrived for a token before its TTL ran out."""

    def __init__(self, token: Hashable) -> None:
        super().__init__(f"no outcome observed for {token!r} before expiry")
        self.token = token


class InFlightTracker(Generic[T]):
    """
    Map correlation tokens to the work units waiting on the same outcome.

    A token present in the tracker means "outcome not yet observed". Entries
    expire `ttl_seconds` after the last `register` for the token; expired
    entries are handed to `on_evict` (token, units), and the caller must treat
    every such unit as failed.

    Expiry is swept lazily on every mutating call and by `evict_expired`. A
    resolve sweeps first: an outcome that takes the lock before the TTL runs
    out wins, one that arrives later finds the token already evicted.
    All mutations go through one FIFO `FairLock`; callbacks run outside it.
    """

    def __init__(
        self,
        ttl_seconds: float,
        on_evict: Callable[[Hashable, list[T]], None] | None = None,
        clock_fn: Callable[[], float] | None = None,
        run_id: str | None = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self.ttl_seconds = ttl_seconds
        self.run_id = run_id
        self._on_evict = on_evict
        self._clock = clock_fn or time.monotonic
        self._lock = FairLock()
        # token -> (units, last touch); dict order tracks touch order
        self._entries: dict[Hashable, tuple[list[T], float]] = {}

    def register(self, token: Hashable, unit: T) -> None:
        """Attach `unit` to `token` and refresh the token's expiry."""
        with self._lock:
            now = self._clock()
            expired = self._sweep_locked(now)
            entry = self._entries.pop(token, None)
            units = entry[0] if entry is not None else []
            units.append(unit)
            self._entries[token] = (units, now)
        self._notify(expired)

    def resolve(self, token: Hashable) -> list[T] | None:
        """Remove and return the units of `token`, or None if it is unknown."""
        with self._lock:
            expired = self._sweep_locked(self._clock())
            entry = self._entries.pop(token, None)
        self._notify(expired)
        return entry[0] if entry is not None else None

    def resolve_many(self, tokens: Iterable[Hashable]) -> dict[Hashable, list[T]]:
        """Batched `resolve`; unknown tokens are absent from the result."""
        with self._lock:
            expired = self._sweep_locked(self._clock())
            found: dict[Hashable, list[T]] = {}
            for token in tokens:
                entry = self._entries.pop(token, None)
                if entry is not None:
                    found[token] = entry[0]
        self._notify(expired)
        return found

    def invalidate(self, token: Hashable) -> list[T] | None:
        """Drop `token` without an outcome and without firing the eviction callback."""
        with self._lock:
            entry = self._entries.pop(token, None)
        return entry[0] if entry is not None else None

    def evict_expired(self) -> int:
        """Evict every expired token now; returns the number evicted."""
        with self._lock:
            expired = self._sweep_locked(self._clock())
        self._notify(expired)
        return len(expired)

    def tokens(self) -> list[Hashable]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, token: object) -> bool:
        return token in self._entries

    def _sweep_locked(self, now: float) -> list[tuple[Hashable, list[T]]]:
        expired = []
        for token, (units, touched_at) in self._entries.items():
            if now - touched_at < self.ttl_seconds:
                # touch order == insertion order, so the rest is younger
                break
            expired.append((token, units))
        for token, _ in expired:
            del self._entries[token]
        return expired

    def _notify(self, expired: list[tuple[Hashable, list[T]]]) -> None:
        # every evicted token reaches the callback even if an earlier one raised
        first_error: Exception | None = None
        for token, units in expired:
            emit_json_event(
                "inflight_evicted",
                run_id=self.run_id,
                level="warning",
                component="inflight",
                token=str(token),
                units=len(units),
                ttl_seconds=self.ttl_seconds,
            )
            if self._on_evict is None:
                continue
            try:
                self._on_evict(token, units)
            except Exception as exc:
                emit_json_event(
                    "inflight_evict_callback_failed",
                    run_id=self.run_id,
                    level="error",
                    component="inflight",
                    token=str(token),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error
