"""FIFO-fair mutual exclusion for threads."""

from __future__ import annotations

import threading
from collections import deque


class FairLock:
    """
    Exclusive lock granting ownership in arrival order.

    threading.Lock makes no ordering promise; callers racing an eviction sweep
    must be served first-come-first-served, so waiters queue on their own
    Event and the releasing thread hands ownership to the oldest waiter.
    Not re-entrant.
    """

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._waiters: deque[threading.Event] = deque()
        self._locked = False

    def acquire(self) -> None:
        with self._mutex:
            if not self._locked and not self._waiters:
                self._locked = True
                return
            waiter = threading.Event()
            self._waiters.append(waiter)
        # Ownership is transferred by release(); _locked stays True meanwhile.
        waiter.wait()

    def release(self) -> None:
        with self._mutex:
            if not self._locked:
                raise RuntimeError("release of unlocked FairLock")
            if self._waiters:
                self._waiters.popleft().set()
            else:
                self._locked = False

    def locked(self) -> bool:
        return self._locked

    def __enter__(self) -> FairLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
