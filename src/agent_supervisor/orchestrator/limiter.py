"""Bounded-parallelism admission gate with FIFO hand-off."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

P = ParamSpec("P")
T = TypeVar("T")


class ConcurrencyLimiter:
    """Counting semaphore whose waiters are served strictly in arrival order.

    A release hands the slot directly to the oldest waiter, so a newly
    arriving caller can never overtake a queued one.
    """

    def __init__(self, max_concurrency: int) -> None:
        if isinstance(max_concurrency, bool) or not isinstance(max_concurrency, int):
            raise ValueError(f"max_concurrency must be an integer, got {max_concurrency!r}")
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self._max_concurrency = max_concurrency
        self._active = 0
        self._waiters: deque[threading.Event] = deque()
        self._lock = threading.Lock()

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @property
    def active_count(self) -> int:
        with self._lock:
            return self._active

    @property
    def queued_count(self) -> int:
        with self._lock:
            return len(self._waiters)

    def acquire(self) -> None:
        """Block until a slot is available."""

        with self._lock:
            if self._active < self._max_concurrency and not self._waiters:
                self._active += 1
                return
            waiter = threading.Event()
            self._waiters.append(waiter)
        # The releasing thread transfers its slot; _active already counts us.
        waiter.wait()

    def release(self) -> None:
        with self._lock:
            if self._active <= 0:
                raise RuntimeError("release() called without a matching acquire()")
            if self._waiters:
                self._waiters.popleft().set()
                return
            self._active -= 1

    @contextmanager
    def slot(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()

    def run(self, fn: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
        """Call ``fn`` while holding a slot; the slot is released on every exit path."""

        with self.slot():
            return fn(*args, **kwargs)
