"""Minimum-interval rate limiter for queue messages and reporting API calls."""

from __future__ import annotations

import contextvars
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, TypeVar

from ingestor.logging_utils import get_logger

logger = get_logger(__name__)

R = TypeVar("R")


class RateLimiter:
    """
    Admit callables one at a time, no sooner than ``1 / rate`` seconds apart.

    With a rate of 0 (or None) ``schedule`` runs the callable immediately in the
    caller's thread. Otherwise calls are queued on a single worker thread and
    each admission waits for the interval measured from the previous admission,
    not from the previous completion.

    Errors raised by the callable are captured on the returned Future. Pass
    ``last_admission`` from a previous limiter to keep the spacing across a
    rate change.
    """

    def __init__(
        self,
        rate: float | None = 0,
        name: str = "rate-limiter",
        last_admission: float | None = None,
    ):
        if rate is not None and rate < 0:
            raise ValueError("rate must be >= 0")
        self.rate = rate or 0
        self.min_interval = 1.0 / self.rate if self.rate > 0 else 0.0
        self._last_admission = last_admission
        self._lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        if self.rate > 0:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)

    @property
    def limited(self) -> bool:
        return self._executor is not None

    @property
    def last_admission(self) -> float | None:
        """``time.monotonic()`` of the most recent admission, if any."""
        with self._lock:
            return self._last_admission

    def schedule(self, fn: Callable[..., R], *args: Any, **kwargs: Any) -> Future:
        """Schedule ``fn(*args, **kwargs)`` and return a Future for its result."""
        if self._executor is None:
            future: Future = Future()
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as e:
                future.set_exception(e)
            return future

        ctx = contextvars.copy_context()
        return self._executor.submit(ctx.run, self._admit_and_call, fn, args, kwargs)

    def _admit_and_call(self, fn: Callable[..., R], args: tuple, kwargs: dict) -> R:
        with self._lock:
            if self._last_admission is not None:
                wait = self._last_admission + self.min_interval - time.monotonic()
                if wait > 0:
                    time.sleep(wait)
            self._last_admission = time.monotonic()
        return fn(*args, **kwargs)

    def close(self, wait: bool = True) -> None:
        """Stop accepting work. Already admitted calls run to completion."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def __enter__(self) -> "RateLimiter":
        return self

    def __exit__(self, *exc) -> None:
        self.close(wait=True)
