"""
TTL cache for route tables with single-flight refresh.

The cached value is refreshed by at most one caller at a time; callers
arriving during a refresh wait for it and share its result. When a refresh
fails and a previous value exists, the stale value keeps being served.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Generic, Optional, TypeVar

if TYPE_CHECKING:
    from ticket_operator.logger import OperatorLogger


T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    expiry: float


class RouteCache(Generic[T]):
    """
    Cache holding one value produced by ``loader``.

    Args:
        loader: Zero-argument callable that builds a fresh value.
        ttl_seconds: How long a loaded value stays fresh.
        clock: Monotonic clock, injectable for tests.
        logger: Optional logger.
    """

    def __init__(
        self,
        loader: Callable[[], T],
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[OperatorLogger] = None,
    ) -> None:
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._logger = logger
        self._entry: Optional[CacheEntry[T]] = None
        self._lock = threading.Lock()
        self._refresh_done = threading.Condition(self._lock)
        self._refreshing = False
        # Bumped after every refresh attempt so waiters know theirs finished
        self._generation = 0
        self._last_error: Optional[BaseException] = None

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _fresh(self) -> bool:
        return self._entry is not None and self._clock() < self._entry.expiry

    def get(self) -> T:
        """
        Return the cached value, refreshing it when expired.

        Raises:
            Exception: Whatever the loader raised, when no stale value exists.
        """
        with self._lock:
            if self._fresh():
                return self._entry.value  # type: ignore[union-attr]
            if self._refreshing:
                generation = self._generation
                while self._refreshing and self._generation == generation:
                    self._refresh_done.wait()
                return self._result_after_refresh()
            self._refreshing = True

        value: Optional[T] = None
        error: Optional[BaseException] = None
        try:
            value = self._loader()
        except Exception as e:
            error = e

        with self._lock:
            if error is None:
                self._entry = CacheEntry(value=value, expiry=self._clock() + self._ttl)  # type: ignore[arg-type]
                self._last_error = None
            else:
                self._last_error = error
            self._refreshing = False
            self._generation += 1
            self._refresh_done.notify_all()
            if error is not None:
                self._log("route_cache_refresh_failed", {
                    "error": str(error),
                    "serving_stale": self._entry is not None,
                }, level="warn")
            return self._result_after_refresh()

    def _result_after_refresh(self) -> T:
        # Caller holds the lock
        if self._entry is not None:
            return self._entry.value
        if self._last_error is not None:
            raise self._last_error
        raise RuntimeError("route cache has no value")

    def invalidate(self) -> None:
        """Expire the cached value without discarding it as a stale fallback."""
        with self._lock:
            if self._entry is not None:
                self._entry.expiry = float("-inf")

    def peek(self) -> Optional[T]:
        """Current value regardless of freshness, without loading."""
        with self._lock:
            return self._entry.value if self._entry is not None else None
