"""
Short-lived cache for health probe results.

A probe that hits the database is cheap but not free; the health route
reuses the last result until its TTL expires.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """A cached status with the time it was stored."""

    status: T
    timestamp: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp >= self.ttl

    def age(self, now: float) -> float:
        return max(0.0, now - self.timestamp)


class TTLStatusCache(Generic[T]):
    """
    Holds a single status value for `ttl` seconds.

    Thread-safe. The clock is injectable for tests.
    """

    def __init__(
        self,
        ttl: float = 300.0,
        name: str = "status",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.name = name
        self._clock = clock
        self._entry: Optional[CacheEntry[T]] = None
        self._lock = threading.Lock()

    def get(self) -> Optional[T]:
        """The cached status, or None when empty or expired."""
        with self._lock:
            entry = self._entry
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                self._entry = None
                logger.debug("Cache miss (expired): %s", self.name)
                return None
            return entry.status

    def set(self, status: T) -> None:
        with self._lock:
            self._entry = CacheEntry(status=status, timestamp=self._clock(), ttl=self.ttl)

    def clear(self) -> None:
        with self._lock:
            self._entry = None

    def age(self) -> Optional[float]:
        """Seconds since the cached status was stored, or None when empty."""
        with self._lock:
            if self._entry is None:
                return None
            return self._entry.age(self._clock())

    @property
    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "ttl": self.ttl,
                "cached": self._entry is not None,
            }
