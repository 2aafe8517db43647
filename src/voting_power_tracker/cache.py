"""
In-memory TTL cache, request coalescing and cache-aside memoization.
"""

import time
import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from .interfaces import Cache

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TTLCache:
    """Thread-safe key/value cache whose entries expire after a TTL (seconds).

    Expired entries are dropped when read, and swept from the whole cache on
    the first write after each sweep interval.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic,
                 sweep_interval: float = 60.0):
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Tuple[Any, bool]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None, False
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None, False
            return value, True

    def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            now = self._clock()
            self._entries[key] = (value, now + ttl)
            if now >= self._next_sweep:
                self._sweep(now)
                self._next_sweep = now + self._sweep_interval

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _sweep(self, now: float) -> None:
        expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")


class SingleFlight:
    """Coalesces concurrent calls for the same key into one computation.

    The first caller runs the function; callers arriving while it is in
    flight wait for the same result (or exception).
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._inflight: Dict[str, Future] = {}

    def do(self, key: str, fn: Callable[[], T]) -> T:
        with self._lock:
            future = self._inflight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[key] = future

        if not leader:
            logger.debug(f"Joining in-flight computation for {key}")
            return future.result()

        try:
            result = fn()
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._inflight.pop(key, None)

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._inflight


class Memoizer:
    """Cache-aside helper: look up a key, otherwise compute once and store it."""

    def __init__(self, cache: Cache, single_flight: Optional[SingleFlight] = None):
        self.cache = cache
        self.single_flight = single_flight or SingleFlight()

    def get_or_compute(self, key: str, ttl: float, compute: Callable[[], T]) -> T:
        value, found = self.cache.get(key)
        if found:
            logger.debug(f"Cache HIT for {key}")
            return value

        def _compute_and_store() -> T:
            # Another leader may have filled the cache between our miss and now
            cached, hit = self.cache.get(key)
            if hit:
                return cached
            result = compute()
            self.cache.set(key, result, ttl)
            return result

        logger.debug(f"Cache MISS for {key}")
        return self.single_flight.do(key, _compute_and_store)

    def invalidate(self, *keys: str) -> None:
        for key in keys:
            self.cache.delete(key)
