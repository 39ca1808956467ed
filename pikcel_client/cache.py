import asyncio
import re
import threading
import time
from typing import Any, Callable, Dict, NamedTuple, Optional, Pattern, Union

from loguru import logger


class CacheEntry(NamedTuple):
    value: Any
    expires_at: float


class ResponseCache:
    """TTL cache plus a map of in-flight requests sharing the same key.

    The two maps are independent: clearing or invalidating cached values
    never touches pending futures, so callers already attached to an
    in-flight request still receive its result.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._lock = threading.Lock()
        self.logger = logger

    def get(self, key: str) -> Optional[Any]:
        """Returns the cached value, or None if absent or expired"""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                self.logger.debug(f"Cache entry expired: {key}")
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value, self._clock() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def invalidate_pattern(self, pattern: Union[str, Pattern[str]]) -> int:
        """Drops every cached key matching the regex, returns how many were dropped"""
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        with self._lock:
            matched = [key for key in self._entries if regex.search(key)]
            for key in matched:
                del self._entries[key]
        return len(matched)

    def get_pending(self, key: str) -> Optional[asyncio.Future]:
        with self._lock:
            return self._pending.get(key)

    def set_pending(self, key: str, future: asyncio.Future) -> None:
        with self._lock:
            self._pending[key] = future
        future.add_done_callback(lambda done: self._discard_pending(key, done))

    def _discard_pending(self, key: str, future: asyncio.Future) -> None:
        with self._lock:
            if self._pending.get(key) is future:
                del self._pending[key]

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
