from __future__ import annotations

import fnmatch
import math
import threading
import time
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from userhub.storage.redis_cache import CacheOperations


class _MemoryClient:
    """Dict-backed stand-in for the handful of Redis commands the cache uses."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline is not None and self._clock() >= deadline:
            self._entries.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        with self._lock:
            deadline = self._clock() + ex if ex else None
            self._entries[key] = (value, deadline)
            return True

    async def delete(self, key: str) -> int:
        with self._lock:
            return 1 if self._entries.pop(key, None) is not None else 0

    async def exists(self, key: str) -> int:
        with self._lock:
            return 1 if self._live(key) is not None else 0

    async def incr(self, key: str) -> int:
        with self._lock:
            current = self._live(key)
            value = int(current or 0) + 1
            deadline = self._entries[key][1] if current is not None else None
            self._entries[key] = (str(value), deadline)
            return value

    async def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            current = self._live(key)
            if current is None:
                return False
            self._entries[key] = (current, self._clock() + seconds)
            return True

    async def ttl(self, key: str) -> int:
        """Redis semantics: -2 for a missing key, -1 when it has no expiry."""
        with self._lock:
            if self._live(key) is None:
                return -2
            deadline = self._entries[key][1]
            if deadline is None:
                return -1
            return max(0, math.ceil(deadline - self._clock()))

    async def scan_iter(self, match: Optional[str] = None) -> AsyncIterator[str]:
        with self._lock:
            keys = [k for k in list(self._entries) if self._live(k) is not None]
        for key in keys:
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key


class MemoryCache(CacheOperations):
    """In-process session cache used when Redis is unavailable in dev/test."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.client = _MemoryClient(clock)

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None
