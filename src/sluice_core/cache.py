# src/sluice_core/cache.py
"""Key/value store with TTLs shared by all worker processes (locks, cancel flags, heartbeats)."""

import fnmatch
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

import redis

from .errors import ConnectionError

logger = logging.getLogger(__name__)

# Delete only if the stored value is still the one we read
_COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class Cache(ABC):

    @abstractmethod
    def set_nx(self, key: str, value: str, ttl: int) -> bool:
        """Atomically set key only if absent. Returns True if this call set it."""
        pass

    @abstractmethod
    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        pass

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    def delete_if_equals(self, key: str, value: str) -> bool:
        pass

    @abstractmethod
    def ttl(self, key: str) -> Optional[int]:
        """Remaining seconds, or None if the key is missing or has no expiry."""
        pass

    @abstractmethod
    def keys(self, pattern: str) -> List[str]:
        pass

    def close(self):
        pass


class MemoryCache(Cache):
    """In-process cache. Shares state between threads, not processes."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        return self._clock() + ttl if ttl else None

    def set_nx(self, key, value, ttl):
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._expiry(ttl))
            return True

    def set(self, key, value, ttl=None):
        with self._lock:
            self._data[key] = (value, self._expiry(ttl))

    def get(self, key):
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def delete(self, key):
        with self._lock:
            return self._data.pop(key, None) is not None

    def delete_if_equals(self, key, value):
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[0] != value:
                return False
            del self._data[key]
            return True

    def ttl(self, key):
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return max(0, int(round(entry[1] - self._clock())))

    def keys(self, pattern):
        with self._lock:
            return sorted(k for k in list(self._data) if self._live(k) and fnmatch.fnmatchcase(k, pattern))


class RedisCache(Cache):

    def __init__(self, url: str, client: Optional[redis.Redis] = None):
        self.url = url
        self.client = client or redis.Redis.from_url(url, decode_responses=True)
        self._compare_and_delete = self.client.register_script(_COMPARE_AND_DELETE)

    def _call(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (redis.ConnectionError, redis.TimeoutError) as e:
            raise ConnectionError(
                f"Redis unavailable: {e}",
                suggestions=["Check SLUICE_REDIS_URL and that the Redis server is reachable."],
            ) from e

    def set_nx(self, key, value, ttl):
        return bool(self._call(self.client.set, key, value, nx=True, ex=ttl))

    def set(self, key, value, ttl=None):
        self._call(self.client.set, key, value, ex=ttl)

    def get(self, key):
        return self._call(self.client.get, key)

    def delete(self, key):
        return bool(self._call(self.client.delete, key))

    def delete_if_equals(self, key, value):
        return bool(self._call(self._compare_and_delete, keys=[key], args=[value]))

    def ttl(self, key):
        remaining = self._call(self.client.ttl, key)
        # -2: missing, -1: no expiry
        return remaining if remaining is not None and remaining >= 0 else None

    def keys(self, pattern):
        return sorted(self._call(lambda: list(self.client.scan_iter(match=pattern))))

    def close(self):
        self.client.close()


def create_cache(redis_url: Optional[str]) -> Cache:
    if redis_url:
        logger.info("Using Redis cache for locks and heartbeats")
        return RedisCache(redis_url)
    logger.warning("No redis_url configured; locks only protect workers in this process")
    return MemoryCache()
