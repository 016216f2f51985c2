from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger("cache")


class Cache(ABC):
    """Keyed store with per-entry TTL and explicit invalidation.

    Values must be JSON-serialisable so the same callers work against the
    in-process and the shared implementation.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[Any]: ...

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    def delete_many(self, *keys: str) -> None:
        for key in keys:
            if key:
                self.delete(key)


class MemoryCache(Cache):
    """Single-process cache; used in tests and when no REDIS_URL is configured."""

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            expires_at, raw = entry
            if expires_at <= self._clock():
                del self._data[key]
                return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        raw = json.dumps(value, default=str)
        with self._lock:
            self._data[key] = (self._clock() + max(0, int(ttl_seconds)), raw)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class RedisCache(Cache):
    """Shared cache for multi-instance deployments (redis-py)."""

    def __init__(self, client, prefix: str = "eventpass:") -> None:
        self._r = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "eventpass:") -> "RedisCache":
        import redis

        return cls(redis.Redis.from_url(url, decode_responses=True), prefix=prefix)

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> Optional[Any]:
        raw = self._r.get(self._k(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("cache.decode_error", extra={"key": key})
            self._r.delete(self._k(key))
            return None

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._r.set(self._k(key), json.dumps(value, default=str), ex=max(1, int(ttl_seconds)))

    def delete(self, key: str) -> None:
        self._r.delete(self._k(key))


_default_cache: Optional[Cache] = None


def get_cache() -> Cache:
    """Process-wide cache selected from settings (Redis when REDIS_URL is set)."""
    global _default_cache
    if _default_cache is None:
        from eventpass.core.settings import settings

        if settings.REDIS_URL:
            _default_cache = RedisCache.from_url(settings.REDIS_URL)
            logger.info("cache.backend", extra={"backend": "redis"})
        else:
            _default_cache = MemoryCache()
            logger.info("cache.backend", extra={"backend": "memory"})
    return _default_cache


def set_cache(cache: Optional[Cache]) -> None:
    global _default_cache
    _default_cache = cache
