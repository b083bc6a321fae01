from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis

logger = logging.getLogger(__name__)

TRENDING_KEY = "trending:products"


class TTLCache(Protocol):
    def get(self, key: str) -> Optional[bytes]:
        ...

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        ...


class MemoryTTLCache:
    """
    In-process TTL cache for the trending list.

    Expired entries are dropped lazily on read. Thread-safe.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[float, bytes]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[bytes]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            expires_at, value = entry
            if now >= expires_at:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return value

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def cache_get(cache: Optional[TTLCache], key: str) -> Optional[bytes]:
    if cache is None:
        return None
    try:
        return cache.get(key)
    except Exception:
        logger.exception("cache get failed for %s", key)
        return None


def cache_set(cache: Optional[TTLCache], key: str, value: bytes, ttl_seconds: int) -> None:
    if cache is None:
        return
    try:
        cache.set(key, value, ttl_seconds)
    except Exception:
        logger.exception("cache set failed for %s", key)


class RedisTTLCache:
    """
    Trending cache in Redis, shared by every worker and kept across restarts.

    Works against any Redis URL, including Upstash's ``rediss://`` endpoint.
    """

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float = 2.0) -> "RedisTTLCache":
        client = redis.Redis.from_url(url, socket_timeout=socket_timeout, socket_connect_timeout=socket_timeout)
        return cls(client)

    def get(self, key: str) -> Optional[bytes]:
        return self._client.get(key)

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        self._client.set(key, value, ex=ttl_seconds)


def cache_from_settings(settings: Any) -> TTLCache:
    if settings.redis_url:
        logger.info("trending cache: redis")
        return RedisTTLCache.from_url(settings.redis_url)
    logger.info("trending cache: in-process (REDIS_URL not set)")
    return MemoryTTLCache()
