"""Leaderboard read cache with Redis / in-memory swap.

Only derived, read-mostly data goes here (the all-time top-N list). Writes
never read from the cache, so a stale entry can only delay a leaderboard
refresh by its TTL.

Usage:
    from cache_backend import init_cache, get_cache
    init_cache(app)          # called once in create_app()
    cache = get_cache()
    cache.set("leaderboard:all_time:50", rows, ttl=60)
    rows = cache.get("leaderboard:all_time:50")
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Protocol

logger = logging.getLogger(__name__)

# ── Protocol ───────────────────────────────────────────────

class CacheBackend(Protocol):
    def get(self, key: str) -> Any | None: ...
    def set(self, key: str, value: Any, ttl: int = 60) -> None: ...
    def delete(self, key: str) -> None: ...
    def clear(self) -> None: ...
    def cleanup(self) -> int: ...


# ── In-Memory Implementation ──────────────────────────────

class InMemoryCache:
    """Process-local dict with expiry timestamps, bounded at MAX_ENTRIES."""

    MAX_ENTRIES = 1000

    def __init__(self) -> None:
        self._store: dict[str, tuple[str, float]] = {}  # key -> (json, expires_at)
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            raw, expires_at = entry
            if time.time() > expires_at:
                del self._store[key]
                return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int = 60) -> None:
        raw = json.dumps(value)
        with self._lock:
            if key not in self._store and len(self._store) >= self.MAX_ENTRIES:
                soonest = min(self._store, key=lambda k: self._store[k][1])
                del self._store[soonest]
            self._store[key] = (raw, time.time() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def cleanup(self) -> int:
        """Remove expired entries. Returns count removed."""
        now = time.time()
        with self._lock:
            expired = [k for k, (_, exp) in self._store.items() if now > exp]
            for k in expired:
                del self._store[k]
            return len(expired)


# ── Redis Implementation ──────────────────────────────────

class RedisCache:
    """Wraps redis.Redis; a Redis outage degrades to cache misses."""

    def __init__(self, redis_client, prefix: str = "mathleague:") -> None:
        self._redis = redis_client
        self._prefix = prefix

    def get(self, key: str) -> Any | None:
        try:
            raw = self._redis.get(self._prefix + key)
            if raw is None:
                return None
            return json.loads(raw)
        except Exception as e:
            logger.warning("Redis GET error (key=%s): %s", key, e)
            return None

    def set(self, key: str, value: Any, ttl: int = 60) -> None:
        try:
            self._redis.setex(self._prefix + key, ttl, json.dumps(value))
        except Exception as e:
            logger.warning("Redis SET error (key=%s): %s", key, e)

    def delete(self, key: str) -> None:
        try:
            self._redis.delete(self._prefix + key)
        except Exception as e:
            logger.warning("Redis DELETE error (key=%s): %s", key, e)

    def clear(self) -> None:
        try:
            keys = list(self._redis.scan_iter(match=self._prefix + "*"))
            if keys:
                self._redis.delete(*keys)
        except Exception as e:
            logger.warning("Redis CLEAR error: %s", e)

    def cleanup(self) -> int:
        # Redis handles expiry natively
        return 0


# ── Module-level singleton ────────────────────────────────

_cache: CacheBackend | None = None


def init_cache(app) -> None:
    """Initialize the cache backend. Call once from create_app()."""
    global _cache

    redis_url = app.config.get("REDIS_URL", "")
    if redis_url and not app.config.get("TESTING"):
        try:
            import redis
            client = redis.Redis.from_url(redis_url, decode_responses=False)
            client.ping()
            _cache = RedisCache(client)
            app.logger.info("Cache backend: Redis (%s)", redis_url)
            return
        except Exception as e:
            app.logger.warning("Redis connection failed (%s), falling back to in-memory cache.", e)

    _cache = InMemoryCache()
    app.logger.info("Cache backend: in-memory")


def get_cache() -> CacheBackend:
    """Return the active cache backend. Lazily initializes if needed."""
    global _cache
    if _cache is None:
        _cache = InMemoryCache()
    return _cache
