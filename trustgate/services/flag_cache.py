"""
Flag / rule read cache
======================

Two tiers:
- L1: per-process cachetools.TTLCache (a few seconds), lock-guarded
- L2: optional shared Redis (FLAG_CACHE_REDIS_URL), JSON values. A reader that
  loaded rows before an admin commit can still set() them after
  invalidate(), so FLAG_CACHE_TTL bounds cross-process staleness

Only flag definitions and rule lists are cached. Overrides and session
bindings are always read from the store. Redis errors degrade to L1 only.
"""

import json
import logging
import threading
from typing import Any, Optional

import redis
from cachetools import TTLCache

from trustgate.config import settings

logger = logging.getLogger("trustgate.cache")

KEY_PREFIX = "trustgate:"


def flag_key(key: str) -> str:
    return f"{KEY_PREFIX}flag:{key}"


def rules_key(flag_id: Any) -> str:
    return f"{KEY_PREFIX}rules:{flag_id}"


def flag_index_key() -> str:
    return f"{KEY_PREFIX}flags"


class FlagCache:
    """Read-mostly cache; writers invalidate keys synchronously after commit."""

    def __init__(
        self,
        *,
        local_ttl: int = 5,
        local_maxsize: int = 2048,
        redis_client: Optional[redis.Redis] = None,
        redis_ttl: int = 5,
        enabled: bool = True,
    ):
        self.enabled = enabled
        self._local: TTLCache = TTLCache(maxsize=local_maxsize, ttl=local_ttl)
        self._lock = threading.Lock()
        self._redis = redis_client
        self._redis_ttl = redis_ttl

    @classmethod
    def from_settings(cls) -> "FlagCache":
        client = None
        if settings.FLAG_CACHE_REDIS_URL:
            client = redis.Redis.from_url(
                settings.FLAG_CACHE_REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=1,
                socket_timeout=1,
            )
        return cls(
            local_ttl=settings.FLAG_CACHE_LOCAL_TTL,
            local_maxsize=settings.FLAG_CACHE_LOCAL_MAXSIZE,
            redis_client=client,
            redis_ttl=settings.FLAG_CACHE_TTL,
            enabled=settings.FLAG_CACHE_ENABLED,
        )

    def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        with self._lock:
            value = self._local.get(key)
        if value is not None:
            return value

        if self._redis is None:
            return None
        try:
            raw = self._redis.get(key)
        except redis.RedisError as e:
            logger.debug("L2 cache get error: %s", e)
            return None
        if raw is None:
            return None
        value = json.loads(raw)
        with self._lock:
            self._local[key] = value
        return value

    def set(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value in both tiers."""
        if not self.enabled:
            return
        with self._lock:
            self._local[key] = value
        if self._redis is None:
            return
        try:
            self._redis.setex(key, self._redis_ttl, json.dumps(value, default=str))
        except redis.RedisError as e:
            logger.debug("L2 cache set error: %s", e)

    def invalidate(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._local.pop(key, None)
        if self._redis is None or not keys:
            return
        try:
            self._redis.delete(*keys)
        except redis.RedisError as e:
            # Other processes keep serving L2 until FLAG_CACHE_TTL elapses
            logger.warning("L2 cache invalidation failed for %s: %s", keys, e)


flag_cache = FlagCache.from_settings()
