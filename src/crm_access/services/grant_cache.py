"""
Redis cache for resolved per-principal grants.

Stores the outcome of a successful access resolution (visible menu groups,
permissions, roles) so repeat sessions skip the upstream round trips.
Falls back to a no-op when Redis is not available.
"""

import logging
from typing import Any

import orjson
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

GRANT_CACHE_PREFIX = "crm:access"


class GrantCacheService:
    """
    Redis-based cache of resolved grants, keyed by principal.

    Features:
    - One entry per principal, 15 minutes by default
    - Graceful fallback when Redis unavailable
    - JSON serialization with orjson
    """

    def __init__(
        self,
        redis_client: Redis | None,
        default_ttl: int = 900,
        enabled: bool = True,
    ):
        self.redis = redis_client
        self.default_ttl = default_ttl
        self.enabled = enabled and redis_client is not None

        if self.enabled:
            try:
                self.redis.ping()
                logger.info("Grant cache initialized successfully")
            except (RedisConnectionError, RedisError, AttributeError) as exc:
                logger.warning("Redis unavailable, grant cache disabled: %s", exc)
                self.enabled = False

    @staticmethod
    def cache_key(principal_key: str) -> str:
        return f"{GRANT_CACHE_PREFIX}:{principal_key}"

    def get(self, principal_key: str) -> dict[str, Any] | None:
        if not self.enabled:
            return None

        key = self.cache_key(principal_key)
        try:
            cached = self.redis.get(key)
        except (RedisConnectionError, RedisError) as exc:
            logger.warning("Redis GET error for %s: %s", key, exc)
            return None
        if not cached:
            logger.debug("Cache MISS: %s", key)
            return None

        try:
            data = orjson.loads(cached)
        except orjson.JSONDecodeError as exc:
            logger.warning("Discarding unreadable cache entry %s: %s", key, exc)
            self.invalidate(principal_key)
            return None
        logger.debug("Cache HIT: %s", key)
        return data if isinstance(data, dict) else None

    def set(self, principal_key: str, payload: dict[str, Any], ttl: int | None = None) -> bool:
        if not self.enabled:
            return False

        key = self.cache_key(principal_key)
        ttl = ttl or self.default_ttl
        try:
            self.redis.setex(key, ttl, orjson.dumps(payload))
            logger.debug("Cached: %s (TTL=%ds)", key, ttl)
            return True
        except (RedisConnectionError, RedisError, TypeError) as exc:
            logger.warning("Redis SET error for %s: %s", key, exc)
            return False

    def invalidate(self, principal_key: str) -> bool:
        if not self.enabled:
            return False

        key = self.cache_key(principal_key)
        try:
            deleted = self.redis.delete(key)
            if deleted:
                logger.debug("Invalidated key: %s", key)
            return bool(deleted)
        except (RedisConnectionError, RedisError) as exc:
            logger.warning("Redis DELETE error for %s: %s", key, exc)
            return False

    def invalidate_all(self) -> int:
        """Drop every cached grant, e.g. after a role was changed."""
        if not self.enabled:
            return 0

        pattern = f"{GRANT_CACHE_PREFIX}:*"
        try:
            keys = list(self.redis.scan_iter(match=pattern, count=100))
            if keys:
                deleted = self.redis.delete(*keys)
                logger.info("Invalidated %d keys matching %s", deleted, pattern)
                return deleted
        except (RedisConnectionError, RedisError) as exc:
            logger.warning("Redis invalidation error for %s: %s", pattern, exc)
        return 0
