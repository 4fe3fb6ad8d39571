"""
Redis Caching Layer

Wraps a redis client in a CacheStore capability object that degrades
to a no-op cache when Redis is unavailable: reads miss, writes and
deletes are dropped, rate limiting allows. Redis errors never escape.
"""
import json
import logging
import time
from dataclasses import dataclass
from typing import Optional, Any
import redis
from redis.exceptions import ConnectionError, TimeoutError, RedisError
from core.config import settings

logger = logging.getLogger(__name__)

# Key namespaces. Existing deployments read these keys, keep them stable.
ANALYTICS_NAMESPACE = "analytics"
DASHBOARD_NAMESPACE = "analytics:dashboard"
ARTICLE_NAMESPACE = "analytics:article"
PERFORMANCE_KEY = "analytics:performance"
SERIES_NAMESPACE = "series"
RECOMMENDATIONS_NAMESPACE = "series:recommendations"
ADMIN_USER_STATS_KEY = "admin:user-stats"
ADMIN_ARTICLE_STATS_KEY = "admin:article-stats"
RATE_LIMIT_NAMESPACE = "rate_limit"

_SOFT_ERRORS = (ConnectionError, TimeoutError, RedisError)


def cache_key(prefix: str, *args) -> str:
    """Generate cache key from prefix and arguments (None values skipped)."""
    key_parts = [prefix]
    for arg in args:
        if arg is None:
            continue
        if isinstance(arg, bool):
            key_parts.append("true" if arg else "false")
        else:
            key_parts.append(str(arg))
    return ":".join(key_parts)


def filters_key(prefix: str, filters: Any, *args) -> str:
    """
    Key ending in the canonical JSON of a filter object.

    Unset fields are dropped and keys sorted, so equal filters map to the
    same key whatever order they were given in.
    """
    if hasattr(filters, "model_dump"):
        filters = filters.model_dump(mode="json", exclude_none=True)
    fragment = json.dumps(
        {k: v for k, v in (filters or {}).items() if v is not None},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return cache_key(prefix, *args, fragment)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int


class CacheStore:
    """
    Key-value cache with per-key TTL and glob deletion.

    Usage:
        cache = CacheStore.from_url(settings.REDIS_URL)
        if cache.get_json(key) is None:
            cache.set_json(key, result, ttl=900)

    ``healthy()`` reports whether the last interaction with Redis
    succeeded. Callers never need to check it before calling; every
    method is safe on an unhealthy store.
    """

    def __init__(self, client: Optional[redis.Redis] = None):
        self._client = client
        self._healthy = client is not None

    @classmethod
    def from_url(cls, url: Optional[str] = None) -> "CacheStore":
        """Connect and ping. Returns a disabled store if Redis is unreachable."""
        try:
            client = redis.from_url(
                url or settings.REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT,
                socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
                retry_on_timeout=True,
                health_check_interval=30
            )
            client.ping()
            logger.info("Redis connection established")
            return cls(client)
        except _SOFT_ERRORS as e:
            logger.warning(f"Redis unavailable: {e}. Caching disabled.")
            return cls(None)

    @classmethod
    def disabled(cls) -> "CacheStore":
        return cls(None)

    def healthy(self) -> bool:
        return self._client is not None and self._healthy

    def _soft_fail(self, operation: str, target: str, error: Exception) -> None:
        logger.warning(f"Cache {operation} error for {target}: {error}")
        if isinstance(error, (ConnectionError, TimeoutError)):
            self._healthy = False

    def get(self, key: str) -> Optional[str]:
        """Raw string value, or None if missing or Redis unavailable."""
        if self._client is None:
            return None
        try:
            value = self._client.get(key)
            self._healthy = True
            return value
        except _SOFT_ERRORS as e:
            self._soft_fail("get", key, e)
            return None

    def get_json(self, key: str) -> Optional[Any]:
        value = self.get(key)
        if not value:
            return None
        try:
            return json.loads(value)
        except ValueError:
            logger.warning(f"Discarding undecodable cache entry {key}")
            return None

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set value with TTL. Returns True if successful, False otherwise."""
        if self._client is None:
            return False
        if ttl is None:
            ttl = settings.CACHE_TTL_DEFAULT
        try:
            self._client.setex(key, ttl, value)
            self._healthy = True
            return True
        except _SOFT_ERRORS as e:
            self._soft_fail("set", key, e)
            return False

    def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        # default=str handles datetime, UUID, etc.
        return self.set(key, json.dumps(value, default=str), ttl)

    def delete(self, key: str) -> bool:
        if self._client is None:
            return False
        try:
            self._client.delete(key)
            self._healthy = True
            return True
        except _SOFT_ERRORS as e:
            self._soft_fail("delete", key, e)
            return False

    def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern. Returns count of deleted keys."""
        if self._client is None:
            return 0
        try:
            keys = self._client.keys(pattern)
            self._healthy = True
            if keys:
                return self._client.delete(*keys)
            return 0
        except _SOFT_ERRORS as e:
            self._soft_fail("invalidation", pattern, e)
            return 0

    def rate_limit(self, identifier: str, limit: int, window: int) -> RateLimitResult:
        """
        Fixed-window counter keyed by identifier.

        Allows the request whenever rate limiting is disabled or Redis
        cannot be reached (fail open).
        """
        now = int(time.time())
        allow = RateLimitResult(allowed=True, remaining=limit, reset_at=now + window)

        if not settings.RATE_LIMIT_ENABLED:
            return allow
        if self._client is None:
            logger.warning("Redis unavailable, skipping rate limit check")
            return allow

        key = cache_key(RATE_LIMIT_NAMESPACE, identifier)
        try:
            current = self._client.incr(key)
            if current == 1:
                self._client.expire(key, window)
            ttl = self._client.ttl(key)
            self._healthy = True
        except _SOFT_ERRORS as e:
            self._soft_fail("rate limit", key, e)
            return allow

        return RateLimitResult(
            allowed=current <= limit,
            remaining=max(0, limit - current),
            reset_at=now + (ttl if ttl > 0 else window),
        )


_cache_store: Optional[CacheStore] = None


def get_cache_store() -> CacheStore:
    """Process-wide store built from settings; retries while Redis is down."""
    global _cache_store

    if _cache_store is not None and _cache_store.healthy():
        return _cache_store

    _cache_store = CacheStore.from_url(settings.REDIS_URL)
    return _cache_store
