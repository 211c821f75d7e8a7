"""
Shared Redis cache for upstream lookups.

Batch payment queries are the expensive part of a sync invocation, and the
incremental cron, a manual backfill and the webhook path can all ask for the
same tenant's payments within a couple of minutes. Entries are keyed per
tenant so one store never reads another store's payments.

A missing or unreachable Redis only costs the upstream round trip: every
operation degrades to a miss.
"""

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Optional

import redis
from flask import Flask
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

DECIMAL_TAG = '__decimal__'


def _encode(value: Any) -> str:
    def default(obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return {DECIMAL_TAG: str(obj)}
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        raise TypeError(f"{type(obj).__name__} is not cacheable")
    return json.dumps(value, default=default)


def _decode(text: str) -> Any:
    def hook(obj):
        if DECIMAL_TAG in obj and len(obj) == 1:
            return Decimal(obj[DECIMAL_TAG])
        return obj
    return json.loads(text, object_hook=hook)


class CacheService:
    """
    Tenant-scoped cache-aside helper.

    Keys: {prefix}:tenant:{tenant_id}:{namespace}:{key}
    """

    def __init__(self, client: Optional[redis.Redis] = None, prefix: str = 'fiscal', default_ttl: int = 60):
        self.client = client
        self.prefix = prefix
        self.default_ttl = default_ttl

    @classmethod
    def from_config(cls, config) -> 'CacheService':
        prefix = config.get('CACHE_KEY_PREFIX', 'fiscal')
        ttl = config.get('CACHE_DEFAULT_TTL', 60)
        if not config.get('CACHE_ENABLED', True):
            logger.info("[CACHE] Disabled by configuration")
            return cls(None, prefix, ttl)

        url = config.get('REDIS_URL', 'redis://redis:6379/0')
        try:
            client = redis.from_url(
                url,
                decode_responses=True,
                socket_connect_timeout=3,
                socket_timeout=3,
                retry_on_timeout=True,
                health_check_interval=30,
            )
            client.ping()
        except RedisError as e:
            logger.warning(f"[CACHE] Redis unreachable at {url}: {e}; caching disabled")
            return cls(None, prefix, ttl)

        logger.info(f"[CACHE] Connected to {url}")
        return cls(client, prefix, ttl)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def key(self, tenant_id: int, namespace: str, key: str) -> str:
        return f"{self.prefix}:tenant:{tenant_id}:{namespace}:{key}"

    def get(self, tenant_id: int, namespace: str, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        try:
            text = self.client.get(self.key(tenant_id, namespace, key))
        except RedisError as e:
            logger.warning(f"[CACHE] Read failed for tenant {tenant_id} {namespace}:{key}: {e}")
            return None
        if text is None:
            return None
        try:
            return _decode(text)
        except ValueError:
            logger.warning(f"[CACHE] Dropping unreadable entry {namespace}:{key} (tenant {tenant_id})")
            return None

    def set(self, tenant_id: int, namespace: str, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self.enabled:
            return False
        try:
            self.client.setex(self.key(tenant_id, namespace, key), ttl or self.default_ttl, _encode(value))
        except (RedisError, TypeError) as e:
            logger.warning(f"[CACHE] Write failed for tenant {tenant_id} {namespace}:{key}: {e}")
            return False
        return True

    def memoize(self, tenant_id: int, namespace: str, key: str, loader: Callable[[], Any],
                ttl: Optional[int] = None) -> Any:
        """Return the cached value, or call loader and cache what it returns (None is never cached)."""
        cached = self.get(tenant_id, namespace, key)
        if cached is not None:
            logger.debug(f"[CACHE] Hit {namespace}:{key} (tenant {tenant_id})")
            return cached
        value = loader()
        if value is not None:
            self.set(tenant_id, namespace, key, value, ttl)
        return value


def init_cache(app: Flask) -> CacheService:
    """Build the process-wide cache and register it on the app."""
    cache = CacheService.from_config(app.config)
    app.extensions['cache'] = cache
    return cache
