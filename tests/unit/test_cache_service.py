"""
Unit tests for the Redis cache wrapper (Redis replaced by a dict-backed fake).
"""

from decimal import Decimal
from unittest import mock

from redis.exceptions import ConnectionError as RedisConnectionError

from fiscal_sync.services.cache_service import CacheService


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.ttls = {}

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl


class TestCacheService:

    def test_keys_are_tenant_scoped(self):
        cache = CacheService(FakeRedis(), prefix='fx')
        assert cache.key(3, 'payments', 'batch:500') == 'fx:tenant:3:payments:batch:500'

    def test_memoize_loads_once(self):
        cache = CacheService(FakeRedis(), default_ttl=60)
        loader = mock.Mock(return_value=[{'id': 'p1', 'amount': Decimal('12.50')}])

        first = cache.memoize(1, 'payments', 'batch', loader, ttl=120)
        second = cache.memoize(1, 'payments', 'batch', loader)

        assert loader.call_count == 1
        assert second == first
        assert second[0]['amount'] == Decimal('12.50')
        assert cache.client.ttls['fiscal:tenant:1:payments:batch'] == 120

    def test_tenants_do_not_share_entries(self):
        cache = CacheService(FakeRedis())
        cache.set(1, 'payments', 'batch', ['tenant-1'])
        assert cache.get(2, 'payments', 'batch') is None

    def test_none_is_not_cached(self):
        cache = CacheService(FakeRedis())
        loader = mock.Mock(return_value=None)
        cache.memoize(1, 'payments', 'batch', loader)
        cache.memoize(1, 'payments', 'batch', loader)
        assert loader.call_count == 2

    def test_disabled_cache_always_loads(self):
        cache = CacheService(None)
        assert cache.enabled is False
        assert cache.set(1, 'payments', 'batch', [1]) is False
        assert cache.memoize(1, 'payments', 'batch', lambda: [1]) == [1]

    def test_redis_errors_degrade_to_miss(self):
        client = mock.Mock()
        client.get.side_effect = RedisConnectionError('down')
        client.setex.side_effect = RedisConnectionError('down')
        cache = CacheService(client)

        assert cache.get(1, 'payments', 'batch') is None
        assert cache.memoize(1, 'payments', 'batch', lambda: ['fresh']) == ['fresh']

    def test_from_config_disabled(self):
        cache = CacheService.from_config({'CACHE_ENABLED': False, 'CACHE_KEY_PREFIX': 'x'})
        assert cache.enabled is False
        assert cache.prefix == 'x'

    def test_from_config_unreachable_redis(self):
        with mock.patch('fiscal_sync.services.cache_service.redis.from_url') as from_url:
            from_url.return_value.ping.side_effect = RedisConnectionError('refused')
            cache = CacheService.from_config({'CACHE_ENABLED': True, 'REDIS_URL': 'redis://nowhere:6379/0'})
        assert cache.enabled is False
