"""
Test cases for the wallet capability cache
"""

import json
import time
import pytest
from unittest.mock import Mock, patch

from redis.exceptions import RedisError

from core.capability_cache import CapabilityCache, CapabilitySet, DEFAULT_METHODS, SOURCE_DEFAULT

WALLET = "ab" * 32


@pytest.fixture
def mock_redis():
    redis_client = Mock()
    redis_client.get.return_value = None
    return redis_client


@pytest.mark.unit
class TestCapabilitySet:
    """Test cases for CapabilitySet"""

    def test_default_set(self):
        """Test the assumed capabilities when the wallet is silent"""
        capabilities = CapabilitySet.default()
        assert capabilities.methods == DEFAULT_METHODS
        assert capabilities.is_default
        assert capabilities.supports('pay_invoice')
        assert not capabilities.supports('get_balance')

    def test_dict_round_trip(self):
        """Test the serialized form used in Redis"""
        capabilities = CapabilitySet(methods=frozenset({'get_info', 'get_balance'}), fetched_at=1700000000.0)
        data = capabilities.to_dict()

        assert data['methods'] == ['get_balance', 'get_info']
        assert CapabilitySet.from_dict(data) == capabilities


@pytest.mark.unit
class TestCapabilityCache:
    """Test cases for CapabilityCache"""

    def test_local_only(self):
        """Test the cache works without Redis"""
        cache = CapabilityCache()
        assert cache.get(WALLET) is None

        cache.store(WALLET, ['get_info', 'make_invoice'])

        assert cache.get(WALLET).methods == frozenset({'get_info', 'make_invoice'})
        stats = cache.get_stats()
        assert stats['hits'] == 1
        assert stats['misses'] == 1
        assert stats['redis_enabled'] is False

    def test_store_replaces(self):
        """Test a new advertisement replaces the old set entirely"""
        cache = CapabilityCache()
        cache.store(WALLET, ['get_info', 'pay_invoice'])
        cache.store(WALLET, ['get_info'])
        assert cache.get(WALLET).methods == frozenset({'get_info'})

    def test_store_ignores_non_strings(self):
        """Test junk entries in the methods list are dropped"""
        cache = CapabilityCache()
        assert cache.store(WALLET, ['get_info', 7, None]).methods == frozenset({'get_info'})

    def test_expiry(self):
        """Test entries expire after the TTL"""
        cache = CapabilityCache(ttl_seconds=60)
        cache.store(WALLET, ['get_info'])

        with patch('core.capability_cache.time.time', return_value=time.time() + 61):
            assert cache.get(WALLET) is None
        assert cache.get_stats()['evictions'] == 1

    def test_store_default_keeps_advertised_set(self):
        """Test a failed refresh does not throw away a valid advertised set"""
        cache = CapabilityCache()
        cache.store(WALLET, ['get_info', 'get_balance'])

        capabilities = cache.store_default(WALLET)

        assert not capabilities.is_default
        assert cache.get(WALLET).supports('get_balance')

    def test_store_default_is_short_lived(self):
        """Test the default set expires sooner than advertised sets"""
        cache = CapabilityCache(ttl_seconds=3600, default_ttl_seconds=60)
        assert cache.store_default(WALLET).source == SOURCE_DEFAULT

        with patch('core.capability_cache.time.time', return_value=time.time() + 120):
            assert cache.get(WALLET) is None

    def test_get_or_default(self):
        """Test the default set is returned on a miss"""
        assert CapabilityCache().get_or_default(WALLET).is_default

    def test_redis_write_through(self, mock_redis):
        """Test stored sets are written to Redis with the TTL"""
        cache = CapabilityCache(redis_client=mock_redis, ttl_seconds=3600)
        cache.store(WALLET, ['get_info'])

        key, ttl, value = mock_redis.setex.call_args[0]
        assert key == f"nwc:capabilities:{WALLET}"
        assert ttl == 3600
        assert json.loads(value)['methods'] == ['get_info']

    def test_redis_read(self, mock_redis):
        """Test a local miss is served from Redis"""
        mock_redis.get.return_value = json.dumps({
            'methods': ['get_info', 'get_balance'], 'source': 'wallet', 'fetched_at': 1700000000,
        }).encode()
        cache = CapabilityCache(redis_client=mock_redis)

        assert cache.get(WALLET).supports('get_balance')
        assert cache.get(WALLET).supports('get_balance')
        assert mock_redis.get.call_count == 1
        assert cache.get_stats()['redis_hits'] == 1

    def test_redis_unreadable_value(self, mock_redis):
        """Test garbage in Redis is treated as a miss"""
        mock_redis.get.return_value = b"not json"
        assert CapabilityCache(redis_client=mock_redis).get(WALLET) is None

    def test_redis_errors_degrade_to_local(self, mock_redis):
        """Test Redis failures never break the cache"""
        mock_redis.get.side_effect = RedisError("connection refused")
        mock_redis.setex.side_effect = RedisError("connection refused")
        mock_redis.delete.side_effect = RedisError("connection refused")
        cache = CapabilityCache(redis_client=mock_redis)

        assert cache.get(WALLET) is None
        cache.store(WALLET, ['get_info'])
        assert cache.get(WALLET).supports('get_info')
        cache.invalidate(WALLET)

        assert cache.get_stats()['redis_errors'] == 3

    def test_invalidate(self, mock_redis):
        """Test invalidate clears both tiers"""
        cache = CapabilityCache(redis_client=mock_redis)
        cache.store(WALLET, ['get_info'])

        cache.invalidate(WALLET)

        assert cache.get(WALLET) is None
        mock_redis.delete.assert_called_once_with(f"nwc:capabilities:{WALLET}")

    def test_from_url(self):
        """Test Redis is only used when a URL is configured"""
        assert CapabilityCache.from_url(None).redis is None
        with patch('core.capability_cache.Redis.from_url') as mock_from_url:
            cache = CapabilityCache.from_url("redis://localhost:6379/0", ttl_seconds=10)
        mock_from_url.assert_called_once_with("redis://localhost:6379/0")
        assert cache.ttl_seconds == 10
