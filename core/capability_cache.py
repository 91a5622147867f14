"""
Wallet capability cache.
Keeps the methods each wallet advertises in local memory, optionally shared through Redis.
"""

import time
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Iterable, FrozenSet

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

# Assumed when the wallet has not told us what it supports
DEFAULT_METHODS = frozenset({'make_invoice', 'pay_invoice'})

SOURCE_WALLET = 'wallet'
SOURCE_DEFAULT = 'default'


@dataclass(frozen=True)
class CapabilitySet:
    """Methods one wallet supports"""
    methods: FrozenSet[str]
    source: str = SOURCE_WALLET
    fetched_at: float = field(default_factory=time.time)

    def supports(self, method: str) -> bool:
        return method in self.methods

    @property
    def is_default(self) -> bool:
        return self.source == SOURCE_DEFAULT

    def to_dict(self) -> Dict[str, Any]:
        return {
            'methods': sorted(self.methods),
            'source': self.source,
            'fetched_at': self.fetched_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CapabilitySet":
        return cls(
            methods=frozenset(data.get('methods', [])),
            source=data.get('source', SOURCE_WALLET),
            fetched_at=float(data.get('fetched_at', time.time())),
        )

    @classmethod
    def default(cls) -> "CapabilitySet":
        return cls(methods=DEFAULT_METHODS, source=SOURCE_DEFAULT)


class CapabilityCache:
    """Capability sets keyed by wallet public key (local first, then Redis)"""

    def __init__(self, redis_client: Optional[Redis] = None, ttl_seconds: int = 3600,
                 default_ttl_seconds: int = 60):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.default_ttl_seconds = default_ttl_seconds
        self.local_cache: Dict[str, Dict[str, Any]] = {}
        self.local_cache_lock = threading.RLock()
        self.cache_stats = {
            'hits': 0,
            'misses': 0,
            'redis_hits': 0,
            'local_hits': 0,
            'sets': 0,
            'evictions': 0,
            'redis_errors': 0,
        }

    @classmethod
    def from_url(cls, redis_url: Optional[str], **kwargs) -> "CapabilityCache":
        redis_client = Redis.from_url(redis_url) if redis_url else None
        return cls(redis_client=redis_client, **kwargs)

    def _cache_key(self, wallet_pubkey: str) -> str:
        return f"nwc:capabilities:{wallet_pubkey}"

    def get(self, wallet_pubkey: str) -> Optional[CapabilitySet]:
        """Cached capability set for a wallet, or None"""
        key = self._cache_key(wallet_pubkey)

        with self.local_cache_lock:
            entry = self.local_cache.get(key)
            if entry is not None:
                if entry['expires'] > time.time():
                    self.cache_stats['hits'] += 1
                    self.cache_stats['local_hits'] += 1
                    return entry['value']
                del self.local_cache[key]
                self.cache_stats['evictions'] += 1

        capabilities = self._redis_get(key)
        if capabilities is not None:
            self.cache_stats['hits'] += 1
            self.cache_stats['redis_hits'] += 1
            self._set_local(key, capabilities, self.ttl_seconds)
            return capabilities

        self.cache_stats['misses'] += 1
        return None

    def get_or_default(self, wallet_pubkey: str) -> CapabilitySet:
        return self.get(wallet_pubkey) or CapabilitySet.default()

    def store(self, wallet_pubkey: str, methods: Iterable[str]) -> CapabilitySet:
        """Replace the wallet's capability set with the methods it advertised"""
        capabilities = CapabilitySet(methods=frozenset(m for m in methods if isinstance(m, str)))
        key = self._cache_key(wallet_pubkey)

        self._set_local(key, capabilities, self.ttl_seconds)
        self._redis_set(key, capabilities)
        self.cache_stats['sets'] += 1
        return capabilities

    def store_default(self, wallet_pubkey: str) -> CapabilitySet:
        """Remember the default set briefly, keeping a still valid advertised set"""
        current = self.get(wallet_pubkey)
        if current is not None and not current.is_default:
            return current

        capabilities = CapabilitySet.default()
        self._set_local(self._cache_key(wallet_pubkey), capabilities, self.default_ttl_seconds)
        return capabilities

    def invalidate(self, wallet_pubkey: str):
        key = self._cache_key(wallet_pubkey)
        with self.local_cache_lock:
            self.local_cache.pop(key, None)
        if self.redis is not None:
            try:
                self.redis.delete(key)
            except RedisError as e:
                self._redis_failed('delete', e)

    def _set_local(self, key: str, capabilities: CapabilitySet, ttl: float):
        with self.local_cache_lock:
            self.local_cache[key] = {
                'value': capabilities,
                'expires': time.time() + ttl,
            }

    def _redis_get(self, key: str) -> Optional[CapabilitySet]:
        if self.redis is None:
            return None
        try:
            cached = self.redis.get(key)
        except RedisError as e:
            self._redis_failed('get', e)
            return None

        if cached is None:
            return None
        try:
            if isinstance(cached, bytes):
                cached = cached.decode('utf-8')
            return CapabilitySet.from_dict(json.loads(cached))
        except (ValueError, UnicodeDecodeError, TypeError, AttributeError):
            logger.warning(f"Ignoring unreadable cached capabilities at {key}")
            return None

    def _redis_set(self, key: str, capabilities: CapabilitySet):
        if self.redis is None:
            return
        try:
            self.redis.setex(key, self.ttl_seconds, json.dumps(capabilities.to_dict()))
        except RedisError as e:
            self._redis_failed('set', e)

    def _redis_failed(self, operation: str, error: Exception):
        # The local tier keeps working without Redis
        self.cache_stats['redis_errors'] += 1
        logger.warning(f"Capability cache Redis {operation} failed: {error}")

    def get_stats(self) -> Dict[str, Any]:
        total = self.cache_stats['hits'] + self.cache_stats['misses']
        with self.local_cache_lock:
            local_size = len(self.local_cache)
        return {
            **self.cache_stats,
            'hit_rate': self.cache_stats['hits'] / total if total else 0.0,
            'local_cache_size': local_size,
            'redis_enabled': self.redis is not None,
        }
