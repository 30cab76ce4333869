"""Caching layer for upstream data.

This module contains:
- Deterministic key generation and stale mirror keys
- TTL stores (Redis and in-memory)
- Validation of new data against previous data
- CacheManager with TTL-by-data-type and stale fallback
"""

from cacheguard.cache.keys import (
    CacheKeyBuilder,
    generate_cache_key,
    is_stale_key,
    param_signature,
    stale_key,
)
from cacheguard.cache.manager import (
    DEFAULT_CACHE_CONFIG,
    STALE_TTL_MULTIPLIER,
    TTL_TABLE,
    CacheConfig,
    CacheManager,
    CacheMetrics,
    DataType,
    deserialize,
    serialize,
    strip_metadata,
    unwrap_stale,
)
from cacheguard.cache.store import CacheStore, MemoryCacheStore, RedisCacheStore
from cacheguard.cache.validation import (
    DataValidator,
    ValidationResult,
    is_well_formed,
    merge_with_stale,
)

__all__ = [
    # Keys
    "CacheKeyBuilder",
    "generate_cache_key",
    "is_stale_key",
    "param_signature",
    "stale_key",
    # Stores
    "CacheStore",
    "MemoryCacheStore",
    "RedisCacheStore",
    # Validation
    "DataValidator",
    "ValidationResult",
    "is_well_formed",
    "merge_with_stale",
    # Manager
    "DEFAULT_CACHE_CONFIG",
    "STALE_TTL_MULTIPLIER",
    "TTL_TABLE",
    "CacheConfig",
    "CacheManager",
    "CacheMetrics",
    "DataType",
    "deserialize",
    "serialize",
    "strip_metadata",
    "unwrap_stale",
]
