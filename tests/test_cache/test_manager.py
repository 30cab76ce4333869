"""Tests for cache manager implementation."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

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
from cacheguard.cache.store import MemoryCacheStore, RedisCacheStore
from cacheguard.cache.validation import DataValidator


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def store_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(store_clock: FakeClock) -> MemoryCacheStore:
    return MemoryCacheStore(clock=store_clock)


@pytest.fixture
def cache(store: MemoryCacheStore) -> CacheManager:
    return CacheManager(store, clock=FakeClock(1_700_000_000.0))


@pytest.fixture
def validated_cache(store: MemoryCacheStore) -> CacheManager:
    return CacheManager(store, validator=DataValidator(), clock=FakeClock(1_700_000_000.0))


class TestDataType:
    """Tests for DataType and the TTL table."""

    def test_values(self) -> None:
        """Test data types use their wire names."""
        assert DataType.PROTOCOL_INFO.value == "protocol-info"
        assert DataType.TOKEN_PRICE.value == "token-price"

    def test_ttl_table(self) -> None:
        """Test TTLs per data type."""
        assert TTL_TABLE == {
            DataType.PROTOCOL_INFO: 86400,
            DataType.TOKEN_PRICE: 300,
            DataType.PROTOCOL_TVL: 1800,
            DataType.ALL_PROTOCOLS: 43200,
            DataType.MARKET_DATA: 1800,
            DataType.VOLUME_DATA: 3600,
            DataType.DEFAULT: 3600,
        }
        assert STALE_TTL_MULTIPLIER == 4


class TestCacheConfig:
    """Tests for CacheConfig."""

    def test_get_ttl_by_enum_and_name(self) -> None:
        """Test TTL lookup accepts enum members and names."""
        assert DEFAULT_CACHE_CONFIG.get_ttl(DataType.TOKEN_PRICE) == 300
        assert DEFAULT_CACHE_CONFIG.get_ttl("protocol-tvl") == 1800

    def test_unknown_type_uses_default(self) -> None:
        """Test unknown data types fall back to the default TTL."""
        assert DEFAULT_CACHE_CONFIG.get_ttl("pool-apy") == 3600
        assert DEFAULT_CACHE_CONFIG.get_ttl(None) == 3600

    def test_custom_ttls(self) -> None:
        """Test TTLs can be overridden."""
        config = CacheConfig(ttls={DataType.TOKEN_PRICE: 60, DataType.DEFAULT: 120})
        assert config.get_ttl(DataType.TOKEN_PRICE) == 60
        assert config.get_ttl(DataType.PROTOCOL_INFO) == 120
        assert config.stale_ttl(60) == 240


class TestCacheMetrics:
    """Tests for CacheMetrics."""

    @pytest.mark.asyncio
    async def test_hit_rate(self) -> None:
        """Test hit rate as a percentage."""
        metrics = CacheMetrics()
        await metrics.record_hit(1.0)
        await metrics.record_hit(3.0)
        await metrics.record_miss(2.0)
        assert metrics.hit_rate == pytest.approx(66.666, rel=1e-3)
        assert metrics.avg_hit_latency_ms == 2.0

    @pytest.mark.asyncio
    async def test_degradation_counters(self) -> None:
        """Test stale and validation counters."""
        metrics = CacheMetrics()
        await metrics.record_stale_served()
        await metrics.record_validation_failure(merged=True)
        await metrics.record_validation_failure(merged=False)
        data = metrics.to_dict()
        assert data["stale_served"] == 1
        assert data["validation_failures"] == 2
        assert data["merges"] == 1

    def test_reset(self) -> None:
        """Test reset zeroes everything."""
        metrics = CacheMetrics(hits=3, misses=2, stale_served=1)
        metrics.reset()
        assert metrics.to_dict()["total_requests"] == 0
        assert metrics.stale_served == 0


class TestSerialization:
    """Tests for serialize/deserialize."""

    def test_bytes_input(self) -> None:
        """Test byte payloads are decoded."""
        assert deserialize(serialize({"tvl": 1}).encode()) == {"tvl": 1}

    def test_strip_metadata(self) -> None:
        """Test cache-layer fields are removed."""
        assert strip_metadata({"tvl": 1, "_cached_at": 5, "_stale": True}) == {"tvl": 1}
        assert strip_metadata([1, 2]) == [1, 2]

    def test_unwrap_stale(self) -> None:
        """Test wrapped non-mapping values come back unwrapped."""
        assert unwrap_stale({"data": [1, 2], "_cached_at": 5}) == [1, 2]
        assert unwrap_stale({"tvl": 1, "_cached_at": 5}) == {"tvl": 1}


class TestCacheManagerGetSet:
    """Tests for get/set and stale mirrors."""

    @pytest.mark.asyncio
    async def test_set_then_get(self, cache: CacheManager) -> None:
        """Test a written value is read back."""
        assert await cache.set("k", {"usd": 1.0}, ttl=300)
        assert await cache.get("k") == {"usd": 1.0}
        assert cache.metrics.hits == 1

    @pytest.mark.asyncio
    async def test_miss(self, cache: CacheManager) -> None:
        """Test a missing key returns None and counts a miss."""
        assert await cache.get("missing") is None
        assert cache.metrics.misses == 1

    @pytest.mark.asyncio
    async def test_stale_outlives_primary(
        self, cache: CacheManager, store: MemoryCacheStore, store_clock: FakeClock
    ) -> None:
        """Test after ttl the primary is gone while the stale mirror remains."""
        await cache.set("k", {"usd": 1.0}, ttl=300)
        assert await store.ttl("k:stale") == 1200

        store_clock.now = 301.0
        assert await cache.get("k") is None
        stale = await cache.get_stale("k")
        assert stale == {"usd": 1.0, "_cached_at": 1_700_000_000.0}
        assert cache.metrics.stale_served == 1

        store_clock.now = 1201.0
        assert await cache.get_stale("k") is None

    @pytest.mark.asyncio
    async def test_non_mapping_values_wrapped_in_stale(self, cache: CacheManager) -> None:
        """Test scalars and lists are wrapped under data in the stale mirror."""
        await cache.set("k", [1, 2, 3], ttl=60)
        assert await cache.get("k") == [1, 2, 3]
        assert await cache.get_stale("k") == {"data": [1, 2, 3], "_cached_at": 1_700_000_000.0}

    @pytest.mark.asyncio
    async def test_default_ttl(self, cache: CacheManager, store: MemoryCacheStore) -> None:
        """Test set without ttl uses the default TTL."""
        await cache.set("k", 1)
        assert await store.ttl("k") == 3600

    @pytest.mark.asyncio
    async def test_disabled(self, store: MemoryCacheStore) -> None:
        """Test a disabled cache neither reads nor writes."""
        cache = CacheManager(store, enabled=False)
        assert not await cache.set("k", 1, ttl=60)
        assert await cache.get("k") is None
        assert await store.get("k") is None
        assert not await cache.set_with_smart_ttl("k", 1, DataType.TOKEN_PRICE)

    @pytest.mark.asyncio
    async def test_delete_removes_mirror(self, cache: CacheManager, store: MemoryCacheStore) -> None:
        """Test delete removes the primary and its stale mirror."""
        await cache.set("k", {"a": 1}, ttl=60)
        assert await cache.delete("k") == 2
        assert await store.get("k:stale") is None


class TestCacheManagerStoreErrors:
    """Tests for store failures being contained."""

    @pytest.fixture
    def broken_redis(self) -> MagicMock:
        redis = MagicMock()
        redis.get = AsyncMock(side_effect=ConnectionError("redis down"))
        redis.setex = AsyncMock(side_effect=ConnectionError("redis down"))
        redis.delete = AsyncMock(side_effect=ConnectionError("redis down"))
        redis.ttl = AsyncMock(side_effect=ConnectionError("redis down"))
        return redis

    @pytest.mark.asyncio
    async def test_get_error_is_miss(self, broken_redis: MagicMock) -> None:
        """Test read errors are logged, counted and reported as a miss."""
        cache = CacheManager(RedisCacheStore(broken_redis))
        assert await cache.get("k") is None
        assert await cache.get_stale("k") is None
        assert cache.metrics.errors == 2

    @pytest.mark.asyncio
    async def test_set_error_is_failed_write(self, broken_redis: MagicMock) -> None:
        """Test write errors return False instead of raising."""
        cache = CacheManager(RedisCacheStore(broken_redis))
        assert await cache.set("k", 1, ttl=60) is False
        assert await cache.delete("k") == 0
        assert await cache.ttl("k") == -2
        assert cache.metrics.errors == 3

    @pytest.mark.asyncio
    async def test_stale_write_error_keeps_primary(self) -> None:
        """Test a failed stale write does not fail the primary write."""
        redis = MagicMock()
        redis.setex = AsyncMock(side_effect=[None, ConnectionError("flaky")])
        cache = CacheManager(RedisCacheStore(redis))

        assert await cache.set("k", {"a": 1}, ttl=60) is True
        assert cache.metrics.errors == 1
        first_call = redis.setex.call_args_list[0]
        assert first_call.args == ("k", 60, json.dumps({"a": 1}))


class TestSetWithSmartTtl:
    """Tests for set_with_smart_ttl."""

    @pytest.mark.asyncio
    async def test_uses_data_type_ttl(self, cache: CacheManager, store: MemoryCacheStore) -> None:
        """Test the TTL comes from the data type."""
        await cache.set_with_smart_ttl("k", {"usd": 1.0}, DataType.TOKEN_PRICE)
        assert await store.ttl("k") == 300
        assert await store.ttl("k:stale") == 1200

    @pytest.mark.asyncio
    async def test_idempotent(self, validated_cache: CacheManager, store: MemoryCacheStore) -> None:
        """Test writing the same value twice equals writing it once."""
        await validated_cache.set_with_smart_ttl("k", {"tvl": 5.0}, "protocol-tvl")
        first = (await store.get("k"), await store.get("k:stale"), await store.ttl("k"))

        await validated_cache.set_with_smart_ttl("k", {"tvl": 5.0}, "protocol-tvl")
        second = (await store.get("k"), await store.get("k:stale"), await store.ttl("k"))

        assert first == second

    @pytest.mark.asyncio
    async def test_skips_placeholders(self, cache: CacheManager, store: MemoryCacheStore) -> None:
        """Test unavailable placeholders are never cached."""
        placeholder = {"data": 0, "_unavailable": True, "_error": "down"}
        assert await cache.set_with_smart_ttl("k", placeholder) is False
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_invalid_with_stale_merges(
        self, validated_cache: CacheManager, store: MemoryCacheStore, store_clock: FakeClock
    ) -> None:
        """Test a suspicious value is patched from stale and stale TTL is extended."""
        await validated_cache.set_with_smart_ttl(
            "k", {"tvl": 1_000_000, "name": "Aave"}, DataType.PROTOCOL_TVL
        )
        store_clock.now = 100.0

        written = await validated_cache.set_with_smart_ttl(
            "k", {"tvl": 0, "name": "Aave v3"}, DataType.PROTOCOL_TVL
        )

        assert written
        assert await validated_cache.get("k") == {"tvl": 1_000_000, "name": "Aave v3"}
        assert await store.ttl("k:stale") == 7200
        assert validated_cache.metrics.validation_failures == 1
        assert validated_cache.metrics.merges == 1

    @pytest.mark.asyncio
    async def test_invalid_after_primary_expired_uses_stale(
        self, validated_cache: CacheManager, store_clock: FakeClock
    ) -> None:
        """Test the stale copy is the baseline once the primary expired."""
        await validated_cache.set_with_smart_ttl("k", {"price": 1.0}, DataType.TOKEN_PRICE)
        store_clock.now = 301.0

        await validated_cache.set_with_smart_ttl("k", {"price": 0}, DataType.TOKEN_PRICE)

        assert await validated_cache.get("k") == {"price": 1.0}

    @pytest.mark.asyncio
    async def test_rejected_list_keeps_stale_copy(
        self, validated_cache: CacheManager, store: MemoryCacheStore, store_clock: FakeClock
    ) -> None:
        """Test an empty list replacing good data restores the stale copy instead."""
        protocols = [{"name": "aave"}]
        await validated_cache.set_with_smart_ttl("dl:all", protocols, DataType.ALL_PROTOCOLS)
        store_clock.now = 100.0

        written = await validated_cache.set_with_smart_ttl("dl:all", [], DataType.ALL_PROTOCOLS)

        assert written
        assert await validated_cache.get("dl:all") == protocols
        assert await validated_cache.get_stale("dl:all") == {
            "data": protocols,
            "_cached_at": 1_700_000_000.0,
        }
        assert await store.ttl("dl:all:stale") == 4 * 43200
        assert validated_cache.metrics.validation_failures == 1
        assert validated_cache.metrics.merges == 0

    @pytest.mark.asyncio
    async def test_rejected_list_after_primary_expired(
        self, validated_cache: CacheManager, store_clock: FakeClock
    ) -> None:
        """Test the unwrapped stale list is the baseline once the primary expired."""
        protocols = [{"name": "aave"}, {"name": "curve"}]
        await validated_cache.set_with_smart_ttl("dl:all", protocols, DataType.ALL_PROTOCOLS)
        store_clock.now = 43201.0

        await validated_cache.set_with_smart_ttl("dl:all", [], DataType.ALL_PROTOCOLS)

        assert await validated_cache.get("dl:all") == protocols

    @pytest.mark.asyncio
    async def test_invalid_without_stale_writes_anyway(
        self, validated_cache: CacheManager
    ) -> None:
        """Test a rejected value is still written when there is nothing to merge."""
        assert await validated_cache.set_with_smart_ttl("k", {"symbol": None}, "protocol-info")
        assert await validated_cache.get("k") == {"symbol": None}
        assert validated_cache.metrics.validation_failures == 1
        assert validated_cache.metrics.merges == 0


class TestCleanup:
    """Tests for cleanup."""

    @pytest.mark.asyncio
    async def test_noop_with_native_ttl(self) -> None:
        """Test cleanup does nothing for Redis."""
        redis = MagicMock()
        cache = CacheManager(RedisCacheStore(redis))
        assert await cache.cleanup() == 0

    @pytest.mark.asyncio
    async def test_purges_memory_store(
        self, cache: CacheManager, store_clock: FakeClock
    ) -> None:
        """Test cleanup purges expired entries from the memory store."""
        await cache.set("k", 1, ttl=10)
        store_clock.now = 11.0
        assert await cache.cleanup() == 1
