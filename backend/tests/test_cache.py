"""Tests for the layered store cache."""

import asyncio

import pytest

from inventory_engine.core.cache import CacheLayer, StoreDataCache


@pytest.fixture
def store_cache(clock):
    return StoreDataCache(clock=clock)


class TestGetSet:
    def test_get_after_set_returns_stored_value(self, store_cache):
        value = {"rows": [1, 2, 3]}
        store_cache.set(1, CacheLayer.PRODUCTS, "essential", value)
        assert store_cache.get(1, CacheLayer.PRODUCTS, "essential") is value

    def test_miss_returns_none(self, store_cache):
        assert store_cache.get(1, CacheLayer.INVENTORY, "rows") is None

    def test_entry_valid_until_ttl_elapses(self, store_cache, clock):
        store_cache.set(1, CacheLayer.INVENTORY, "rows", [1])
        clock.advance(5 * 60)
        assert store_cache.get(1, CacheLayer.INVENTORY, "rows") == [1]

    def test_entry_missing_after_ttl(self, store_cache, clock):
        store_cache.set(1, CacheLayer.INVENTORY, "rows", [1])
        clock.advance(5 * 60 + 1)
        assert store_cache.get(1, CacheLayer.INVENTORY, "rows") is None
        assert store_cache.stats()["total_keys"] == 0

    def test_layers_have_independent_ttls(self, store_cache, clock):
        store_cache.set(1, CacheLayer.PRODUCTS, "k", "catalog")
        store_cache.set(1, CacheLayer.CART_VALIDATION, "k", "cart")
        clock.advance(3 * 60)
        assert store_cache.get(1, CacheLayer.PRODUCTS, "k") == "catalog"
        assert store_cache.get(1, CacheLayer.CART_VALIDATION, "k") is None

    def test_custom_ttl(self, clock):
        cache = StoreDataCache(layer_ttls={CacheLayer.PRODUCTS: 10}, clock=clock)
        cache.set(1, CacheLayer.PRODUCTS, "k", "v")
        clock.advance(11)
        assert cache.get(1, CacheLayer.PRODUCTS, "k") is None
        assert cache.ttl_for(CacheLayer.INVENTORY) == 5 * 60

    def test_none_is_not_cached(self, store_cache):
        store_cache.set(1, CacheLayer.PRODUCTS, "k", None)
        assert store_cache.stats()["total_keys"] == 0

    def test_empty_list_is_cached(self, store_cache):
        store_cache.set(1, CacheLayer.INVENTORY, "rows", [])
        assert store_cache.get(1, CacheLayer.INVENTORY, "rows") == []

    def test_stores_are_isolated(self, store_cache):
        store_cache.set(1, CacheLayer.PRODUCTS, "k", "one")
        store_cache.set(2, CacheLayer.PRODUCTS, "k", "two")
        assert store_cache.get(1, CacheLayer.PRODUCTS, "k") == "one"
        assert store_cache.get(2, CacheLayer.PRODUCTS, "k") == "two"


class TestEntryTtl:
    def test_shorter_entry_ttl(self, store_cache, clock):
        store_cache.set(1, CacheLayer.BATCHED_DATA, "store", "snapshot", ttl=30)
        clock.advance(31)
        assert store_cache.get(1, CacheLayer.BATCHED_DATA, "store") is None

    def test_entry_ttl_cannot_exceed_layer_ttl(self, store_cache, clock):
        store_cache.set(1, CacheLayer.CART_VALIDATION, "k", "v", ttl=3600)
        assert store_cache.remaining_ttl(1, CacheLayer.CART_VALIDATION, "k") == 2 * 60

    def test_non_positive_ttl_drops_entry(self, store_cache):
        store_cache.set(1, CacheLayer.PRODUCTS, "k", "old")
        store_cache.set(1, CacheLayer.PRODUCTS, "k", "new", ttl=0)
        assert store_cache.get(1, CacheLayer.PRODUCTS, "k") is None

    def test_remaining_ttl(self, store_cache, clock):
        store_cache.set(1, CacheLayer.INVENTORY, "rows", [1])
        clock.advance(100)
        assert store_cache.remaining_ttl(1, CacheLayer.INVENTORY, "rows") == 200
        clock.advance(201)
        assert store_cache.remaining_ttl(1, CacheLayer.INVENTORY, "rows") is None
        assert store_cache.remaining_ttl(1, CacheLayer.INVENTORY, "missing") is None


class TestInvalidation:
    def test_invalidate_layer_only_touches_that_store_and_layer(self, store_cache):
        store_cache.set(1, CacheLayer.INVENTORY, "a", 1)
        store_cache.set(1, CacheLayer.INVENTORY, "b", 2)
        store_cache.set(1, CacheLayer.PRODUCTS, "a", 3)
        store_cache.set(2, CacheLayer.INVENTORY, "a", 4)

        assert store_cache.invalidate_layer(1, CacheLayer.INVENTORY) == 2
        assert store_cache.get(1, CacheLayer.INVENTORY, "a") is None
        assert store_cache.get(1, CacheLayer.PRODUCTS, "a") == 3
        assert store_cache.get(2, CacheLayer.INVENTORY, "a") == 4

    def test_clear_store(self, store_cache):
        store_cache.set(1, CacheLayer.INVENTORY, "a", 1)
        store_cache.set(1, CacheLayer.PRODUCTS, "a", 2)
        store_cache.set(2, CacheLayer.PRODUCTS, "a", 3)

        assert store_cache.clear_store(1) == 2
        assert store_cache.get(2, CacheLayer.PRODUCTS, "a") == 3

    def test_invalidate_layer_all_stores(self, store_cache):
        store_cache.set(1, CacheLayer.BATCHED_DATA, "store", 1)
        store_cache.set(2, CacheLayer.BATCHED_DATA, "store", 2)
        store_cache.set(2, CacheLayer.PRODUCTS, "essential", 3)

        assert store_cache.invalidate_layer_all_stores(CacheLayer.BATCHED_DATA) == 2
        assert store_cache.get(2, CacheLayer.PRODUCTS, "essential") == 3

    def test_delete_all_stores_removes_one_key(self, store_cache):
        store_cache.set(1, CacheLayer.PRODUCTS, "detailed", 1)
        store_cache.set(2, CacheLayer.PRODUCTS, "detailed", 2)
        store_cache.set(2, CacheLayer.PRODUCTS, "essential", 3)

        assert store_cache.delete_all_stores(CacheLayer.PRODUCTS, "detailed") == 2
        assert store_cache.get(2, CacheLayer.PRODUCTS, "essential") == 3

    def test_delete(self, store_cache):
        store_cache.set(1, CacheLayer.PRODUCTS, "k", 1)
        assert store_cache.delete(1, CacheLayer.PRODUCTS, "k") is True
        assert store_cache.delete(1, CacheLayer.PRODUCTS, "k") is False


class TestLimitsAndStats:
    def test_evicts_oldest_when_full(self, clock):
        cache = StoreDataCache(max_entries=150, clock=clock)
        for i in range(150):
            cache.set(1, CacheLayer.PRODUCTS, f"k{i}", i)
            clock.advance(0.01)
        cache.set(1, CacheLayer.PRODUCTS, "new", "value")

        assert cache.get(1, CacheLayer.PRODUCTS, "k0") is None
        assert cache.get(1, CacheLayer.PRODUCTS, "k149") == 149
        assert cache.get(1, CacheLayer.PRODUCTS, "new") == "value"

    def test_stats_counts_hits_and_misses(self, store_cache):
        store_cache.set(1, CacheLayer.PRODUCTS, "k", 1)
        store_cache.get(1, CacheLayer.PRODUCTS, "k")
        store_cache.get(1, CacheLayer.PRODUCTS, "missing")

        stats = store_cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["layers"] == {"products": 1}


class TestScheduledExpiry:
    @pytest.mark.asyncio
    async def test_entry_removed_by_timer_inside_event_loop(self):
        cache = StoreDataCache(layer_ttls={CacheLayer.CART_VALIDATION: 0.05})
        cache.set(1, CacheLayer.CART_VALIDATION, "k", "v")
        assert cache.stats()["total_keys"] == 1

        await asyncio.sleep(0.1)
        assert cache.stats()["total_keys"] == 0

    @pytest.mark.asyncio
    async def test_replacing_entry_cancels_old_timer(self):
        cache = StoreDataCache(layer_ttls={CacheLayer.CART_VALIDATION: 0.05})
        cache.set(1, CacheLayer.CART_VALIDATION, "k", "old")
        await asyncio.sleep(0.03)
        cache.set(1, CacheLayer.CART_VALIDATION, "k", "new")
        await asyncio.sleep(0.03)

        assert cache.get(1, CacheLayer.CART_VALIDATION, "k") == "new"
