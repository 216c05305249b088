"""Tests for change-driven cache invalidation."""

import asyncio
import json

import pytest

from inventory_engine.core.cache import CacheLayer, StoreDataCache
from inventory_engine.services.change_listener import ChangeKind, ChangeNotificationListener

DEBOUNCE = 0.05


@pytest.fixture
def filled_cache():
    cache = StoreDataCache()
    for store_id in (1, 2):
        cache.set(store_id, CacheLayer.PRODUCTS, "essential", "grid")
        cache.set(store_id, CacheLayer.PRODUCTS, "detailed", "availability")
        cache.set(store_id, CacheLayer.INVENTORY, "rows", "rows")
        cache.set(store_id, CacheLayer.RECIPE_INGREDIENTS, "recipes:1", "lines")
        cache.set(store_id, CacheLayer.BATCHED_DATA, "store", "snapshot")
        cache.set(store_id, CacheLayer.CART_VALIDATION, "cart:1", "cart")
    return cache


def cached_keys(cache, store_id):
    keys = []
    for layer, key in [
        (CacheLayer.PRODUCTS, "essential"),
        (CacheLayer.PRODUCTS, "detailed"),
        (CacheLayer.INVENTORY, "rows"),
        (CacheLayer.RECIPE_INGREDIENTS, "recipes:1"),
        (CacheLayer.BATCHED_DATA, "store"),
        (CacheLayer.CART_VALIDATION, "cart:1"),
    ]:
        if cache.get(store_id, layer, key) is not None:
            keys.append(f"{layer.value}:{key}")
    return keys


def event(table, store_id=1, operation="UPDATE"):
    return json.dumps({"table": table, "store_id": store_id, "operation": operation})


class TestApply:
    def test_inventory_change(self, filled_cache):
        listener = ChangeNotificationListener(filled_cache)
        listener.apply(1, [ChangeKind.INVENTORY_STOCK])
        assert cached_keys(filled_cache, 1) == ["products:essential", "recipe_ingredients:recipes:1"]
        assert len(cached_keys(filled_cache, 2)) == 6

    def test_catalog_change(self, filled_cache):
        listener = ChangeNotificationListener(filled_cache)
        listener.apply(1, [ChangeKind.PRODUCT_CATALOG])
        assert cached_keys(filled_cache, 1) == ["inventory:rows", "recipe_ingredients:recipes:1"]

    def test_recipe_change(self, filled_cache):
        listener = ChangeNotificationListener(filled_cache)
        listener.apply(1, [ChangeKind.RECIPE_INGREDIENTS])
        assert cached_keys(filled_cache, 1) == ["products:essential", "inventory:rows"]

    def test_no_store_applies_everywhere(self, filled_cache):
        listener = ChangeNotificationListener(filled_cache)
        listener.apply(None, [ChangeKind.INVENTORY_STOCK])
        for store_id in (1, 2):
            assert cached_keys(filled_cache, store_id) == [
                "products:essential",
                "recipe_ingredients:recipes:1",
            ]


class TestDebounce:
    @pytest.mark.asyncio
    async def test_burst_is_invalidated_once_after_quiet_period(self, filled_cache, monkeypatch):
        listener = ChangeNotificationListener(filled_cache, debounce_seconds=DEBOUNCE)
        applied = []
        original = listener.apply
        monkeypatch.setattr(listener, "apply", lambda s, k: applied.append((s, set(k))) or original(s, k))

        for _ in range(10):
            assert listener.handle_message(event("inventory_stock"))
        listener.handle_message(event("recipe_ingredients"))
        assert applied == []
        assert len(cached_keys(filled_cache, 1)) == 6

        await asyncio.sleep(DEBOUNCE * 3)
        assert applied == [(1, {ChangeKind.INVENTORY_STOCK, ChangeKind.RECIPE_INGREDIENTS})]
        assert cached_keys(filled_cache, 1) == ["products:essential"]

    @pytest.mark.asyncio
    async def test_stores_are_debounced_independently(self, filled_cache):
        listener = ChangeNotificationListener(filled_cache, debounce_seconds=DEBOUNCE)
        listener.handle_message(event("product_catalog", store_id=1))
        listener.handle_message(event("inventory_stock", store_id=2))
        assert listener.pending_stores() == {1, 2}

        await asyncio.sleep(DEBOUNCE * 3)
        assert "products:essential" not in cached_keys(filled_cache, 1)
        assert "inventory:rows" not in cached_keys(filled_cache, 2)
        assert listener.pending_stores() == set()

    @pytest.mark.asyncio
    async def test_flush_all_applies_pending_now(self, filled_cache):
        listener = ChangeNotificationListener(filled_cache, debounce_seconds=10)
        listener.handle_message(event("inventory_stock"))
        listener.flush_all()
        assert "inventory:rows" not in cached_keys(filled_cache, 1)

    @pytest.mark.asyncio
    async def test_run_consumes_source(self, filled_cache):
        listener = ChangeNotificationListener(filled_cache, debounce_seconds=10)

        async def source():
            yield event("inventory_stock")
            yield b'{"table": "product_catalog", "store_id": 2}'

        await listener.run(source())
        # Source ended; pending work is dropped with the listener
        assert listener.pending_stores() == set()


class TestMalformedEvents:
    @pytest.mark.parametrize(
        "message",
        ["not json", json.dumps({"table": "suppliers", "store_id": 1}), json.dumps([1, 2]), b"\xff\xfe"],
    )
    def test_ignored(self, filled_cache, message):
        listener = ChangeNotificationListener(filled_cache)
        assert listener.handle_message(message) is False
        assert listener.pending_stores() == set()
