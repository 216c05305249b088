"""Tests for the availability calculator."""

from decimal import Decimal

import pytest

from inventory_engine.services.availability import (
    DIRECT_SALE_QUANTITY,
    AvailabilityStatus,
    CartItem,
    compute_availability,
    compute_store_availability,
    summarize_availability,
    validate_cart,
)
from inventory_engine.services.repository import IngredientMappingRow, InventoryRow, ProductRow
from inventory_engine.services.snapshot import assemble_snapshot

STORE_ID = 1


def product(pid, name, recipe_id=None, recipe_active=True):
    return ProductRow(
        id=pid,
        store_id=STORE_ID,
        name=name,
        price=Decimal("4.50"),
        recipe_id=recipe_id,
        recipe_name=name if recipe_id else None,
        recipe_active=recipe_active if recipe_id else None,
    )


def stock(sid, item, qty, active=True, store_id=STORE_ID):
    return InventoryRow(
        id=sid, store_id=store_id, item=item, unit="g", stock_quantity=Decimal(str(qty)), is_active=active
    )


def line(lid, recipe_id, name, qty, stock_id=None):
    return IngredientMappingRow(
        id=lid,
        recipe_id=recipe_id,
        ingredient_name=name,
        quantity=Decimal(str(qty)),
        unit="g",
        inventory_stock_id=stock_id,
        position=lid,
    )


@pytest.fixture
def latte_snapshot():
    """Latte: beans 18/unit with 200 in stock, milk 150/unit with 900 in stock."""
    return assemble_snapshot(
        STORE_ID,
        products=[product(1, "Latte", recipe_id=10), product(2, "Bottled Water")],
        inventory=[stock(100, "Coffee Beans", 200), stock(101, "Milk", 900)],
        mapping_rows=[line(1, 10, "Coffee Beans", 18, 100), line(2, 10, "Milk", 150, 101)],
    )


class TestComputeAvailability:
    def test_limiting_ingredient_sets_quantity(self, latte_snapshot):
        result = compute_availability(latte_snapshot.product(1), latte_snapshot)

        assert result.quantity == 6
        by_name = {r.ingredient_name: r for r in result.requirements}
        assert by_name["Coffee Beans"].possible_units == 11
        assert by_name["Milk"].possible_units == 6

    def test_latte_is_low_stock_under_threshold_ten(self, latte_snapshot):
        result = compute_availability(latte_snapshot.product(1), latte_snapshot, low_stock_threshold=10)
        assert result.status is AvailabilityStatus.LOW_STOCK
        assert result.is_available

    def test_latte_is_available_with_default_threshold(self, latte_snapshot):
        result = compute_availability(latte_snapshot.product(1), latte_snapshot)
        assert result.status is AvailabilityStatus.AVAILABLE

    def test_quantity_at_threshold_is_low_stock(self, latte_snapshot):
        result = compute_availability(latte_snapshot.product(1), latte_snapshot, low_stock_threshold=6)
        assert result.status is AvailabilityStatus.LOW_STOCK

    @pytest.mark.parametrize("inventory", [[], [stock(100, "Flour", 0)], [stock(100, "Flour", 50000)]])
    def test_direct_sale_product_ignores_inventory(self, inventory):
        snapshot = assemble_snapshot(STORE_ID, [product(2, "Bottled Water")], inventory, [])
        result = compute_availability(snapshot.product(2), snapshot)

        assert result.quantity == DIRECT_SALE_QUANTITY
        assert result.status is AvailabilityStatus.AVAILABLE
        assert result.requirements == []

    def test_direct_sale_sentinel_is_configurable(self, latte_snapshot):
        result = compute_availability(latte_snapshot.product(2), latte_snapshot, direct_sale_quantity=100)
        assert result.quantity == 100

    def test_inactive_recipe_is_out_of_stock(self):
        snapshot = assemble_snapshot(
            STORE_ID,
            [product(1, "Latte", recipe_id=10, recipe_active=False)],
            [stock(100, "Coffee Beans", 5000)],
            [line(1, 10, "Coffee Beans", 18, 100)],
        )
        result = compute_availability(snapshot.product(1), snapshot)
        assert result.quantity == 0
        assert result.status is AvailabilityStatus.OUT_OF_STOCK

    def test_recipe_without_ingredients_is_no_recipe(self):
        snapshot = assemble_snapshot(STORE_ID, [product(1, "Mystery", recipe_id=10)], [], [])
        result = compute_availability(snapshot.product(1), snapshot)
        assert result.quantity == 0
        assert result.status is AvailabilityStatus.NO_RECIPE

    def test_one_unmapped_ingredient_forces_out_of_stock(self):
        snapshot = assemble_snapshot(
            STORE_ID,
            [product(1, "Mocha", recipe_id=10)],
            [stock(100, "Coffee Beans", 100000), stock(101, "Milk", 100000)],
            [
                line(1, 10, "Coffee Beans", 18, 100),
                line(2, 10, "Milk", 150, 101),
                line(3, 10, "Chocolate Syrup", 30, None),
            ],
        )
        result = compute_availability(snapshot.product(1), snapshot)

        assert result.status is AvailabilityStatus.OUT_OF_STOCK
        assert result.quantity == 0
        unmapped = [r for r in result.requirements if not r.is_sufficient]
        assert [r.ingredient_name for r in unmapped] == ["Chocolate Syrup"]

    def test_inactive_inventory_row_counts_as_insufficient(self):
        snapshot = assemble_snapshot(
            STORE_ID,
            [product(1, "Latte", recipe_id=10)],
            [stock(100, "Coffee Beans", 1000, active=False)],
            [line(1, 10, "Coffee Beans", 18, 100)],
        )
        assert compute_availability(snapshot.product(1), snapshot).status is AvailabilityStatus.OUT_OF_STOCK

    def test_row_from_another_store_counts_as_unmapped(self):
        snapshot = assemble_snapshot(
            STORE_ID,
            [product(1, "Latte", recipe_id=10)],
            [stock(100, "Coffee Beans", 1000, store_id=2)],
            [line(1, 10, "Coffee Beans", 18, 100)],
        )
        result = compute_availability(snapshot.product(1), snapshot)
        assert result.status is AvailabilityStatus.OUT_OF_STOCK
        assert result.requirements[0].inventory_stock_id is None

    def test_insufficient_stock_is_out_of_stock(self):
        snapshot = assemble_snapshot(
            STORE_ID,
            [product(1, "Latte", recipe_id=10)],
            [stock(100, "Coffee Beans", 17)],
            [line(1, 10, "Coffee Beans", 18, 100)],
        )
        result = compute_availability(snapshot.product(1), snapshot)
        assert result.quantity == 0
        assert result.status is AvailabilityStatus.OUT_OF_STOCK

    def test_negative_stock_counts_as_zero(self):
        snapshot = assemble_snapshot(
            STORE_ID,
            [product(1, "Latte", recipe_id=10)],
            [stock(100, "Coffee Beans", -40)],
            [line(1, 10, "Coffee Beans", 18, 100)],
        )
        assert compute_availability(snapshot.product(1), snapshot).quantity == 0

    def test_zero_quantity_ingredient_does_not_limit(self):
        snapshot = assemble_snapshot(
            STORE_ID,
            [product(1, "Espresso", recipe_id=10)],
            [stock(100, "Coffee Beans", 180), stock(101, "Water", 0)],
            [line(1, 10, "Coffee Beans", 18, 100), line(2, 10, "Water", 0, 101)],
        )
        result = compute_availability(snapshot.product(1), snapshot)
        assert result.quantity == 10
        assert result.status is AvailabilityStatus.AVAILABLE

    @pytest.mark.parametrize(
        "beans, milk, expected",
        [(200, 900, 6), (1000, 900, 6), (50, 100000, 2), (18, 150, 1), (0, 900, 0)],
    )
    def test_quantity_is_minimum_over_ingredients(self, beans, milk, expected):
        snapshot = assemble_snapshot(
            STORE_ID,
            [product(1, "Latte", recipe_id=10)],
            [stock(100, "Coffee Beans", beans), stock(101, "Milk", milk)],
            [line(1, 10, "Coffee Beans", 18, 100), line(2, 10, "Milk", 150, 101)],
        )
        assert compute_availability(snapshot.product(1), snapshot).quantity == expected


class TestStoreAvailability:
    def test_summary_counts_statuses(self, latte_snapshot):
        results = compute_store_availability(latte_snapshot, low_stock_threshold=10)
        summary = summarize_availability(results)

        assert summary == {
            "total_products": 2,
            "available": 1,
            "low_stock": 1,
            "out_of_stock": 0,
            "no_recipe": 0,
        }


class TestValidateCart:
    def test_valid_cart(self, latte_snapshot):
        validation = validate_cart(latte_snapshot, [CartItem(1, 2), CartItem(2, 5)])
        assert validation.is_valid
        assert validation.errors == []

    def test_quantity_above_producible_is_error(self, latte_snapshot):
        validation = validate_cart(latte_snapshot, [CartItem(1, 7)])
        assert not validation.is_valid
        assert "Only 6" in validation.errors[0]["error"]

    def test_repeated_lines_are_combined(self, latte_snapshot):
        validation = validate_cart(latte_snapshot, [CartItem(1, 4), CartItem(1, 3)])
        assert not validation.is_valid

    def test_unknown_product_is_error(self, latte_snapshot):
        validation = validate_cart(latte_snapshot, [CartItem(99, 1)])
        assert validation.errors == [{"product_id": 99, "error": "Product not found"}]

    def test_low_stock_is_warning(self, latte_snapshot):
        validation = validate_cart(latte_snapshot, [CartItem(1, 1)], low_stock_threshold=10)
        assert validation.is_valid
        assert len(validation.warnings) == 1
        assert validation.warnings[0]["product_id"] == 1

    def test_out_of_stock_lists_missing_ingredients(self):
        snapshot = assemble_snapshot(
            STORE_ID,
            [product(1, "Mocha", recipe_id=10)],
            [],
            [line(1, 10, "Chocolate Syrup", 30, None)],
        )
        validation = validate_cart(snapshot, [CartItem(1, 1)])
        assert not validation.is_valid
        assert validation.errors[0]["missing_ingredients"] == ["Chocolate Syrup"]
