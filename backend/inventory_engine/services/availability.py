"""Availability Calculator - producible quantity of products from a snapshot.

Pure functions over a BatchedSnapshot, no I/O. The producible quantity of a
recipe product is limited by its scarcest ingredient:

    quantity = min over ingredients of floor(stock / required_per_unit)

One unmapped or inactive ingredient makes the whole product out of stock.
Products without a recipe are direct-sale items and report a fixed sentinel
quantity.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from inventory_engine.services.repository import ProductRow
from inventory_engine.services.snapshot import BatchedSnapshot, SnapshotRecipeIngredient

DEFAULT_LOW_STOCK_THRESHOLD = 5
DIRECT_SALE_QUANTITY = 999


class AvailabilityStatus(str, Enum):
    AVAILABLE = "available"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"
    NO_RECIPE = "no_recipe"


@dataclass
class IngredientRequirement:
    ingredient_name: str
    required_quantity: Decimal
    unit: str
    inventory_stock_id: Optional[int]
    inventory_item: Optional[str]
    available_stock: Optional[Decimal]
    possible_units: Optional[int]  # None when the ingredient does not limit output
    is_sufficient: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ingredient_name": self.ingredient_name,
            "required_quantity": float(self.required_quantity),
            "unit": self.unit,
            "inventory_stock_id": self.inventory_stock_id,
            "inventory_item": self.inventory_item,
            "available_stock": float(self.available_stock) if self.available_stock is not None else None,
            "possible_units": self.possible_units,
            "is_sufficient": self.is_sufficient,
        }


@dataclass
class ProductAvailability:
    product_id: int
    product_name: str
    quantity: int
    status: AvailabilityStatus
    recipe_id: Optional[int] = None
    requirements: List[IngredientRequirement] = field(default_factory=list)

    @property
    def is_available(self) -> bool:
        return self.status in (AvailabilityStatus.AVAILABLE, AvailabilityStatus.LOW_STOCK)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "status": self.status.value,
            "is_available": self.is_available,
            "recipe_id": self.recipe_id,
            "requirements": [r.to_dict() for r in self.requirements],
        }


@dataclass
class CartItem:
    product_id: int
    quantity: int = 1


@dataclass
class CartValidation:
    is_valid: bool
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    items: List[ProductAvailability] = field(default_factory=list)


def _requirement(ingredient: SnapshotRecipeIngredient) -> IngredientRequirement:
    usable = ingredient.is_mapped and ingredient.inventory_active
    if not usable:
        return IngredientRequirement(
            ingredient_name=ingredient.ingredient_name,
            required_quantity=ingredient.required_quantity,
            unit=ingredient.unit,
            inventory_stock_id=ingredient.inventory_stock_id,
            inventory_item=ingredient.inventory_item,
            available_stock=ingredient.inventory_stock,
            possible_units=0,
            is_sufficient=False,
        )

    stock = max(ingredient.inventory_stock, Decimal("0"))
    if ingredient.required_quantity <= 0:
        possible: Optional[int] = None
    else:
        possible = int(stock // ingredient.required_quantity)
    return IngredientRequirement(
        ingredient_name=ingredient.ingredient_name,
        required_quantity=ingredient.required_quantity,
        unit=ingredient.unit,
        inventory_stock_id=ingredient.inventory_stock_id,
        inventory_item=ingredient.inventory_item,
        available_stock=ingredient.inventory_stock,
        possible_units=possible,
        is_sufficient=possible is None or possible > 0,
    )


def compute_availability(
    product: ProductRow,
    snapshot: BatchedSnapshot,
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD,
    direct_sale_quantity: int = DIRECT_SALE_QUANTITY,
) -> ProductAvailability:
    """Producible quantity and status of one product."""
    result = ProductAvailability(
        product_id=product.id,
        product_name=product.name,
        quantity=0,
        status=AvailabilityStatus.OUT_OF_STOCK,
        recipe_id=product.recipe_id,
    )

    if product.recipe_id is None:
        result.quantity = direct_sale_quantity
        result.status = AvailabilityStatus.AVAILABLE
        return result

    if not product.recipe_active:
        return result

    ingredients = snapshot.ingredients_for(product.recipe_id)
    if not ingredients:
        result.status = AvailabilityStatus.NO_RECIPE
        return result

    result.requirements = [_requirement(i) for i in ingredients]
    if not all(r.is_sufficient for r in result.requirements):
        return result

    limits = [r.possible_units for r in result.requirements if r.possible_units is not None]
    quantity = min(limits) if limits else direct_sale_quantity
    result.quantity = quantity
    if quantity <= 0:
        result.status = AvailabilityStatus.OUT_OF_STOCK
    elif quantity <= low_stock_threshold:
        result.status = AvailabilityStatus.LOW_STOCK
    else:
        result.status = AvailabilityStatus.AVAILABLE
    return result


def compute_store_availability(
    snapshot: BatchedSnapshot,
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD,
    direct_sale_quantity: int = DIRECT_SALE_QUANTITY,
) -> List[ProductAvailability]:
    return [
        compute_availability(p, snapshot, low_stock_threshold, direct_sale_quantity)
        for p in snapshot.products
    ]


def summarize_availability(results: Iterable[ProductAvailability]) -> Dict[str, int]:
    """Count products per status."""
    summary = {"total_products": 0}
    summary.update({status.value: 0 for status in AvailabilityStatus})
    for result in results:
        summary["total_products"] += 1
        summary[result.status.value] += 1
    return summary


def validate_cart(
    snapshot: BatchedSnapshot,
    items: Sequence[CartItem],
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD,
    direct_sale_quantity: int = DIRECT_SALE_QUANTITY,
) -> CartValidation:
    """Check that every cart line can be produced in the requested quantity.

    Quantities of repeated products are combined before checking.
    """
    requested: Dict[int, int] = {}
    for item in items:
        requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity

    validation = CartValidation(is_valid=True)
    for product_id, quantity in requested.items():
        product = snapshot.product(product_id)
        if product is None:
            validation.errors.append({"product_id": product_id, "error": "Product not found"})
            continue
        if quantity <= 0:
            validation.errors.append(
                {"product_id": product_id, "error": f"Invalid quantity {quantity} for '{product.name}'"}
            )
            continue

        availability = compute_availability(product, snapshot, low_stock_threshold, direct_sale_quantity)
        validation.items.append(availability)

        if availability.status is AvailabilityStatus.NO_RECIPE:
            validation.errors.append(
                {"product_id": product_id, "error": f"'{product.name}' has no recipe ingredients"}
            )
        elif availability.status is AvailabilityStatus.OUT_OF_STOCK:
            missing = [r.ingredient_name for r in availability.requirements if not r.is_sufficient]
            validation.errors.append(
                {
                    "product_id": product_id,
                    "error": f"'{product.name}' is out of stock",
                    "missing_ingredients": missing,
                }
            )
        elif quantity > availability.quantity:
            validation.errors.append(
                {
                    "product_id": product_id,
                    "error": f"Only {availability.quantity} of '{product.name}' can be made, "
                    f"{quantity} requested",
                }
            )
        elif availability.status is AvailabilityStatus.LOW_STOCK:
            validation.warnings.append(
                {
                    "product_id": product_id,
                    "warning": f"'{product.name}' is low on stock ({availability.quantity} left)",
                }
            )

    validation.is_valid = not validation.errors
    return validation
