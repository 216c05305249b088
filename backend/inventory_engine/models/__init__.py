"""SQLAlchemy models."""

from inventory_engine.models.store import Store, Category
from inventory_engine.models.product import Product
from inventory_engine.models.recipe import (
    Recipe,
    RecipeIngredient,
    RecipeTemplate,
    RecipeTemplateIngredient,
)
from inventory_engine.models.inventory import (
    InventoryStock,
    InventoryMovement,
    InventorySyncResult,
    MovementType,
    SyncStatus,
)

__all__ = [
    "Store",
    "Category",
    "Product",
    "Recipe",
    "RecipeIngredient",
    "RecipeTemplate",
    "RecipeTemplateIngredient",
    "InventoryStock",
    "InventoryMovement",
    "InventorySyncResult",
    "MovementType",
    "SyncStatus",
]
