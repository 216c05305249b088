"""Recipe (bill of materials) and global recipe template models."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inventory_engine.db.base import Base, TimestampMixin


class Recipe(Base, TimestampMixin):
    """A store-specific recipe mapping one unit of product to its ingredients."""

    __tablename__ = "recipes"

    id: Mapped[int] = mapped_column(primary_key=True)
    store_id: Mapped[int] = mapped_column(
        ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    ingredients: Mapped[list["RecipeIngredient"]] = relationship(
        "RecipeIngredient",
        back_populates="recipe",
        cascade="all, delete-orphan",
        order_by="RecipeIngredient.position",
    )


class RecipeIngredient(Base):
    """One ingredient line. An unmapped line (no inventory_stock_id) is expected."""

    __tablename__ = "recipe_ingredients"

    id: Mapped[int] = mapped_column(primary_key=True)
    recipe_id: Mapped[int] = mapped_column(
        ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    ingredient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)  # per unit of output
    unit: Mapped[str] = mapped_column(String(20), default="pcs", nullable=False)
    inventory_stock_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("inventory_stock.id", ondelete="SET NULL"), nullable=True, index=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    recipe: Mapped["Recipe"] = relationship("Recipe", back_populates="ingredients")
    inventory_stock: Mapped[Optional["InventoryStock"]] = relationship("InventoryStock")


class RecipeTemplate(Base, TimestampMixin):
    """Store-independent fallback recipe, matched to sold items by name."""

    __tablename__ = "recipe_templates"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    ingredients: Mapped[list["RecipeTemplateIngredient"]] = relationship(
        "RecipeTemplateIngredient",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="RecipeTemplateIngredient.id",
    )


class RecipeTemplateIngredient(Base):
    """Template ingredient; resolved to a store's inventory row by name at sale time."""

    __tablename__ = "recipe_template_ingredients"

    id: Mapped[int] = mapped_column(primary_key=True)
    template_id: Mapped[int] = mapped_column(
        ForeignKey("recipe_templates.id", ondelete="CASCADE"), nullable=False, index=True
    )
    ingredient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), default="pcs", nullable=False)

    template: Mapped["RecipeTemplate"] = relationship("RecipeTemplate", back_populates="ingredients")


