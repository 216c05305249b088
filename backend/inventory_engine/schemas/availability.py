"""Availability schemas."""

from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class IngredientRequirementResponse(BaseModel):
    ingredient_name: str
    required_quantity: Decimal
    unit: str
    inventory_stock_id: Optional[int] = None
    inventory_item: Optional[str] = None
    available_stock: Optional[Decimal] = None
    possible_units: Optional[int] = None
    is_sufficient: bool

    model_config = {"from_attributes": True}


class ProductAvailabilityResponse(BaseModel):
    """Producible quantity and status of one product."""

    product_id: int
    product_name: str
    quantity: int
    status: str
    is_available: bool
    recipe_id: Optional[int] = None
    requirements: List[IngredientRequirementResponse] = []

    model_config = {"from_attributes": True}


class AvailabilitySummary(BaseModel):
    total_products: int = 0
    available: int = 0
    low_stock: int = 0
    out_of_stock: int = 0
    no_recipe: int = 0


class StoreAvailabilityResponse(BaseModel):
    store_id: int
    summary: AvailabilitySummary
    products: List[ProductAvailabilityResponse]


class CartItemRequest(BaseModel):
    product_id: int
    quantity: int = Field(default=1, ge=1)


class CartValidationRequest(BaseModel):
    items: List[CartItemRequest] = Field(..., min_length=1)


class CartValidationResponse(BaseModel):
    is_valid: bool
    errors: List[dict] = []
    warnings: List[dict] = []
    items: List[ProductAvailabilityResponse] = []

    model_config = {"from_attributes": True}


class EssentialProductResponse(BaseModel):
    """Minimal product fields for a first render of the product grid."""

    id: int
    name: str
    price: Decimal
    image_url: Optional[str] = None
    category_name: Optional[str] = None
    is_available: bool

    model_config = {"from_attributes": True}


class DetailedProductsResponse(BaseModel):
    store_id: int
    total: int
    products: List[ProductAvailabilityResponse]
