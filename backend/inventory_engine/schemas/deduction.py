"""Stock deduction schemas."""

from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class LineItemRequest(BaseModel):
    """One sold item of a transaction."""

    product_id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=255)
    quantity: Decimal = Field(..., gt=0)
    unit_price: Optional[Decimal] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class DeductionRequest(BaseModel):
    transaction_id: str = Field(..., min_length=1, max_length=100)
    items: List[LineItemRequest] = Field(..., min_length=1)
    timeout_seconds: Optional[float] = Field(default=None, gt=0, le=300)
    created_by: Optional[str] = Field(default=None, max_length=100)


class DeductedItemResponse(BaseModel):
    inventory_stock_id: int
    item_name: str
    unit: str
    requested_quantity: Decimal
    quantity_deducted: Decimal
    previous_quantity: Decimal
    new_quantity: Decimal
    sources: List[str] = []

    model_config = {"from_attributes": True}


class DeductionResponse(BaseModel):
    """Outcome of a deduction. success=False means stock may need manual reconciliation."""

    transaction_id: str
    success: bool
    deducted_items: List[DeductedItemResponse] = []
    errors: List[dict] = []
    warnings: List[dict] = []
    processing_time_ms: float
    items_processed: int

    model_config = {"from_attributes": True}
