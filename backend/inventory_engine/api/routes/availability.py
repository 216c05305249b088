"""Availability routes - producible quantities and cart validation."""

import logging

from fastapi import APIRouter, HTTPException, Request

from inventory_engine.api.deps import Engine
from inventory_engine.core.rate_limit import limiter
from inventory_engine.schemas.availability import (
    CartValidationRequest,
    CartValidationResponse,
    ProductAvailabilityResponse,
    StoreAvailabilityResponse,
)
from inventory_engine.services.availability import summarize_availability

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/availability", response_model=StoreAvailabilityResponse)
@limiter.limit("60/minute")
async def get_store_availability(request: Request, store_id: int, engine: Engine):
    """Availability of every product in the store, with per-status totals."""
    results = await engine.store_availability(store_id)
    return {
        "store_id": store_id,
        "summary": summarize_availability(results),
        "products": [r.to_dict() for r in results],
    }


@router.get("/products/{product_id}/availability", response_model=ProductAvailabilityResponse)
@limiter.limit("120/minute")
async def get_product_availability(request: Request, store_id: int, product_id: int, engine: Engine):
    """Availability of one product, including its ingredient requirements."""
    result = await engine.product_availability(store_id, product_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Product {product_id} not found in store {store_id}")
    return result.to_dict()


@router.post("/cart/validate", response_model=CartValidationResponse)
@limiter.limit("120/minute")
async def validate_cart(request: Request, store_id: int, body: CartValidationRequest, engine: Engine):
    """Check that every cart line can be produced before checkout."""
    validation = await engine.validate_cart(store_id, body.items)
    if not validation.is_valid:
        logger.info(f"Cart rejected for store {store_id}: {len(validation.errors)} errors")
    return {
        "is_valid": validation.is_valid,
        "errors": validation.errors,
        "warnings": validation.warnings,
        "items": [i.to_dict() for i in validation.items],
    }
