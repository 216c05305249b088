"""API routes."""

import logging

from fastapi import APIRouter

from inventory_engine.api.routes import availability, cache, deductions, products

logger = logging.getLogger(__name__)

api_router = APIRouter()

# All engine routes are scoped to one store
STORE_PREFIX = "/stores/{store_id}"

api_router.include_router(availability.router, prefix=STORE_PREFIX, tags=["availability"])
api_router.include_router(products.router, prefix=f"{STORE_PREFIX}/products", tags=["products"])
api_router.include_router(deductions.router, prefix=f"{STORE_PREFIX}/deductions", tags=["deductions"])
api_router.include_router(cache.router, prefix=f"{STORE_PREFIX}/cache", tags=["cache"])
