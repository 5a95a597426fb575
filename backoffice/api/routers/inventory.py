"""
Inventory Endpoints
Stock lookups and deductions, for API clients and web forms.
"""

import logging

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse

from ..dependencies import get_inventory_service
from ..errors import FLASH_COOKIE, redirect_back
from ..schemas.inventory import StockAdjustRequest, StockDeductRequest, StockLevel
from ...inventory import InventoryService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["inventory"])


@router.get("/api/v1/inventory/{sku}", response_model=StockLevel)
def get_stock(sku: str, inventory: InventoryService = Depends(get_inventory_service)) -> StockLevel:
    return StockLevel(sku=sku, quantity=inventory.get_available(sku))


@router.post("/api/v1/inventory/{sku}/deduct", response_model=StockLevel)
def deduct_stock(
    sku: str,
    request: StockDeductRequest,
    inventory: InventoryService = Depends(get_inventory_service),
) -> StockLevel:
    variant = inventory.deduct(sku, request.quantity)
    return StockLevel(sku=sku, quantity=variant.quantity)


@router.post("/api/v1/inventory/{sku}/adjust", response_model=StockLevel)
def adjust_stock(
    sku: str,
    request: StockAdjustRequest,
    inventory: InventoryService = Depends(get_inventory_service),
) -> StockLevel:
    variant = inventory.adjust(sku, request.delta)
    return StockLevel(sku=sku, quantity=variant.quantity)


@router.post("/inventory/{sku}/deduct", status_code=status.HTTP_303_SEE_OTHER)
def deduct_stock_from_page(
    sku: str,
    request: Request,
    quantity: int = Query(..., gt=0),
    inventory: InventoryService = Depends(get_inventory_service),
) -> RedirectResponse:
    """Page action: deduct then redirect back with a flash message."""
    variant = inventory.deduct(sku, quantity)
    return redirect_back(
        request,
        FLASH_COOKIE,
        {"success": f"Deducted {quantity} of {sku}. {variant.quantity} remaining."},
    )
