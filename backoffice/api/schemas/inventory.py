"""
Inventory request/response schemas.
"""

from pydantic import BaseModel, Field


class StockDeductRequest(BaseModel):
    quantity: int = Field(..., gt=0, description="Units to remove from stock")


class StockAdjustRequest(BaseModel):
    delta: int = Field(..., description="Signed change in units")


class StockLevel(BaseModel):
    sku: str
    quantity: int
