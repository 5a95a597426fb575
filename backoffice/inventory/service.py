"""
Inventory Service
Reads and adjusts variant stock by SKU.
"""

import logging

from sqlalchemy.orm import Session

from ..api.errors import InsufficientStockError, InvalidRequestError, ResourceNotFoundError
from ..db.models import ProductVariant

logger = logging.getLogger(__name__)


class InventoryService:
    """
    Stock operations for a single session.

    Quantities never go below zero; a change that would do so raises
    :class:`InsufficientStockError` and leaves the variant untouched.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_variant(self, sku: str) -> ProductVariant:
        variant = self.db.query(ProductVariant).filter(ProductVariant.sku == sku).first()
        if variant is None:
            raise ResourceNotFoundError("Product variant", sku)
        return variant

    def get_available(self, sku: str) -> int:
        return self.get_variant(sku).quantity or 0

    def deduct(self, sku: str, quantity: int) -> ProductVariant:
        if quantity <= 0:
            raise InvalidRequestError(
                "Quantity to deduct must be positive", details={"sku": sku, "quantity": quantity}
            )

        variant = self.get_variant(sku)
        available = variant.quantity or 0
        if quantity > available:
            raise InsufficientStockError(sku, quantity, available)

        variant.quantity = available - quantity
        self.db.commit()

        logger.info(
            f"Deducted {quantity} of {sku}, {variant.quantity} remaining",
            extra={"sku": sku, "quantity": quantity},
        )
        return variant

    def adjust(self, sku: str, delta: int) -> ProductVariant:
        """Apply a signed stock change (receiving, corrections, returns)."""
        variant = self.get_variant(sku)
        available = variant.quantity or 0
        if available + delta < 0:
            raise InsufficientStockError(sku, -delta, available)

        variant.quantity = available + delta
        self.db.commit()

        logger.info(f"Adjusted {sku} by {delta:+d} to {variant.quantity}", extra={"sku": sku})
        return variant
