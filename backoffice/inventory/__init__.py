"""
Inventory
Stock lookups and adjustments for product variants.
"""

from .service import InventoryService

__all__ = ["InventoryService"]
