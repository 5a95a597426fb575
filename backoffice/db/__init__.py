"""
Database ORM Models
SQLAlchemy ORM models for database tables.
"""

from .models import (
    Base,
    Platform,
    ConnectionStatus,
    ListingStatus,
    InvalidStatusTransition,
    Store,
    Product,
    ProductVariant,
    StoreMarketplace,
    PlatformListing,
    PlatformListingVariant,
    PlatformOrder,
    SyncLog,
    WebhookLog,
    StoreIntegration,
)

__all__ = [
    "Base",
    "Platform",
    "ConnectionStatus",
    "ListingStatus",
    "InvalidStatusTransition",
    "Store",
    "Product",
    "ProductVariant",
    "StoreMarketplace",
    "PlatformListing",
    "PlatformListingVariant",
    "PlatformOrder",
    "SyncLog",
    "WebhookLog",
    "StoreIntegration",
]
