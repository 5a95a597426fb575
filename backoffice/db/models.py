"""
SQLAlchemy ORM Models
Database table definitions using SQLAlchemy ORM.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, ForeignKey, Numeric, Text, Index, JSON
)
from sqlalchemy.orm import Session, declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Platform(str, Enum):
    """Supported external marketplaces."""

    SHOPIFY = "shopify"
    EBAY = "ebay"
    ETSY = "etsy"
    WOOCOMMERCE = "woocommerce"
    AMAZON = "amazon"
    WALMART = "walmart"


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class ListingStatus(str, Enum):
    """Listing lifecycle on a single platform."""

    NOT_LISTED = "not_listed"  # Never published to platform
    LISTED = "listed"  # Currently active on platform
    ENDED = "ended"  # Was published, now ended
    ARCHIVED = "archived"  # Hidden from UI
    ERROR = "error"  # Sync error occurred
    PENDING = "pending"  # Awaiting platform sync


# Older rows may still carry these values
LEGACY_STATUS_ALIASES: Dict[str, str] = {
    "draft": ListingStatus.NOT_LISTED.value,
    "not_for_sale": ListingStatus.NOT_LISTED.value,
    "active": ListingStatus.LISTED.value,
    "unlisted": ListingStatus.ENDED.value,
}

LISTING_TRANSITIONS: Dict[str, List[str]] = {
    ListingStatus.NOT_LISTED.value: ["listed", "pending", "archived"],
    ListingStatus.LISTED.value: ["ended", "error", "archived"],
    ListingStatus.ENDED.value: ["listed", "pending", "archived"],
    ListingStatus.ARCHIVED.value: ["not_listed", "listed"],
    ListingStatus.ERROR.value: ["not_listed", "listed", "pending", "archived"],
    ListingStatus.PENDING.value: ["listed", "error", "not_listed"],
}

STATUS_LABELS: Dict[str, str] = {
    "not_listed": "Not Listed",
    "listed": "Listed",
    "ended": "Ended",
    "archived": "Archived",
    "error": "Error",
    "pending": "Pending",
}


class InvalidStatusTransition(ValueError):
    """Raised when a listing is moved to a status it cannot reach."""

    def __init__(self, current: Optional[str], target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid status transition from '{current}' to '{target}'")


def normalize_status(status: Optional[str]) -> str:
    """Map legacy status values onto the current set."""
    if status is None:
        return ListingStatus.NOT_LISTED.value
    return LEGACY_STATUS_ALIASES.get(status, status)


class Store(Base):
    """
    Store model.

    The local tenant that owns products and marketplace connections.
    """
    __tablename__ = 'stores'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    products = relationship("Product", back_populates="store", cascade="all, delete-orphan")
    marketplaces = relationship("StoreMarketplace", back_populates="store")
    integrations = relationship("StoreIntegration", back_populates="store", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Store(id={self.id}, name={self.name})>"


class Product(Base):
    """
    Product model.

    Local catalog entry; stock lives on its variants.
    """
    __tablename__ = 'products'

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(Integer, ForeignKey('stores.id', ondelete='CASCADE'), nullable=False, index=True)

    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    handle = Column(String(255), nullable=True, index=True)
    brand = Column(String(255), nullable=True)
    category_name = Column(String(255), nullable=True)
    category_external_id = Column(String(64), nullable=True,
                                  comment='Marketplace category/taxonomy id mapped to this product')
    condition = Column(String(50), nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    images = Column(JSON, nullable=False, default=list, comment='Ordered list of image URLs')

    is_published = Column(Boolean, nullable=False, default=True)
    has_variants = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    store = relationship("Store", back_populates="products")
    variants = relationship("ProductVariant", back_populates="product",
                            cascade="all, delete-orphan", order_by="ProductVariant.id")
    listings = relationship("PlatformListing", back_populates="product")

    @property
    def total_quantity(self) -> int:
        return sum(v.quantity or 0 for v in self.variants)

    @property
    def first_variant(self) -> Optional["ProductVariant"]:
        return self.variants[0] if self.variants else None

    def __repr__(self):
        return f"<Product(id={self.id}, title={self.title})>"


class ProductVariant(Base):
    """Sellable unit of a product, identified by SKU."""
    __tablename__ = 'product_variants'

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(Integer, ForeignKey('products.id', ondelete='CASCADE'), nullable=False, index=True)

    sku = Column(String(128), nullable=False, unique=True, index=True)
    barcode = Column(String(64), nullable=True)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    quantity = Column(Integer, nullable=False, default=0)
    option1 = Column(String(128), nullable=True)
    option2 = Column(String(128), nullable=True)
    option3 = Column(String(128), nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    product = relationship("Product", back_populates="variants")

    def __repr__(self):
        return f"<ProductVariant(id={self.id}, sku={self.sku}, quantity={self.quantity})>"


class StoreMarketplace(Base):
    """
    Marketplace connection model.

    One OAuth (or API key) connection between a store and a platform account.
    Rows are soft-deleted on disconnect.
    """
    __tablename__ = 'store_marketplaces'

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(Integer, ForeignKey('stores.id', ondelete='CASCADE'), nullable=False, index=True)

    platform = Column(String(32), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    shop_domain = Column(String(255), nullable=True)
    external_store_id = Column(String(128), nullable=True,
                               comment='Platform account id; distinguishes multiple accounts per platform')

    # Credentials
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    credentials = Column(JSON, nullable=False, default=dict)
    settings = Column(JSON, nullable=False, default=dict,
                      comment='Listing defaults: markup, policies, marketplace id, etc.')

    status = Column(String(32), nullable=False, default=ConnectionStatus.ACTIVE.value, index=True)
    connected_successfully = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    last_order_sync_at = Column(DateTime, nullable=True,
                                comment='Start of the last completed order pull; lower bound for the next one')

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
    deleted_at = Column(DateTime, nullable=True)

    store = relationship("Store", back_populates="marketplaces")
    listings = relationship("PlatformListing", back_populates="marketplace")
    orders = relationship("PlatformOrder", back_populates="marketplace")
    sync_logs = relationship("SyncLog", back_populates="marketplace")
    webhook_logs = relationship("WebhookLog", back_populates="marketplace")

    __table_args__ = (
        Index('idx_store_marketplaces_store_platform', 'store_id', 'platform'),
    )

    @classmethod
    def find_active(cls, session: Session, connection_id: int) -> Optional["StoreMarketplace"]:
        return (
            session.query(cls)
            .filter(cls.id == connection_id, cls.deleted_at.is_(None))
            .first()
        )

    @classmethod
    def upsert(
        cls, session: Session, keys: Dict[str, Any], values: Dict[str, Any]
    ) -> "StoreMarketplace":
        """Find a live connection by ``keys`` and update it, or create one."""
        query = session.query(cls).filter(cls.deleted_at.is_(None))
        for column, value in keys.items():
            query = query.filter(getattr(cls, column) == value)
        connection = query.first()

        if connection is None:
            connection = cls(**keys)
            session.add(connection)

        for column, value in values.items():
            setattr(connection, column, value)

        session.flush()
        return connection

    def is_token_expired(self, now: Optional[datetime] = None) -> bool:
        if self.token_expires_at is None:
            return False
        return self.token_expires_at <= (now or utcnow())

    def expires_within(self, minutes: int) -> bool:
        if self.token_expires_at is None:
            return False
        return self.token_expires_at <= utcnow() + timedelta(minutes=minutes)

    def record_sync(self) -> None:
        self.last_sync_at = utcnow()
        self.last_error = None

    def mark_error(self, message: str) -> None:
        self.last_error = message

    def soft_delete(self) -> None:
        self.status = ConnectionStatus.INACTIVE.value
        self.deleted_at = utcnow()

    def __repr__(self):
        return f"<StoreMarketplace(id={self.id}, platform={self.platform}, name={self.name})>"


class PlatformListing(Base):
    """
    Platform listing model.

    Mirrors one product's listing state on one marketplace connection.
    Title, description, images, price and quantity fall back to the product.
    """
    __tablename__ = 'platform_listings'

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_marketplace_id = Column(Integer, ForeignKey('store_marketplaces.id', ondelete='CASCADE'),
                                  nullable=False, index=True)
    product_id = Column(Integer, ForeignKey('products.id', ondelete='CASCADE'),
                        nullable=False, index=True)

    external_listing_id = Column(String(128), nullable=True, index=True)
    status = Column(String(32), nullable=False, default=ListingStatus.NOT_LISTED.value, index=True)
    should_list = Column(Boolean, nullable=False, default=True)

    # Per-platform overrides
    title = Column(String(500), nullable=True)
    description = Column(Text, nullable=True)
    images = Column(JSON, nullable=True)
    platform_category_id = Column(String(64), nullable=True)
    platform_settings = Column(JSON, nullable=False, default=dict)

    listing_url = Column(String(1000), nullable=True)
    platform_price = Column(Numeric(10, 2), nullable=True)
    platform_quantity = Column(Integer, nullable=True)
    quantity_override = Column(Integer, nullable=True,
                               comment='Manual cap on the quantity offered on this platform')
    platform_data = Column(JSON, nullable=False, default=dict,
                           comment='Raw platform payload and ids (sku, offer_id, ...)')

    last_error = Column(Text, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    published_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    marketplace = relationship("StoreMarketplace", back_populates="listings")
    product = relationship("Product", back_populates="listings")
    listing_variants = relationship("PlatformListingVariant", back_populates="listing",
                                    cascade="all, delete-orphan", order_by="PlatformListingVariant.id")

    __table_args__ = (
        Index('idx_platform_listings_connection_product', 'store_marketplace_id', 'product_id',
              unique=True),
        Index('idx_platform_listings_connection_external', 'store_marketplace_id',
              'external_listing_id'),
    )

    @classmethod
    def find_for(
        cls, session: Session, product_id: int, connection_id: int
    ) -> Optional["PlatformListing"]:
        return (
            session.query(cls)
            .filter(cls.product_id == product_id, cls.store_marketplace_id == connection_id)
            .first()
        )

    @classmethod
    def find_by_external_id(
        cls, session: Session, connection_id: int, external_id: Any
    ) -> Optional["PlatformListing"]:
        return (
            session.query(cls)
            .filter(
                cls.store_marketplace_id == connection_id,
                cls.external_listing_id == str(external_id),
            )
            .first()
        )

    # ========== Status ==========

    @property
    def normalized_status(self) -> str:
        return normalize_status(self.status)

    @property
    def status_label(self) -> str:
        normalized = self.normalized_status
        return STATUS_LABELS.get(normalized, (self.status or "unknown").capitalize())

    def can_transition_to(self, new_status: str) -> bool:
        if new_status not in LISTING_TRANSITIONS:
            return False

        # Same status is always valid (no-op)
        if self.status == new_status:
            return True

        return new_status in LISTING_TRANSITIONS.get(self.normalized_status, [])

    def transition_to(self, new_status: str) -> "PlatformListing":
        if isinstance(new_status, ListingStatus):
            new_status = new_status.value
        if not self.can_transition_to(new_status):
            raise InvalidStatusTransition(self.status, new_status)
        self.status = new_status
        return self

    def is_listed(self) -> bool:
        return self.normalized_status == ListingStatus.LISTED.value

    def is_published(self) -> bool:
        return self.is_listed() and self.published_at is not None

    def is_archived(self) -> bool:
        return self.status == ListingStatus.ARCHIVED.value

    def mark_as_listed(self) -> None:
        now = utcnow()
        self.status = ListingStatus.LISTED.value
        self.published_at = now
        self.last_synced_at = now
        self.last_error = None

    def mark_as_ended(self) -> None:
        self.status = ListingStatus.ENDED.value
        self.last_synced_at = utcnow()

    def mark_as_error(self, error: str) -> None:
        self.status = ListingStatus.ERROR.value
        self.last_error = error

    def archive(self) -> None:
        """Listings are never hard-deleted; deletion archives them."""
        self.status = ListingStatus.ARCHIVED.value

    # ========== Effective values ==========

    def effective_title(self) -> str:
        if self.title:
            return self.title
        return self.product.title if self.product else ""

    def effective_description(self) -> Optional[str]:
        if self.description is not None:
            return self.description
        return self.product.description if self.product else None

    def effective_images(self) -> List[str]:
        if self.images is not None:
            return list(self.images)
        return list(self.product.images or []) if self.product else []

    def effective_quantity(self) -> int:
        """Inventory quantity, capped by ``quantity_override`` when one is set."""
        inventory_quantity = self.product.total_quantity if self.product else 0
        if self.quantity_override is not None:
            return min(self.quantity_override, inventory_quantity)
        return inventory_quantity

    def effective_price(self) -> float:
        if self.listing_variants:
            return self.listing_variants[0].effective_price()
        if self.platform_price is not None:
            return float(self.platform_price)
        first = self.product.first_variant if self.product else None
        return float(first.price) if first is not None else 0.0

    def effective_setting(self, key: str, default: Any = None) -> Any:
        """Listing override, then connection default, then ``default``."""
        value = (self.platform_settings or {}).get(key)
        if value is not None:
            return value
        connection_settings = self.marketplace.settings if self.marketplace else {}
        return (connection_settings or {}).get(key, default)

    def effective_settings(self) -> Dict[str, Any]:
        merged = dict(self.marketplace.settings or {}) if self.marketplace else {}
        merged.update({k: v for k, v in (self.platform_settings or {}).items() if v is not None})
        return merged

    def is_setting_overridden(self, key: str) -> bool:
        return (self.platform_settings or {}).get(key) is not None

    def __repr__(self):
        return f"<PlatformListing(id={self.id}, product_id={self.product_id}, status={self.status})>"


class PlatformListingVariant(Base):
    """Per-platform overrides and external ids for a product variant."""
    __tablename__ = 'platform_listing_variants'

    id = Column(Integer, primary_key=True, autoincrement=True)
    platform_listing_id = Column(Integer, ForeignKey('platform_listings.id', ondelete='CASCADE'),
                                 nullable=False, index=True)
    product_variant_id = Column(Integer, ForeignKey('product_variants.id', ondelete='CASCADE'),
                                nullable=False)

    sku = Column(String(128), nullable=True)
    barcode = Column(String(64), nullable=True)
    price = Column(Numeric(10, 2), nullable=True)
    quantity = Column(Integer, nullable=True)

    external_variant_id = Column(String(128), nullable=True)
    external_inventory_item_id = Column(String(128), nullable=True)
    platform_data = Column(JSON, nullable=False, default=dict)

    listing = relationship("PlatformListing", back_populates="listing_variants")
    product_variant = relationship("ProductVariant")

    def effective_sku(self) -> Optional[str]:
        return self.sku or (self.product_variant.sku if self.product_variant else None)

    def effective_barcode(self) -> Optional[str]:
        return self.barcode or (self.product_variant.barcode if self.product_variant else None)

    def effective_price(self) -> float:
        if self.price is not None:
            return float(self.price)
        return float(self.product_variant.price) if self.product_variant else 0.0

    def effective_quantity(self) -> int:
        available = self.product_variant.quantity if self.product_variant else 0
        if self.quantity is not None:
            return min(self.quantity, available)
        return available


class PlatformOrder(Base):
    """Order imported from a marketplace connection."""
    __tablename__ = 'platform_orders'

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_marketplace_id = Column(Integer, ForeignKey('store_marketplaces.id', ondelete='CASCADE'),
                                  nullable=False, index=True)

    external_order_id = Column(String(128), nullable=False)
    external_order_number = Column(String(128), nullable=True)
    status = Column(String(64), nullable=True)
    fulfillment_status = Column(String(64), nullable=True)
    payment_status = Column(String(64), nullable=True)

    total = Column(Numeric(12, 2), nullable=False, default=0)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=0)
    tax = Column(Numeric(12, 2), nullable=False, default=0)
    discount = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")

    customer_data = Column(JSON, nullable=True)
    shipping_address = Column(JSON, nullable=True)
    billing_address = Column(JSON, nullable=True)
    line_items = Column(JSON, nullable=False, default=list)
    platform_data = Column(JSON, nullable=False, default=dict)

    ordered_at = Column(DateTime, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    marketplace = relationship("StoreMarketplace", back_populates="orders")

    __table_args__ = (
        Index('idx_platform_orders_connection_external', 'store_marketplace_id',
              'external_order_id', unique=True),
    )

    @classmethod
    def upsert(
        cls, session: Session, connection_id: int, external_order_id: Any, values: Dict[str, Any]
    ) -> "PlatformOrder":
        external_order_id = str(external_order_id)
        order = (
            session.query(cls)
            .filter(
                cls.store_marketplace_id == connection_id,
                cls.external_order_id == external_order_id,
            )
            .first()
        )
        if order is None:
            order = cls(store_marketplace_id=connection_id, external_order_id=external_order_id)
            session.add(order)

        for column, value in values.items():
            setattr(order, column, value)

        session.flush()
        return order

    def __repr__(self):
        return f"<PlatformOrder(id={self.id}, external_order_id={self.external_order_id})>"


class SyncLog(Base):
    """Progress record for one pull/push run against a connection."""
    __tablename__ = 'sync_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_marketplace_id = Column(Integer, ForeignKey('store_marketplaces.id', ondelete='CASCADE'),
                                  nullable=False, index=True)

    entity_type = Column(String(32), nullable=False, comment='products, orders, inventory')
    direction = Column(String(16), nullable=False, comment='pull or push')
    status = Column(String(16), nullable=False, default="running")

    processed_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    summary = Column(JSON, nullable=False, default=dict)
    errors = Column(JSON, nullable=False, default=list)

    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    marketplace = relationship("StoreMarketplace", back_populates="sync_logs")

    def increment_processed(self) -> None:
        self.processed_count = (self.processed_count or 0) + 1

    def increment_success(self) -> None:
        self.success_count = (self.success_count or 0) + 1

    def increment_error(self) -> None:
        self.error_count = (self.error_count or 0) + 1

    def mark_completed(self, summary: Optional[Dict[str, Any]] = None) -> None:
        self.status = "completed"
        self.summary = summary or {}
        self.completed_at = utcnow()

    def mark_failed(self, errors: List[str]) -> None:
        self.status = "failed"
        self.errors = list(errors)
        self.completed_at = utcnow()


class WebhookLog(Base):
    """
    Webhook log model.

    Every inbound marketplace webhook is stored before it is processed so
    processing can be retried from the stored payload.
    """
    __tablename__ = 'webhook_logs'

    STATUS_PENDING = "pending"
    STATUS_PROCESSING = "processing"
    STATUS_COMPLETED = "completed"
    STATUS_SKIPPED = "skipped"
    STATUS_FAILED = "failed"

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_marketplace_id = Column(Integer, ForeignKey('store_marketplaces.id', ondelete='SET NULL'),
                                  nullable=True, index=True)

    platform = Column(String(32), nullable=False)
    event_type = Column(String(128), nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    external_id = Column(String(128), nullable=True)

    status = Column(String(16), nullable=False, default=STATUS_PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    error_message = Column(Text, nullable=True)
    response = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    processed_at = Column(DateTime, nullable=True)

    marketplace = relationship("StoreMarketplace", back_populates="webhook_logs")

    def mark_as_processing(self) -> None:
        self.status = self.STATUS_PROCESSING
        self.attempts = (self.attempts or 0) + 1

    def mark_as_completed(self, response: Optional[Dict[str, Any]] = None) -> None:
        self.status = self.STATUS_COMPLETED
        if response is not None:
            self.response = {**(self.response or {}), **response}
        self.error_message = None
        self.processed_at = utcnow()

    def mark_as_skipped(self, reason: str) -> None:
        self.status = self.STATUS_SKIPPED
        self.error_message = reason
        self.processed_at = utcnow()

    def mark_as_failed(self, message: str) -> None:
        self.status = self.STATUS_FAILED
        self.error_message = message

    def can_retry(self) -> bool:
        return (self.attempts or 0) < (self.max_attempts or 0)

    def __repr__(self):
        return f"<WebhookLog(id={self.id}, event_type={self.event_type}, status={self.status})>"


class StoreIntegration(Base):
    """
    Store integration model.

    API-key based third-party integrations (SerpAPI, AI providers) with
    usage metering.
    """
    __tablename__ = 'store_integrations'

    PROVIDER_SERPAPI = "serpapi"
    PROVIDER_OPENAI = "openai"
    PROVIDER_ANTHROPIC = "anthropic"

    STATUS_ACTIVE = "active"
    STATUS_INACTIVE = "inactive"

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(Integer, ForeignKey('stores.id', ondelete='CASCADE'), nullable=False, index=True)

    provider = Column(String(32), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=STATUS_ACTIVE)
    credentials = Column(JSON, nullable=False, default=dict)

    usage_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    store = relationship("Store", back_populates="integrations")

    @classmethod
    def find_active_for_store(
        cls, session: Session, store_id: int, provider: str
    ) -> Optional["StoreIntegration"]:
        return (
            session.query(cls)
            .filter(
                cls.store_id == store_id,
                cls.provider == provider,
                cls.status == cls.STATUS_ACTIVE,
            )
            .first()
        )

    @property
    def api_key(self) -> Optional[str]:
        return (self.credentials or {}).get("api_key") or None

    def record_usage(self) -> None:
        self.usage_count = (self.usage_count or 0) + 1
        self.last_used_at = utcnow()

    def __repr__(self):
        return f"<StoreIntegration(id={self.id}, provider={self.provider})>"


def to_decimal(value: Any) -> Decimal:
    """Coerce platform money values (str, float, None) to Decimal."""
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))
