"""
Marketplace request/response schemas.
Connections, listings and orders.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, HttpUrl


class ConnectionResponse(BaseModel):
    """A marketplace connection, without credentials."""

    id: int
    store_id: int
    platform: str
    name: Optional[str] = None
    shop_domain: Optional[str] = None
    external_store_id: Optional[str] = None
    status: str
    connected_successfully: bool
    token_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_sync_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class WooCommerceCredentials(BaseModel):
    """API keys generated under WooCommerce > Settings > Advanced > REST API."""

    site_url: HttpUrl = Field(..., description="Store base URL")
    consumer_key: str = Field(..., min_length=1)
    consumer_secret: str = Field(..., min_length=1)


class WalmartCredentials(BaseModel):
    """Seller API keys from Walmart Seller Center > Settings > API Key Management."""

    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(..., min_length=1)
    seller_id: Optional[str] = None
    name: Optional[str] = Field(None, max_length=255)


class ValidationResult(BaseModel):
    connection_id: int
    valid: bool


class InventorySyncQueued(BaseModel):
    connection_id: int
    task_id: str


class ListingResponse(BaseModel):
    id: int
    store_marketplace_id: int
    product_id: int
    external_listing_id: Optional[str] = None
    status: str
    status_label: str
    listing_url: Optional[str] = None
    platform_price: Optional[Decimal] = None
    platform_quantity: Optional[int] = None
    last_error: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    published_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ListingUpdate(BaseModel):
    """Listing overrides; omitted fields are left unchanged."""

    title: Optional[str] = Field(None, max_length=500)
    description: Optional[str] = None
    price: Optional[float] = Field(None, gt=0, description="Price to push to the platform")
    quantity: Optional[int] = Field(None, ge=0, description="Cap on the quantity offered")
    platform_settings: Optional[Dict[str, Any]] = None


class OrderResponse(BaseModel):
    id: int
    store_marketplace_id: int
    external_order_id: str
    external_order_number: Optional[str] = None
    status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    payment_status: Optional[str] = None
    total: Decimal
    currency: str
    ordered_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class OrderPullRequest(BaseModel):
    since: Optional[str] = Field(None, description="ISO-8601 lower bound on order creation time")


class OrderPullResponse(BaseModel):
    connection_id: int
    imported: int
    orders: List[OrderResponse]


class FulfillmentRequest(BaseModel):
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    tracking_url: Optional[str] = None
    line_items: Optional[List[Dict[str, Any]]] = None
    notify_customer: bool = True
