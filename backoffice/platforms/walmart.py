"""
Walmart Integration
Marketplace API (v3) with per-seller client credentials.
"""

import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urlencode

from ..api.errors import InvalidRequestError
from ..db.models import (
    ConnectionStatus,
    ListingStatus,
    Platform,
    PlatformListing,
    PlatformOrder,
    Product,
    Store,
    StoreMarketplace,
    to_decimal,
    utcnow,
)
from ..security import decrypt_value, encrypt_value
from .base import BasePlatformService, apply_markup, utc_from_timestamp
from .exceptions import OAuthError, PlatformAPIError

logger = logging.getLogger(__name__)


class WalmartService(BasePlatformService):
    """
    Walmart seller integration.

    Sellers paste a client id and secret; access tokens are short-lived and
    re-issued from those credentials rather than from a refresh token.
    """

    platform = Platform.WALMART.value

    SERVICE_NAME = "Walmart Marketplace"
    PAGE_SIZE = 50
    ORDER_PAGE_SIZE = 100
    ORDER_LOOKBACK_DAYS = 30
    DEFAULT_TOKEN_LIFETIME = 900

    # Event type -> subscribed resource
    WEBHOOK_EVENTS = {
        "PO_CREATED": "ORDER",
        "PO_LINE_UPDATED": "ORDER",
        "ITEM_UPDATED": "ITEM",
    }

    @property
    def api_base_url(self) -> str:
        return self.services.walmart_api_url.rstrip("/")

    # ========== Connection lifecycle ==========

    def connect(self, store: Store, params: Dict[str, Any]) -> str:
        # Credentials are entered manually; send the merchant to the credentials form
        return f"{self.settings.app_url}/settings/integrations/walmart?{urlencode({'store': store.id})}"

    def connect_with_credentials(self, store: Store, credentials: Dict[str, Any]) -> StoreMarketplace:
        """
        Verify seller API credentials by issuing a token, then store them.

        Args:
            store: Store the connection belongs to
            credentials: ``client_id``, ``client_secret`` and optional ``seller_id`` / ``name``

        Returns:
            The created or updated connection
        """
        missing = [key for key in ("client_id", "client_secret") if not credentials.get(key)]
        if missing:
            raise InvalidRequestError(
                f"Missing Walmart credentials: {', '.join(missing)}", details={"missing": missing}
            )

        client_id = credentials["client_id"]
        client_secret = credentials["client_secret"]
        seller_id = credentials.get("seller_id")

        try:
            data = self.token_request(client_id, client_secret)
        except PlatformAPIError as e:
            raise OAuthError(self.platform, f"Failed to authenticate with Walmart: {e.body[:200]}") from e

        # Keying on the seller id lets one store connect several accounts
        keys: Dict[str, Any] = {"store_id": store.id, "platform": self.platform}
        if seller_id:
            keys["external_store_id"] = seller_id

        connection = StoreMarketplace.upsert(
            self.db,
            keys=keys,
            values={
                "name": credentials.get("name") or "Walmart Marketplace",
                "external_store_id": seller_id,
                "access_token": data["access_token"],
                "token_expires_at": utcnow()
                + timedelta(seconds=data.get("expires_in") or self.DEFAULT_TOKEN_LIFETIME),
                "credentials": {
                    "client_id": client_id,
                    "client_secret": encrypt_value(client_secret, key=self.services.app_key),
                    "seller_id": seller_id,
                },
                "status": ConnectionStatus.ACTIVE.value,
                "connected_successfully": True,
                "last_error": None,
            },
        )
        self.db.commit()

        logger.info(f"Connected Walmart seller {seller_id or '(unknown)'} for store {store.id}")
        return connection

    def handle_callback(self, store: Store, params: Dict[str, Any]) -> StoreMarketplace:
        return self.connect_with_credentials(
            store,
            {
                "client_id": params.get("client_id"),
                "client_secret": params.get("client_secret"),
                "seller_id": params.get("seller_id"),
            },
        )

    def refresh_token(self, connection: StoreMarketplace) -> StoreMarketplace:
        client_id, client_secret = self.client_credentials(connection)
        try:
            data = self.token_request(client_id, client_secret)
        except PlatformAPIError as e:
            connection.mark_error(f"Failed to refresh token: {e.body[:200]}")
            self.db.commit()
            raise OAuthError(self.platform, f"Failed to refresh token: {e.body}") from e

        connection.access_token = data["access_token"]
        connection.token_expires_at = utcnow() + timedelta(
            seconds=data.get("expires_in") or self.DEFAULT_TOKEN_LIFETIME
        )
        self.db.commit()
        return connection

    def validate_credentials(self, connection: StoreMarketplace) -> bool:
        try:
            self.ensure_valid_token(connection)
            response = self.walmart_request(connection, "GET", "/v3/feeds", params={"limit": 1})
        except (PlatformAPIError, OAuthError) as e:
            logger.warning(f"Walmart credential check failed for connection {connection.id}: {e}")
            return False
        return "totalResults" in response or "results" in response

    def token_request(self, client_id: str, client_secret: str) -> Dict[str, Any]:
        return self.request(
            "POST",
            f"{self.api_base_url}/v3/token",
            data={"grant_type": "client_credentials"},
            auth=(client_id, client_secret),
            headers={
                "WM_SVC.NAME": self.SERVICE_NAME,
                "WM_QOS.CORRELATION_ID": uuid.uuid4().hex,
                "Accept": "application/json",
                "Content-Type": "application/x-www-form-urlencoded",
            },
        )

    def client_credentials(self, connection: StoreMarketplace) -> tuple:
        credentials = connection.credentials or {}
        return (
            credentials["client_id"],
            decrypt_value(credentials["client_secret"], key=self.services.app_key),
        )

    # ========== Catalog ==========

    def pull_products(self, connection: StoreMarketplace) -> List[Dict[str, Any]]:
        def produce() -> Iterator[Dict[str, Any]]:
            self.ensure_valid_token(connection)
            offset = 0
            while True:
                response = self.walmart_request(
                    connection, "GET", "/v3/items", params={"limit": self.PAGE_SIZE, "offset": offset}
                )
                for item in response.get("ItemResponse", []):
                    yield map_walmart_product(item)

                offset += self.PAGE_SIZE
                if offset >= (response.get("totalItems") or 0):
                    break

        return self.collect_pull(connection, "products", produce)

    def push_product(self, product: Product, connection: StoreMarketplace) -> PlatformListing:
        """
        Submit the item in an item feed.

        Walmart ingests feeds asynchronously, so the listing stays ``pending``
        until an ``ITEM_UPDATED`` event reports it published.
        """
        self.ensure_valid_token(connection)
        listing = self.upsert_listing(product, connection)
        sku = listing.external_listing_id or self.listing_sku(listing)

        feed_id = self.submit_item_feed(listing, sku)

        listing.external_listing_id = sku
        listing.platform_data = {"sku": sku, "feed_id": feed_id, "feed_status": "RECEIVED"}
        listing.status = ListingStatus.PENDING.value
        listing.last_synced_at = utcnow()
        self.db.commit()
        return listing

    def update_listing(self, listing: PlatformListing) -> PlatformListing:
        self.ensure_valid_token(listing.marketplace)

        feed_id = self.submit_item_feed(listing, listing.external_listing_id)

        platform_data = dict(listing.platform_data or {})
        platform_data.update({"feed_id": feed_id, "feed_status": "RECEIVED"})
        listing.platform_data = platform_data
        listing.last_synced_at = utcnow()
        self.db.commit()
        return listing

    def delete_listing(self, listing: PlatformListing) -> None:
        self.ensure_valid_token(listing.marketplace)
        # Retiring is Walmart's only delete
        self.walmart_request(listing.marketplace, "DELETE", f"/v3/items/{listing.external_listing_id}")
        listing.archive()
        self.db.commit()

    def unlist_listing(self, listing: PlatformListing) -> PlatformListing:
        # Retired items cannot be restored, so unlisting zeroes inventory instead
        self.update_item_inventory(listing, 0)
        listing.mark_as_ended()
        self.db.commit()
        return listing

    def relist_listing(self, listing: PlatformListing) -> PlatformListing:
        self.update_item_inventory(listing, listing.effective_quantity())
        listing.mark_as_listed()
        self.db.commit()
        return listing

    def submit_item_feed(self, listing: PlatformListing, sku: str) -> str:
        response = self.walmart_request(
            listing.marketplace,
            "POST",
            "/v3/feeds",
            {"ItemFeed": {"item": [self.map_to_walmart_item(listing, sku)]}},
            params={"feedType": "item"},
        )
        return response["feedId"]

    # ========== Inventory ==========

    def update_item_inventory(self, listing: PlatformListing, quantity: int) -> None:
        self.ensure_valid_token(listing.marketplace)
        self.walmart_request(
            listing.marketplace,
            "PUT",
            "/v3/inventory",
            {"sku": listing.external_listing_id, "quantity": {"unit": "EACH", "amount": quantity}},
            params={"sku": listing.external_listing_id},
        )

    def sync_inventory(self, connection: StoreMarketplace) -> Dict[str, int]:
        """Push all quantities in one inventory feed."""
        self.ensure_valid_token(connection)
        sync_log = self.log_sync(connection, "inventory", "push")
        listings = self.listings_to_sync(connection)
        counts = {"updated": 0, "skipped": 0, "failed": 0}

        inventory = [
            {
                "sku": listing.external_listing_id,
                "quantity": {"unit": "EACH", "amount": listing.effective_quantity()},
            }
            for listing in listings
        ]

        if inventory:
            try:
                self.walmart_request(
                    connection,
                    "POST",
                    "/v3/feeds",
                    {"InventoryFeed": {"inventory": inventory}},
                    params={"feedType": "inventory"},
                )
            except PlatformAPIError as e:
                logger.warning(f"Walmart inventory feed failed for connection {connection.id}: {e}")
                counts["failed"] = len(inventory)
                sync_log.errors = [e.message]
            else:
                counts["updated"] = len(inventory)
                now = utcnow()
                for listing in listings:
                    listing.platform_quantity = listing.effective_quantity()
                    listing.last_synced_at = now

        sync_log.processed_count = len(inventory)
        sync_log.success_count = counts["updated"]
        sync_log.error_count = counts["failed"]
        sync_log.mark_completed(counts)
        connection.record_sync()
        self.db.commit()
        return counts

    # ========== Orders ==========

    def pull_orders(
        self, connection: StoreMarketplace, since: Optional[str] = None
    ) -> List[PlatformOrder]:
        """
        Import purchase orders created after ``since``.

        Args:
            connection: Walmart connection
            since: ISO-8601 ``createdStartDate``; defaults to the last 30 days

        Returns:
            The imported orders, following ``nextCursor`` across pages
        """

        def produce() -> Iterator[PlatformOrder]:
            self.ensure_valid_token(connection)
            created_start = since or (
                utcnow() - timedelta(days=self.ORDER_LOOKBACK_DAYS)
            ).strftime("%Y-%m-%dT%H:%M:%SZ")

            endpoint = "/v3/orders"
            params: Optional[Dict[str, Any]] = {
                "limit": self.ORDER_PAGE_SIZE,
                "createdStartDate": created_start,
            }
            while True:
                response = self.walmart_request(connection, "GET", endpoint, params=params)
                order_list = response.get("list") or {}
                for walmart_order in (order_list.get("elements") or {}).get("order", []):
                    yield self.import_order(walmart_order, connection)

                # The cursor is a ready-made query string carrying the filters
                next_cursor = (order_list.get("meta") or {}).get("nextCursor")
                if not next_cursor:
                    break
                endpoint = f"/v3/orders{next_cursor}"
                params = None

        return self.collect_pull(connection, "orders", produce)

    def update_order_fulfillment(self, order: PlatformOrder, fulfillment: Dict[str, Any]) -> None:
        connection = order.marketplace
        self.ensure_valid_token(connection)

        ship_time = utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")
        order_lines = [
            {
                "lineNumber": line.get("lineNumber"),
                "orderLineStatuses": {
                    "orderLineStatus": [
                        {
                            "status": "Shipped",
                            "statusQuantity": {
                                "unitOfMeasurement": "EACH",
                                "amount": str((line.get("orderLineQuantity") or {}).get("amount") or 1),
                            },
                            "trackingInfo": {
                                "shipDateTime": ship_time,
                                "carrierName": {"carrier": fulfillment.get("carrier") or "OTHER"},
                                "trackingNumber": fulfillment.get("tracking_number") or "",
                                "trackingURL": fulfillment.get("tracking_url"),
                            },
                        }
                    ]
                },
            }
            for line in order.line_items or []
        ]

        self.walmart_request(
            connection,
            "POST",
            f"/v3/orders/{order.external_order_id}/shipping",
            {"orderShipment": {"orderLines": {"orderLine": order_lines}}},
        )
        order.fulfillment_status = "shipped"
        self.db.commit()

    def import_order(self, data: Dict[str, Any], connection: StoreMarketplace) -> PlatformOrder:
        shipping_info = data.get("shippingInfo") or {}
        address = shipping_info.get("postalAddress") or {}
        order_lines = (data.get("orderLines") or {}).get("orderLine") or []

        subtotal = sum_charges(order_lines, "PRODUCT")
        shipping = sum_charges(order_lines, "SHIPPING")
        tax = sum_line_tax(order_lines)

        return PlatformOrder.upsert(
            self.db,
            connection.id,
            data["purchaseOrderId"],
            {
                "external_order_number": data.get("customerOrderId"),
                "status": line_status(order_lines[0]) if order_lines else "Created",
                "fulfillment_status": fulfillment_status(order_lines),
                # Walmart collects payment before releasing the order
                "payment_status": "paid",
                "total": subtotal + shipping + tax,
                "subtotal": subtotal,
                "shipping_cost": shipping,
                "tax": tax,
                "discount": Decimal("0"),
                "currency": "USD",
                "customer_data": {
                    "name": address.get("name"),
                    "email": data.get("customerEmailId"),
                    "phone": shipping_info.get("phone"),
                },
                "shipping_address": {
                    "name": address.get("name"),
                    "address1": address.get("address1"),
                    "address2": address.get("address2"),
                    "city": address.get("city"),
                    "state": address.get("state"),
                    "zip": address.get("postalCode"),
                    "country": address.get("country") or "USA",
                },
                "billing_address": None,
                "line_items": order_lines,
                "platform_data": data,
                "ordered_at": order_date(data.get("orderDate")),
                "last_synced_at": utcnow(),
            },
        )

    # ========== Metadata and webhooks ==========

    def fetch_categories(self, connection: StoreMarketplace) -> List[Dict[str, Any]]:
        self.ensure_valid_token(connection)
        response = self.walmart_request(connection, "GET", "/v3/items/taxonomy")
        return [
            {
                "id": category.get("category") or category.get("categoryId"),
                "name": category.get("categoryName") or category.get("category"),
            }
            for category in response.get("payload", [])
        ]

    def register_webhooks(self, connection: StoreMarketplace) -> None:
        self.ensure_valid_token(connection)
        for event_type, resource in self.WEBHOOK_EVENTS.items():
            try:
                self.walmart_request(
                    connection,
                    "POST",
                    "/v3/webhooks/subscriptions",
                    {
                        "eventType": event_type,
                        "eventVersion": "V1",
                        "resourceName": resource,
                        "eventUrl": self.get_webhook_url(connection),
                        "status": "ACTIVE",
                    },
                )
            except PlatformAPIError as e:
                # Existing subscriptions are rejected as duplicates
                logger.info(f"Walmart webhook {event_type} not registered: {e.message}")

    def handle_webhook(
        self, topic: str, payload: Dict[str, Any], connection: StoreMarketplace
    ) -> Optional[Any]:
        event_type = (topic or "").upper()
        body = payload.get("payload") or payload

        if event_type in ("PO_CREATED", "PO_LINE_UPDATED"):
            walmart_order = body.get("order") or body
            if not walmart_order.get("purchaseOrderId"):
                return None
            order = self.import_order(walmart_order, connection)
            self.db.commit()
            return order

        if event_type == "ITEM_UPDATED":
            return self.apply_item_update(body, connection)

        return super().handle_webhook(topic, payload, connection)

    def apply_item_update(self, item: Dict[str, Any], connection: StoreMarketplace) -> Optional[PlatformListing]:
        listing = PlatformListing.find_by_external_id(self.db, connection.id, item.get("sku"))
        if listing is None:
            return None

        published_status = item.get("publishedStatus")
        platform_data = dict(listing.platform_data or {})
        platform_data["published_status"] = published_status
        if item.get("itemId"):
            platform_data["item_id"] = item["itemId"]
            listing.listing_url = f"https://www.walmart.com/ip/{item['itemId']}"
        listing.platform_data = platform_data

        if published_status == "PUBLISHED" and listing.normalized_status == ListingStatus.PENDING.value:
            listing.mark_as_listed()
        elif published_status == "SYSTEM_PROBLEM":
            reasons = item.get("unpublishedReasons") or {}
            listing.mark_as_error("; ".join(reasons.get("reason", [])) or "Walmart rejected the item")

        listing.last_synced_at = utcnow()
        self.db.commit()
        return listing

    # ========== Helpers ==========

    def walmart_request(
        self,
        connection: StoreMarketplace,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return self.request(
            method,
            f"{self.api_base_url}{endpoint}",
            auth=self.client_credentials(connection),
            headers={
                "WM_SEC.ACCESS_TOKEN": connection.access_token,
                "WM_SVC.NAME": self.SERVICE_NAME,
                "WM_QOS.CORRELATION_ID": uuid.uuid4().hex,
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            params=params,
            json=payload,
        )

    def map_to_walmart_item(self, listing: PlatformListing, sku: str) -> Dict[str, Any]:
        product = listing.product
        first = product.first_variant
        images = listing.effective_images()
        price = apply_markup(listing.effective_price(), listing.effective_setting("price_markup"))

        return {
            "sku": sku,
            "productIdentifiers": {
                "productIdType": listing.effective_setting("product_id_type", "UPC"),
                "productId": (first.barcode if first is not None else None) or "000000000000",
            },
            "productName": listing.effective_title(),
            "brand": product.brand or "Generic",
            "shortDescription": (listing.effective_description() or "")[:1000],
            "mainImageUrl": images[0] if images else "",
            "price": {"currency": "USD", "amount": round(price, 2)},
            "category": product.category_name or "Other",
            "shippingWeight": {
                "value": listing.effective_setting("shipping_weight", 1),
                "unit": listing.effective_setting("weight_unit", "LB"),
            },
            "fulfillmentType": listing.effective_setting("fulfillment_type", "seller"),
        }


def order_date(value: Any):
    # Order dates are epoch milliseconds
    if isinstance(value, (int, float)):
        return utc_from_timestamp(value / 1000)
    return utc_from_timestamp(value)


def line_status(line: Dict[str, Any]) -> str:
    statuses = (line.get("orderLineStatuses") or {}).get("orderLineStatus") or [{}]
    return statuses[0].get("status") or "Created"


def fulfillment_status(order_lines: List[Dict[str, Any]]) -> str:
    if order_lines and all(line_status(line) == "Shipped" for line in order_lines):
        return "shipped"
    return "pending"


def sum_charges(order_lines: List[Dict[str, Any]], charge_type: str) -> Decimal:
    total = Decimal("0")
    for line in order_lines:
        for charge in (line.get("charges") or {}).get("charge", []):
            if charge.get("chargeType") == charge_type:
                total += to_decimal((charge.get("chargeAmount") or {}).get("amount"))
    return total


def sum_line_tax(order_lines: List[Dict[str, Any]]) -> Decimal:
    total = Decimal("0")
    for line in order_lines:
        for charge in (line.get("charges") or {}).get("charge", []):
            tax = charge.get("tax") or {}
            total += to_decimal((tax.get("taxAmount") or {}).get("amount"))
    return total


def map_walmart_product(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "external_id": item.get("sku"),
        "sku": item.get("sku"),
        "title": item.get("productName") or item.get("sku"),
        "description": item.get("shortDescription") or "",
        "price": (item.get("price") or {}).get("amount"),
        "quantity": (item.get("availableQuantity") or {}).get("amount") or 0,
        "status": item.get("publishedStatus") or "UNPUBLISHED",
        "upc": item.get("upc"),
        "item_id": item.get("wpid"),
    }
