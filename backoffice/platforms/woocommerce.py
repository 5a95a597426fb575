"""
WooCommerce Integration
REST API (wc/v3) with consumer key / secret authentication.
"""

import logging
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urlencode, urlparse

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
from ..api.errors import InvalidRequestError
from .base import BasePlatformService, utc_from_timestamp
from .exceptions import OAuthError, PlatformAPIError

logger = logging.getLogger(__name__)

ORDER_STATUS_MAP = {
    "completed": "fulfilled",
    "processing": "processing",
    "on-hold": "on_hold",
    "pending": "pending",
    "cancelled": "cancelled",
    "refunded": "refunded",
    "failed": "failed",
}


class WooCommerceService(BasePlatformService):
    """WooCommerce store integration. Credentials are API keys, not OAuth tokens."""

    platform = Platform.WOOCOMMERCE.value

    API_VERSION = "wc/v3"
    PAGE_SIZE = 100

    WEBHOOK_TOPICS = [
        "order.created",
        "order.updated",
        "product.updated",
        "product.deleted",
    ]

    # ========== Connection lifecycle ==========

    def connect(self, store: Store, params: Dict[str, Any]) -> str:
        # Keys are entered manually; send the merchant to the credentials form
        return f"{self.settings.app_url}/settings/integrations/woocommerce?{urlencode({'store': store.id})}"

    def connect_with_credentials(self, store: Store, credentials: Dict[str, Any]) -> StoreMarketplace:
        missing = [
            key for key in ("site_url", "consumer_key", "consumer_secret") if not credentials.get(key)
        ]
        if missing:
            raise InvalidRequestError(
                f"Missing WooCommerce credentials: {', '.join(missing)}", details={"missing": missing}
            )

        site_url = credentials["site_url"].rstrip("/")
        consumer_key = credentials["consumer_key"]
        consumer_secret = credentials["consumer_secret"]

        try:
            self.request(
                "GET",
                f"{site_url}/wp-json/{self.API_VERSION}/system_status",
                auth=(consumer_key, consumer_secret),
            )
        except PlatformAPIError as e:
            raise OAuthError(
                self.platform, f"Failed to connect to WooCommerce store: {e.body[:200]}"
            ) from e

        connection = StoreMarketplace.upsert(
            self.db,
            keys={"store_id": store.id, "platform": self.platform, "shop_domain": site_url},
            values={
                "name": urlparse(site_url).hostname or "WooCommerce Store",
                "access_token": consumer_key,
                "credentials": {
                    "site_url": site_url,
                    "consumer_key": consumer_key,
                    "consumer_secret": encrypt_value(consumer_secret, key=self.services.app_key),
                },
                "status": ConnectionStatus.ACTIVE.value,
                "connected_successfully": True,
                "last_error": None,
            },
        )
        self.db.commit()

        logger.info(f"Connected WooCommerce site {site_url} for store {store.id}")
        return connection

    def handle_callback(self, store: Store, params: Dict[str, Any]) -> StoreMarketplace:
        return self.connect_with_credentials(
            store,
            {
                "site_url": params.get("site_url"),
                "consumer_key": params.get("consumer_key"),
                "consumer_secret": params.get("consumer_secret"),
            },
        )

    def validate_credentials(self, connection: StoreMarketplace) -> bool:
        try:
            response = self.woo_request(connection, "GET", "system_status")
        except PlatformAPIError as e:
            logger.warning(f"WooCommerce credential check failed for connection {connection.id}: {e}")
            return False
        return "environment" in response

    # ========== Catalog ==========

    def pull_products(self, connection: StoreMarketplace) -> List[Dict[str, Any]]:
        def produce() -> Iterator[Dict[str, Any]]:
            page = 1
            while True:
                response = self.woo_request(
                    connection, "GET", "products", params={"page": page, "per_page": self.PAGE_SIZE}
                )
                for woo_product in response:
                    yield map_woo_product(woo_product)

                if len(response) < self.PAGE_SIZE:
                    break
                page += 1

        return self.collect_pull(connection, "products", produce)

    def push_product(self, product: Product, connection: StoreMarketplace) -> PlatformListing:
        listing = self.upsert_listing(product, connection)
        payload = self.map_to_woo_product(listing)

        if listing.external_listing_id:
            response = self.woo_request(connection, "PUT", f"products/{listing.external_listing_id}", payload)
        else:
            response = self.woo_request(connection, "POST", "products", payload)

        listing.external_listing_id = str(response["id"])
        listing.listing_url = response.get("permalink")
        listing.platform_data = response
        listing.last_synced_at = utcnow()

        if response.get("status") == "publish":
            listing.mark_as_listed()
        else:
            listing.status = ListingStatus.NOT_LISTED.value

        self.db.commit()
        return listing

    def update_listing(self, listing: PlatformListing) -> PlatformListing:
        response = self.woo_request(
            listing.marketplace,
            "PUT",
            f"products/{listing.external_listing_id}",
            self.map_to_woo_product(listing),
        )
        listing.platform_data = response
        listing.last_synced_at = utcnow()
        self.db.commit()
        return listing

    def delete_listing(self, listing: PlatformListing) -> None:
        self.woo_request(
            listing.marketplace,
            "DELETE",
            f"products/{listing.external_listing_id}",
            params={"force": "true"},
        )
        listing.archive()
        self.db.commit()

    def unlist_listing(self, listing: PlatformListing) -> PlatformListing:
        self.woo_request(
            listing.marketplace, "PUT", f"products/{listing.external_listing_id}", {"status": "draft"}
        )
        listing.mark_as_ended()
        self.db.commit()
        return listing

    def relist_listing(self, listing: PlatformListing) -> PlatformListing:
        self.woo_request(
            listing.marketplace, "PUT", f"products/{listing.external_listing_id}", {"status": "publish"}
        )
        listing.mark_as_listed()
        self.db.commit()
        return listing

    # ========== Inventory ==========

    def sync_inventory(self, connection: StoreMarketplace) -> Dict[str, int]:
        """Push all quantities in a single ``products/batch`` call."""
        sync_log = self.log_sync(connection, "inventory", "push")
        listings = self.listings_to_sync(connection)
        counts = {"updated": 0, "skipped": 0, "failed": 0}

        batch = []
        batched = []
        for listing in listings:
            try:
                external_id = int(listing.external_listing_id)
            except (TypeError, ValueError):
                counts["skipped"] += 1
                continue
            batched.append(listing)
            batch.append(
                {
                    "id": external_id,
                    "stock_quantity": listing.effective_quantity(),
                    "manage_stock": True,
                }
            )

        if batch:
            try:
                self.woo_request(connection, "POST", "products/batch", {"update": batch})
            except PlatformAPIError as e:
                logger.warning(f"WooCommerce batch stock update failed for connection {connection.id}: {e}")
                counts["failed"] = len(batch)
                sync_log.errors = [e.message]
            else:
                counts["updated"] = len(batch)
                now = utcnow()
                for listing in batched:
                    listing.platform_quantity = listing.effective_quantity()
                    listing.last_synced_at = now

        sync_log.processed_count = len(batch)
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
        def produce() -> Iterator[PlatformOrder]:
            params: Dict[str, Any] = {"page": 1, "per_page": self.PAGE_SIZE}
            if since:
                params["after"] = since

            while True:
                woo_orders = self.woo_request(connection, "GET", "orders", params=dict(params))
                for woo_order in woo_orders:
                    yield self.import_order(woo_order, connection)

                # A short page is the last one
                if len(woo_orders) < self.PAGE_SIZE:
                    break
                params["page"] += 1

        return self.collect_pull(connection, "orders", produce)

    def update_order_fulfillment(self, order: PlatformOrder, fulfillment: Dict[str, Any]) -> None:
        connection = order.marketplace

        if fulfillment.get("tracking_number"):
            self.woo_request(
                connection,
                "POST",
                f"orders/{order.external_order_id}/notes",
                {
                    "note": (
                        f"Order shipped via {fulfillment.get('carrier') or 'Carrier'}. "
                        f"Tracking: {fulfillment['tracking_number']}"
                    ),
                    "customer_note": True,
                },
            )

        self.woo_request(connection, "PUT", f"orders/{order.external_order_id}", {"status": "completed"})
        order.fulfillment_status = "completed"
        self.db.commit()

    def import_order(self, data: Dict[str, Any], connection: StoreMarketplace) -> PlatformOrder:
        billing = data.get("billing") or {}
        status = data.get("status") or ""
        return PlatformOrder.upsert(
            self.db,
            connection.id,
            data["id"],
            {
                "external_order_number": str(data.get("number") or data["id"]),
                "status": status,
                "fulfillment_status": ORDER_STATUS_MAP.get(status, status),
                "payment_status": "paid" if data.get("date_paid") else "pending",
                "total": to_decimal(data.get("total")),
                "subtotal": to_decimal(data.get("subtotal") or data.get("total")),
                "shipping_cost": to_decimal(data.get("shipping_total")),
                "tax": to_decimal(data.get("total_tax")),
                "discount": to_decimal(data.get("discount_total")),
                "currency": data.get("currency") or "USD",
                "customer_data": {
                    "id": data.get("customer_id"),
                    "email": billing.get("email"),
                    "first_name": billing.get("first_name"),
                    "last_name": billing.get("last_name"),
                },
                "shipping_address": data.get("shipping"),
                "billing_address": billing or None,
                "line_items": data.get("line_items") or [],
                "platform_data": data,
                "ordered_at": utc_from_timestamp(data.get("date_created_gmt") or data.get("date_created")),
                "last_synced_at": utcnow(),
            },
        )

    # ========== Metadata and webhooks ==========

    def fetch_categories(self, connection: StoreMarketplace) -> List[Dict[str, Any]]:
        response = self.woo_request(connection, "GET", "products/categories", params={"per_page": 100})
        return [
            {
                "id": category["id"],
                "name": category["name"],
                "slug": category.get("slug"),
                "parent": category.get("parent"),
            }
            for category in response
        ]

    def register_webhooks(self, connection: StoreMarketplace) -> None:
        for topic in self.WEBHOOK_TOPICS:
            try:
                self.woo_request(
                    connection,
                    "POST",
                    "webhooks",
                    {
                        "name": f"Back-office - {topic}",
                        "topic": topic,
                        "delivery_url": self.get_webhook_url(connection),
                        "status": "active",
                    },
                )
            except PlatformAPIError as e:
                # Existing subscriptions are rejected as duplicates
                logger.info(f"WooCommerce webhook {topic} not registered: {e.message}")

    def handle_webhook(
        self, topic: str, payload: Dict[str, Any], connection: StoreMarketplace
    ) -> Optional[Any]:
        if topic in ("order.created", "order.updated"):
            order = self.import_order(payload, connection)
            self.db.commit()
            return order

        if topic in ("product.updated", "product.deleted"):
            listing = PlatformListing.find_by_external_id(self.db, connection.id, payload.get("id"))
            if listing is None:
                return None
            if topic == "product.deleted":
                listing.archive()
                listing.last_error = "Product was deleted on WooCommerce"
            else:
                listing.platform_data = payload
            listing.last_synced_at = utcnow()
            self.db.commit()
            return listing

        return super().handle_webhook(topic, payload, connection)

    # ========== Helpers ==========

    def woo_request(
        self,
        connection: StoreMarketplace,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        credentials = connection.credentials or {}
        consumer_secret = decrypt_value(credentials["consumer_secret"], key=self.services.app_key)

        return self.request(
            method,
            f"{credentials['site_url']}/wp-json/{self.API_VERSION}/{endpoint}",
            auth=(credentials["consumer_key"], consumer_secret),
            headers={"Content-Type": "application/json"},
            params=params,
            json=payload,
        )

    def map_to_woo_product(self, listing: PlatformListing) -> Dict[str, Any]:
        product = listing.product
        first = product.first_variant

        woo_product: Dict[str, Any] = {
            "name": listing.effective_title(),
            "type": "variable" if product.has_variants and len(product.variants) > 1 else "simple",
            "description": listing.effective_description() or "",
            "sku": (first.sku if first is not None else None) or product.handle,
            "regular_price": f"{listing.effective_price():.2f}",
            "manage_stock": True,
            "stock_quantity": listing.effective_quantity(),
            "status": "publish" if product.is_published else "draft",
        }

        images = listing.effective_images()
        if images:
            woo_product["images"] = [
                {"src": url, "position": position} for position, url in enumerate(images)
            ]

        if product.category_name:
            woo_product["categories"] = [{"name": product.category_name}]

        if woo_product["type"] == "variable":
            woo_product["attributes"] = build_attributes(product)

        return woo_product


def build_attributes(product: Product) -> List[Dict[str, Any]]:
    attributes = []
    for index, option in enumerate(("option1", "option2", "option3"), start=1):
        values = []
        for variant in product.variants:
            value = getattr(variant, option)
            if value and value not in values:
                values.append(value)
        if values:
            attributes.append(
                {"name": f"Option {index}", "options": values, "visible": True, "variation": True}
            )
    return attributes


def map_woo_product(woo_product: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "external_id": woo_product.get("id"),
        "title": woo_product.get("name"),
        "description": woo_product.get("description"),
        "short_description": woo_product.get("short_description"),
        "sku": woo_product.get("sku"),
        "price": woo_product.get("price"),
        "regular_price": woo_product.get("regular_price"),
        "sale_price": woo_product.get("sale_price"),
        "quantity": woo_product.get("stock_quantity"),
        "status": woo_product.get("status"),
        "categories": [category.get("name") for category in woo_product.get("categories", [])],
        "images": [image.get("src") for image in woo_product.get("images", [])],
    }
