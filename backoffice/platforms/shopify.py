"""
Shopify Integration
OAuth app install flow and Admin REST API client.
"""

import base64
import hashlib
import hmac
import logging
import re
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import parse_qs, urlencode, urlparse

from ..api.errors import InvalidRequestError
from ..db.models import (
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
from .base import BasePlatformService, utc_from_timestamp
from .exceptions import OAuthError, PlatformAPIError

logger = logging.getLogger(__name__)


class ShopifyService(BasePlatformService):
    """Shopify Admin API integration. Access tokens do not expire."""

    platform = Platform.SHOPIFY.value

    required_settings = {
        "SHOPIFY_CLIENT_ID": "shopify_client_id",
        "SHOPIFY_CLIENT_SECRET": "shopify_client_secret",
    }

    REQUIRED_SCOPES = [
        "read_products",
        "write_products",
        "read_orders",
        "write_orders",
        "read_inventory",
        "write_inventory",
        "read_locations",
    ]

    WEBHOOK_TOPICS = [
        "orders/create",
        "orders/updated",
        "products/update",
        "inventory_levels/update",
    ]

    PAGE_SIZE = 250

    @property
    def api_version(self) -> str:
        return self.services.shopify_api_version

    # ========== Connection lifecycle ==========

    def connect(self, store: Store, params: Dict[str, Any]) -> str:
        """
        Build the Shopify OAuth authorize URL.

        Args:
            store: Store requesting the connection
            params: Must carry ``shop_domain`` (or ``shop``); bare shop names get ``.myshopify.com``

        Returns:
            Authorize URL on the merchant's shop, with the store and shop sealed into ``state``
        """
        self.ensure_configured()

        shop_domain = params.get("shop_domain") or params.get("shop")
        if not shop_domain:
            raise InvalidRequestError("Shop domain is required")

        shop_domain = normalize_shop_domain(shop_domain)
        query = urlencode(
            {
                "client_id": self.services.shopify_client_id,
                "scope": ",".join(self.REQUIRED_SCOPES),
                "redirect_uri": self.callback_url(),
                "state": self.encrypt_state({"store_id": store.id, "shop_domain": shop_domain}),
            }
        )
        return f"https://{shop_domain}/admin/oauth/authorize?{query}"

    def handle_callback(self, store: Store, params: Dict[str, Any]) -> StoreMarketplace:
        """Exchange the callback code for an offline token; Shopify tokens do not expire."""
        self.ensure_configured()

        code = params.get("code")
        if not code:
            raise OAuthError(self.platform, "Authorization code missing from callback")

        state = self.decrypt_state(params.get("state"))
        shop_domain = normalize_shop_domain(params.get("shop") or state.get("shop_domain") or "")

        try:
            data = self.request(
                "POST",
                f"https://{shop_domain}/admin/oauth/access_token",
                json={
                    "client_id": self.services.shopify_client_id,
                    "client_secret": self.services.shopify_client_secret,
                    "code": code,
                },
            )
        except PlatformAPIError as e:
            raise OAuthError(self.platform, f"Failed to obtain access token: {e.body}") from e

        connection = StoreMarketplace.upsert(
            self.db,
            keys={
                "store_id": store.id,
                "platform": self.platform,
                "shop_domain": shop_domain,
            },
            values={
                "name": shop_domain,
                "access_token": data["access_token"],
                "token_expires_at": None,
                "credentials": {"scope": data.get("scope")},
                "status": "active",
                "connected_successfully": True,
                "last_error": None,
            },
        )
        self.db.commit()

        logger.info(f"Connected Shopify shop {shop_domain} for store {store.id}")
        return connection

    def validate_credentials(self, connection: StoreMarketplace) -> bool:
        try:
            response = self.shopify_request(connection, "GET", "shop.json")
        except PlatformAPIError as e:
            logger.warning(f"Shopify credential check failed for connection {connection.id}: {e}")
            return False
        return "shop" in response

    # ========== Catalog ==========

    def pull_products(self, connection: StoreMarketplace) -> List[Dict[str, Any]]:
        def produce() -> Iterator[Dict[str, Any]]:
            params: Dict[str, Any] = {"limit": self.PAGE_SIZE}
            while True:
                response = self.send(
                    "GET",
                    self.api_url(connection, "products.json"),
                    headers=self.headers(connection),
                    params=params,
                )
                for shopify_product in response.json().get("products", []):
                    yield map_shopify_product(shopify_product)

                page_info = next_page_info(response.links)
                if not page_info:
                    break
                params = {"limit": self.PAGE_SIZE, "page_info": page_info}

        return self.collect_pull(connection, "products", produce)

    def push_product(self, product: Product, connection: StoreMarketplace) -> PlatformListing:
        listing = self.upsert_listing(product, connection)
        payload = {"product": self.map_to_shopify_product(product, listing)}

        if listing.external_listing_id:
            response = self.shopify_request(
                connection, "PUT", f"products/{listing.external_listing_id}.json", payload
            )
        else:
            response = self.shopify_request(connection, "POST", "products.json", payload)

        shopify_data = response["product"]
        listing.external_listing_id = str(shopify_data["id"])
        listing.listing_url = f"https://{connection.shop_domain}/products/{shopify_data.get('handle')}"
        listing.platform_data = shopify_data
        listing.last_synced_at = utcnow()

        if shopify_data.get("status") == "active":
            listing.mark_as_listed()
        else:
            listing.status = ListingStatus.NOT_LISTED.value
            listing.published_at = None

        self.sync_variant_external_ids(listing, shopify_data.get("variants", []))
        self.db.commit()
        return listing

    def update_listing(self, listing: PlatformListing) -> PlatformListing:
        response = self.shopify_request(
            listing.marketplace,
            "PUT",
            f"products/{listing.external_listing_id}.json",
            {"product": self.map_to_shopify_product(listing.product, listing)},
        )

        listing.platform_data = response.get("product", {})
        listing.last_synced_at = utcnow()
        self.sync_variant_external_ids(listing, listing.platform_data.get("variants", []))
        self.db.commit()
        return listing

    def delete_listing(self, listing: PlatformListing) -> None:
        self.shopify_request(
            listing.marketplace, "DELETE", f"products/{listing.external_listing_id}.json"
        )
        listing.archive()
        self.db.commit()

    def unlist_listing(self, listing: PlatformListing) -> PlatformListing:
        # Draft hides the product from the storefront but keeps it
        self.set_product_status(listing, "draft")
        listing.mark_as_ended()
        self.db.commit()
        return listing

    def relist_listing(self, listing: PlatformListing) -> PlatformListing:
        self.set_product_status(listing, "active")
        listing.mark_as_listed()
        self.db.commit()
        return listing

    def set_product_status(self, listing: PlatformListing, status: str) -> None:
        self.shopify_request(
            listing.marketplace,
            "PUT",
            f"products/{listing.external_listing_id}.json",
            {"product": {"id": listing.external_listing_id, "status": status}},
        )

    # ========== Inventory ==========

    def prepare_inventory_sync(self, connection: StoreMarketplace) -> Optional[str]:
        response = self.shopify_request(connection, "GET", "locations.json")
        locations = response.get("locations") or []
        if not locations:
            logger.warning(f"No Shopify locations found for connection {connection.id}")
            return None
        return locations[0]["id"]

    def push_listing_quantity(self, listing: PlatformListing, location_id: Optional[str]) -> bool:
        if location_id is None:
            return False

        pushed = False
        for listing_variant in listing.listing_variants:
            if not listing_variant.external_inventory_item_id:
                continue
            self.shopify_request(
                listing.marketplace,
                "POST",
                "inventory_levels/set.json",
                {
                    "location_id": location_id,
                    "inventory_item_id": listing_variant.external_inventory_item_id,
                    "available": listing_variant.effective_quantity(),
                },
            )
            pushed = True
        return pushed

    # ========== Orders ==========

    def pull_orders(
        self, connection: StoreMarketplace, since: Optional[str] = None
    ) -> List[PlatformOrder]:
        """
        Import orders created at or after ``since``.

        Args:
            connection: Shopify connection
            since: ISO-8601 lower bound on ``created_at``

        Returns:
            The imported orders, across every page of results
        """

        def produce() -> Iterator[PlatformOrder]:
            params: Dict[str, Any] = {"limit": self.PAGE_SIZE, "status": "any"}
            if since:
                params["created_at_min"] = since

            while True:
                response = self.send(
                    "GET",
                    self.api_url(connection, "orders.json"),
                    headers=self.headers(connection),
                    params=params,
                )
                for shopify_order in response.json().get("orders", []):
                    yield self.import_order(shopify_order, connection)

                # Shopify rejects filters alongside page_info
                page_info = next_page_info(response.links)
                if not page_info:
                    break
                params = {"limit": self.PAGE_SIZE, "page_info": page_info}

        return self.collect_pull(connection, "orders", produce)

    def update_order_fulfillment(self, order: PlatformOrder, fulfillment: Dict[str, Any]) -> None:
        self.shopify_request(
            order.marketplace,
            "POST",
            f"orders/{order.external_order_id}/fulfillments.json",
            {"fulfillment": fulfillment},
        )
        order.fulfillment_status = "fulfilled"
        self.db.commit()

    def import_order(self, data: Dict[str, Any], connection: StoreMarketplace) -> PlatformOrder:
        return PlatformOrder.upsert(
            self.db,
            connection.id,
            data["id"],
            {
                "external_order_number": str(data.get("order_number") or data.get("name") or data["id"]),
                "status": data.get("financial_status"),
                "fulfillment_status": data.get("fulfillment_status"),
                "payment_status": data.get("financial_status"),
                "total": to_decimal(data.get("total_price")),
                "subtotal": to_decimal(data.get("subtotal_price")),
                "shipping_cost": sum(
                    (to_decimal(line.get("price")) for line in data.get("shipping_lines") or []),
                    to_decimal(0),
                ),
                "tax": to_decimal(data.get("total_tax")),
                "discount": sum(
                    (to_decimal(code.get("amount")) for code in data.get("discount_codes") or []),
                    to_decimal(0),
                ),
                "currency": data.get("currency") or "USD",
                "customer_data": data.get("customer"),
                "shipping_address": data.get("shipping_address"),
                "billing_address": data.get("billing_address"),
                "line_items": data.get("line_items") or [],
                "platform_data": data,
                "ordered_at": utc_from_timestamp(data.get("created_at")),
                "last_synced_at": utcnow(),
            },
        )

    # ========== Metadata and webhooks ==========

    def fetch_categories(self, connection: StoreMarketplace) -> List[Dict[str, Any]]:
        response = self.shopify_request(connection, "GET", "custom_collections.json")
        return [
            {"id": collection["id"], "name": collection["title"], "handle": collection.get("handle")}
            for collection in response.get("custom_collections", [])
        ]

    def register_webhooks(self, connection: StoreMarketplace) -> None:
        for topic in self.WEBHOOK_TOPICS:
            self.shopify_request(
                connection,
                "POST",
                "webhooks.json",
                {
                    "webhook": {
                        "topic": topic,
                        "address": self.get_webhook_url(connection),
                        "format": "json",
                    }
                },
            )
        logger.info(f"Registered {len(self.WEBHOOK_TOPICS)} Shopify webhooks for connection {connection.id}")

    def handle_webhook(
        self, topic: str, payload: Dict[str, Any], connection: StoreMarketplace
    ) -> Optional[Any]:
        if topic in ("orders/create", "orders/updated", "orders/paid", "orders/fulfilled", "orders/cancelled"):
            order = self.import_order(payload, connection)
            self.db.commit()
            return order

        if topic.startswith("refunds/"):
            # Refund payloads only reference the order; re-import it for the new totals
            order_id = payload.get("order_id")
            if not order_id:
                return None
            response = self.shopify_request(connection, "GET", f"orders/{order_id}.json")
            order = self.import_order(response["order"], connection)
            self.db.commit()
            return order

        if topic == "products/update":
            listing = PlatformListing.find_by_external_id(self.db, connection.id, payload.get("id"))
            if listing is not None:
                listing.platform_data = payload
                listing.last_synced_at = utcnow()
                self.db.commit()
            return listing

        return super().handle_webhook(topic, payload, connection)

    def verify_webhook(self, body: bytes, signature: Optional[str]) -> bool:
        """Check ``X-Shopify-Hmac-Sha256`` against the raw request body."""
        secret = self.services.shopify_client_secret
        if not secret or not signature:
            return False
        digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode()
        return hmac.compare_digest(expected, signature)

    # ========== Helpers ==========

    def api_url(self, connection: StoreMarketplace, endpoint: str) -> str:
        return f"https://{connection.shop_domain}/admin/api/{self.api_version}/{endpoint}"

    def headers(self, connection: StoreMarketplace) -> Dict[str, str]:
        return {
            "X-Shopify-Access-Token": connection.access_token or "",
            "Content-Type": "application/json",
        }

    def shopify_request(
        self,
        connection: StoreMarketplace,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return self.request(
            method,
            self.api_url(connection, endpoint),
            headers=self.headers(connection),
            params=params,
            json=payload,
        )

    def map_to_shopify_product(self, product: Product, listing: PlatformListing) -> Dict[str, Any]:
        shopify_product: Dict[str, Any] = {
            "title": listing.effective_title(),
            "body_html": listing.effective_description() or "",
            "handle": product.handle,
            "vendor": product.brand,
            "product_type": listing.platform_category_id or product.category_name,
            "tags": ", ".join(product.tags or []),
            "status": "active" if product.is_published else "draft",
        }

        images = listing.effective_images()
        if images:
            shopify_product["images"] = [{"src": url} for url in images]

        if listing.listing_variants:
            variants = []
            for listing_variant in listing.listing_variants:
                variant = {
                    "sku": listing_variant.effective_sku(),
                    "price": f"{listing_variant.effective_price():.2f}",
                    "inventory_quantity": listing_variant.effective_quantity(),
                    "barcode": listing_variant.effective_barcode(),
                    "inventory_management": "shopify",
                }
                source = listing_variant.product_variant
                for option in ("option1", "option2", "option3"):
                    value = getattr(source, option, None) if source is not None else None
                    if value:
                        variant[option] = value
                if listing_variant.external_variant_id:
                    variant["id"] = listing_variant.external_variant_id
                variants.append(variant)
            shopify_product["variants"] = variants
        else:
            shopify_product["variants"] = [
                {
                    "price": f"{listing.effective_price():.2f}",
                    "inventory_quantity": listing.effective_quantity(),
                    "inventory_management": "shopify",
                }
            ]

        return shopify_product

    def sync_variant_external_ids(
        self, listing: PlatformListing, shopify_variants: List[Dict[str, Any]]
    ) -> None:
        """Match returned variants to listing variants by SKU, or by position for single-variant products."""
        for shopify_variant in shopify_variants:
            listing_variant = self.find_listing_variant(listing, shopify_variant.get("sku"))

            if (
                listing_variant is None
                and len(listing.listing_variants) == 1
                and len(shopify_variants) == 1
            ):
                listing_variant = listing.listing_variants[0]

            if listing_variant is None:
                continue

            listing_variant.external_variant_id = str(shopify_variant.get("id") or "")
            listing_variant.external_inventory_item_id = str(
                shopify_variant.get("inventory_item_id") or ""
            )
            listing_variant.platform_data = shopify_variant


def normalize_shop_domain(domain: str) -> str:
    domain = re.sub(r"^https?://", "", domain.strip())
    domain = domain.rstrip("/")
    if ".myshopify.com" not in domain:
        domain = f"{domain}.myshopify.com"
    return domain


def next_page_info(links: Dict[str, Dict[str, str]]) -> Optional[str]:
    """Extract the cursor from a ``Link: <...>; rel="next"`` header."""
    next_link = (links or {}).get("next", {}).get("url")
    if not next_link:
        return None
    values = parse_qs(urlparse(next_link).query).get("page_info")
    return values[0] if values else None


def map_shopify_product(shopify_product: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "external_id": shopify_product["id"],
        "title": shopify_product.get("title"),
        "description": shopify_product.get("body_html"),
        "handle": shopify_product.get("handle"),
        "vendor": shopify_product.get("vendor"),
        "product_type": shopify_product.get("product_type"),
        "variants": [
            {
                "external_id": variant.get("id"),
                "sku": variant.get("sku"),
                "price": variant.get("price"),
                "quantity": variant.get("inventory_quantity", 0),
                "barcode": variant.get("barcode"),
            }
            for variant in shopify_product.get("variants", [])
        ],
        "images": [image.get("src") for image in shopify_product.get("images", [])],
    }
