"""
eBay Integration
OAuth2 (authorization code) plus the Sell Inventory, Fulfillment and Taxonomy APIs.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urlencode

from ..api.errors import InvalidRequestError
from ..db.models import (
    ConnectionStatus,
    Platform,
    PlatformListing,
    PlatformOrder,
    Product,
    Store,
    StoreMarketplace,
    to_decimal,
    utcnow,
)
from .base import BasePlatformService, apply_markup, utc_from_timestamp
from .exceptions import OAuthError, PlatformAPIError

logger = logging.getLogger(__name__)

MARKETPLACE_CURRENCIES = {
    "EBAY_GB": "GBP",
    "EBAY_DE": "EUR",
    "EBAY_FR": "EUR",
    "EBAY_IT": "EUR",
    "EBAY_ES": "EUR",
    "EBAY_AT": "EUR",
    "EBAY_BE_FR": "EUR",
    "EBAY_BE_NL": "EUR",
    "EBAY_NL": "EUR",
    "EBAY_IE": "EUR",
    "EBAY_FI": "EUR",
    "EBAY_AU": "AUD",
    "EBAY_CA": "CAD",
    "EBAY_CH": "CHF",
    "EBAY_IN": "INR",
    "EBAY_SG": "SGD",
    "EBAY_MY": "SGD",
    "EBAY_HK": "HKD",
    "EBAY_PH": "PHP",
    "EBAY_PL": "PLN",
}


def currency_for_marketplace(marketplace_id: str) -> str:
    return MARKETPLACE_CURRENCIES.get(marketplace_id, "USD")


class EbayService(BasePlatformService):
    """eBay seller integration. Tokens expire and are refreshed with the stored refresh token."""

    platform = Platform.EBAY.value

    required_settings = {
        "EBAY_CLIENT_ID": "ebay_client_id",
        "EBAY_CLIENT_SECRET": "ebay_client_secret",
        "EBAY_REDIRECT_URI": "ebay_redirect_uri",
    }

    REQUIRED_SCOPES = [
        "https://api.ebay.com/oauth/api_scope",
        "https://api.ebay.com/oauth/api_scope/sell.inventory",
        "https://api.ebay.com/oauth/api_scope/sell.fulfillment",
        "https://api.ebay.com/oauth/api_scope/sell.account",
        "https://api.ebay.com/oauth/api_scope/commerce.notification.subscription",
    ]

    NOTIFICATION_TOPICS = ["MARKETPLACE_ACCOUNT_DELETION"]

    PAGE_SIZE = 100
    ORDER_PAGE_SIZE = 50
    DEFAULT_TOKEN_LIFETIME = 7200

    @property
    def api_base_url(self) -> str:
        return "https://api.sandbox.ebay.com" if self.services.ebay_sandbox else "https://api.ebay.com"

    @property
    def auth_base_url(self) -> str:
        return "https://auth.sandbox.ebay.com" if self.services.ebay_sandbox else "https://auth.ebay.com"

    # ========== Connection lifecycle ==========

    def connect(self, store: Store, params: Dict[str, Any]) -> str:
        self.ensure_configured()

        query = urlencode(
            {
                "client_id": self.services.ebay_client_id,
                "response_type": "code",
                "redirect_uri": self.services.ebay_redirect_uri,
                "scope": " ".join(self.REQUIRED_SCOPES),
                "state": self.encrypt_state({"store_id": store.id}),
            }
        )
        return f"{self.auth_base_url}/oauth2/authorize?{query}"

    def handle_callback(self, store: Store, params: Dict[str, Any]) -> StoreMarketplace:
        self.ensure_configured()

        code = params.get("code")
        if not code:
            raise OAuthError(self.platform, "Authorization code missing from callback")

        try:
            data = self.token_request(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.services.ebay_redirect_uri,
                }
            )
        except PlatformAPIError as e:
            raise OAuthError(self.platform, f"Failed to obtain access token: {e.body}") from e

        user_id, username = self.fetch_user_identity(data["access_token"])

        # Keying on the eBay user id lets one store connect several accounts
        keys: Dict[str, Any] = {"store_id": store.id, "platform": self.platform}
        if user_id:
            keys["external_store_id"] = user_id

        connection = StoreMarketplace.upsert(
            self.db,
            keys=keys,
            values={
                "name": f"eBay ({username})" if username else "eBay Store",
                "external_store_id": user_id,
                "access_token": data["access_token"],
                "refresh_token": data.get("refresh_token"),
                "token_expires_at": utcnow()
                + timedelta(seconds=data.get("expires_in") or self.DEFAULT_TOKEN_LIFETIME),
                "credentials": {
                    "scope": data.get("scope"),
                    "refresh_token_expires_in": data.get("refresh_token_expires_in"),
                    "username": username,
                },
                "status": ConnectionStatus.ACTIVE.value,
                "connected_successfully": True,
                "last_error": None,
            },
        )
        self.db.commit()

        logger.info(f"Connected eBay account {username or '(unknown)'} for store {store.id}")
        return connection

    def refresh_token(self, connection: StoreMarketplace) -> StoreMarketplace:
        self.ensure_configured()

        if not connection.refresh_token:
            raise OAuthError(self.platform, "No refresh token available")

        try:
            data = self.token_request(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": connection.refresh_token,
                    "scope": " ".join(self.REQUIRED_SCOPES),
                }
            )
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
            response = self.ebay_request(connection, "GET", "/sell/account/v1/privilege")
        except (PlatformAPIError, OAuthError) as e:
            logger.warning(f"eBay credential check failed for connection {connection.id}: {e}")
            return False
        return "sellingLimit" in response

    def token_request(self, form: Dict[str, Any]) -> Dict[str, Any]:
        return self.request(
            "POST",
            f"{self.api_base_url}/identity/v1/oauth2/token",
            data=form,
            auth=(self.services.ebay_client_id, self.services.ebay_client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    def fetch_user_identity(self, access_token: str) -> tuple:
        try:
            user = self.request(
                "GET",
                f"{self.api_base_url}/commerce/identity/v1/user/",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except PlatformAPIError as e:
            logger.warning(f"eBay identity lookup failed: {e}")
            return None, None
        return user.get("userId"), user.get("username")

    # ========== Catalog ==========

    def pull_products(self, connection: StoreMarketplace) -> List[Dict[str, Any]]:
        def produce() -> Iterator[Dict[str, Any]]:
            self.ensure_valid_token(connection)
            offset = 0
            while True:
                response = self.ebay_request(
                    connection,
                    "GET",
                    "/sell/inventory/v1/inventory_item",
                    params={"limit": self.PAGE_SIZE, "offset": offset},
                )
                for item in response.get("inventoryItems", []):
                    yield map_ebay_product(item)

                offset += self.PAGE_SIZE
                if offset >= (response.get("total") or 0):
                    break

        return self.collect_pull(connection, "products", produce)

    def push_product(self, product: Product, connection: StoreMarketplace) -> PlatformListing:
        """
        Publish through the Inventory API: inventory item, then offer, then publish.

        An existing ``offer_id`` in ``platform_data`` is updated rather than
        recreated, so pushing twice republishes the same offer.

        Args:
            product: Local product to publish
            connection: eBay connection

        Returns:
            The listing, keyed on the eBay listing id (or the offer id until one is assigned)
        """
        self.ensure_valid_token(connection)
        listing = self.upsert_listing(product, connection)

        platform_data = dict(listing.platform_data or {})
        sku = platform_data.get("sku") or self.listing_sku(listing)

        self.ebay_request(
            connection,
            "PUT",
            f"/sell/inventory/v1/inventory_item/{sku}",
            self.map_to_inventory_item(listing),
        )

        offer = self.map_to_offer(listing, sku)
        offer_id = platform_data.get("offer_id")
        if offer_id:
            self.ebay_request(connection, "PUT", f"/sell/inventory/v1/offer/{offer_id}", offer)
        else:
            offer_response = self.ebay_request(connection, "POST", "/sell/inventory/v1/offer", offer)
            offer_id = offer_response["offerId"]

        publish_response = self.ebay_request(
            connection, "POST", f"/sell/inventory/v1/offer/{offer_id}/publish"
        )
        listing_id = publish_response.get("listingId")

        listing.external_listing_id = str(listing_id or offer_id)
        listing.listing_url = f"https://www.ebay.com/itm/{listing_id}" if listing_id else None
        listing.platform_data = {"sku": sku, "offer_id": offer_id, "listing_id": listing_id}
        listing.mark_as_listed()
        self.db.commit()
        return listing

    def update_listing(self, listing: PlatformListing) -> PlatformListing:
        connection = listing.marketplace
        self.ensure_valid_token(connection)

        platform_data = listing.platform_data or {}
        sku = platform_data.get("sku") or self.listing_sku(listing)

        self.ebay_request(
            connection,
            "PUT",
            f"/sell/inventory/v1/inventory_item/{sku}",
            self.map_to_inventory_item(listing),
        )

        offer_id = platform_data.get("offer_id")
        if offer_id:
            self.ebay_request(
                connection, "PUT", f"/sell/inventory/v1/offer/{offer_id}", self.map_to_offer(listing, sku)
            )

        listing.last_synced_at = utcnow()
        self.db.commit()
        return listing

    def delete_listing(self, listing: PlatformListing) -> None:
        connection = listing.marketplace
        self.ensure_valid_token(connection)
        platform_data = listing.platform_data or {}

        offer_id = platform_data.get("offer_id")
        if offer_id:
            self.ebay_request(connection, "DELETE", f"/sell/inventory/v1/offer/{offer_id}")

        sku = platform_data.get("sku")
        if sku:
            self.ebay_request(connection, "DELETE", f"/sell/inventory/v1/inventory_item/{sku}")

        listing.archive()
        self.db.commit()

    def unlist_listing(self, listing: PlatformListing) -> PlatformListing:
        connection = listing.marketplace
        self.ensure_valid_token(connection)

        offer_id = (listing.platform_data or {}).get("offer_id")
        if offer_id:
            # Withdrawing ends the listing but keeps the inventory item
            self.ebay_request(connection, "POST", f"/sell/inventory/v1/offer/{offer_id}/withdraw")

        listing.mark_as_ended()
        self.db.commit()
        return listing

    def relist_listing(self, listing: PlatformListing) -> PlatformListing:
        connection = listing.marketplace
        self.ensure_valid_token(connection)

        platform_data = dict(listing.platform_data or {})
        offer_id = platform_data.get("offer_id")
        if not offer_id:
            raise InvalidRequestError(
                "Listing has no eBay offer to republish", details={"listing_id": listing.id}
            )

        publish_response = self.ebay_request(
            connection, "POST", f"/sell/inventory/v1/offer/{offer_id}/publish"
        )
        listing_id = publish_response.get("listingId")
        if listing_id:
            platform_data["listing_id"] = listing_id
            listing.external_listing_id = str(listing_id)
            listing.listing_url = f"https://www.ebay.com/itm/{listing_id}"

        listing.platform_data = platform_data
        listing.mark_as_listed()
        self.db.commit()
        return listing

    # ========== Inventory ==========

    def push_listing_quantity(self, listing: PlatformListing, context: Any) -> bool:
        sku = (listing.platform_data or {}).get("sku")
        if not sku:
            return False

        self.ebay_request(
            listing.marketplace,
            "PUT",
            f"/sell/inventory/v1/inventory_item/{sku}",
            self.map_to_inventory_item(listing),
        )
        return True

    # ========== Orders ==========

    def pull_orders(
        self, connection: StoreMarketplace, since: Optional[str] = None
    ) -> List[PlatformOrder]:
        """
        Import orders from the Fulfillment API, paging by ``offset`` until ``total``.

        Args:
            connection: eBay connection
            since: ISO-8601 lower bound for the ``creationdate`` filter

        Returns:
            The imported orders
        """

        def produce() -> Iterator[PlatformOrder]:
            self.ensure_valid_token(connection)
            params: Dict[str, Any] = {"limit": self.ORDER_PAGE_SIZE, "offset": 0}
            if since:
                now = utcnow().strftime("%Y-%m-%dT%H:%M:%S.000Z")
                params["filter"] = f"creationdate:[{since}..{now}]"

            while True:
                response = self.ebay_request(
                    connection, "GET", "/sell/fulfillment/v1/order", params=dict(params)
                )
                for ebay_order in response.get("orders", []):
                    yield self.import_order(ebay_order, connection)

                params["offset"] += self.ORDER_PAGE_SIZE
                if params["offset"] >= (response.get("total") or 0):
                    break

        return self.collect_pull(connection, "orders", produce)

    def update_order_fulfillment(self, order: PlatformOrder, fulfillment: Dict[str, Any]) -> None:
        connection = order.marketplace
        self.ensure_valid_token(connection)

        self.ebay_request(
            connection,
            "POST",
            f"/sell/fulfillment/v1/order/{order.external_order_id}/shipping_fulfillment",
            {
                "lineItems": [
                    {"lineItemId": item.get("lineItemId"), "quantity": item.get("quantity")}
                    for item in order.line_items or []
                ],
                "shippedDate": utcnow().strftime("%Y-%m-%dT%H:%M:%S.000Z"),
                "shippingCarrierCode": fulfillment.get("carrier") or "OTHER",
                "trackingNumber": fulfillment.get("tracking_number"),
            },
        )
        order.fulfillment_status = "fulfilled"
        self.db.commit()

    def import_order(self, data: Dict[str, Any], connection: StoreMarketplace) -> PlatformOrder:
        pricing = data.get("pricingSummary") or {}

        def amount(key: str):
            return to_decimal((pricing.get(key) or {}).get("value"))

        instructions = data.get("fulfillmentStartInstructions") or [{}]
        shipping_address = (instructions[0].get("shippingStep") or {}).get("shipTo")

        return PlatformOrder.upsert(
            self.db,
            connection.id,
            data["orderId"],
            {
                "external_order_number": data["orderId"],
                "status": data.get("orderFulfillmentStatus"),
                "fulfillment_status": data.get("orderFulfillmentStatus"),
                "payment_status": data.get("orderPaymentStatus"),
                "total": amount("total"),
                "subtotal": amount("priceSubtotal"),
                "shipping_cost": amount("deliveryCost"),
                "tax": amount("tax"),
                "discount": amount("priceDiscount"),
                "currency": (pricing.get("total") or {}).get("currency") or "USD",
                "customer_data": data.get("buyer"),
                "shipping_address": shipping_address,
                "billing_address": None,
                "line_items": data.get("lineItems") or [],
                "platform_data": data,
                "ordered_at": utc_from_timestamp(data.get("creationDate")),
                "last_synced_at": utcnow(),
            },
        )

    # ========== Metadata and webhooks ==========

    def fetch_categories(self, connection: StoreMarketplace) -> List[Dict[str, Any]]:
        self.ensure_valid_token(connection)
        tree_id = (connection.settings or {}).get("category_tree_id", "0")
        response = self.ebay_request(connection, "GET", f"/commerce/taxonomy/v1/category_tree/{tree_id}")
        return flatten_categories(response.get("rootCategoryNode") or {})

    def register_webhooks(self, connection: StoreMarketplace) -> None:
        self.ensure_valid_token(connection)
        for topic in self.NOTIFICATION_TOPICS:
            self.ebay_request(
                connection,
                "POST",
                "/commerce/notification/v1/subscription",
                {
                    "topicId": topic,
                    "status": "ENABLED",
                    "payload": {
                        "format": "JSON",
                        "deliveryMethod": "WEBHOOK",
                        "endpointUrl": self.get_webhook_url(connection),
                    },
                },
            )

    def handle_webhook(
        self, topic: str, payload: Dict[str, Any], connection: StoreMarketplace
    ) -> Optional[Any]:
        if topic == "MARKETPLACE_ACCOUNT_DELETION":
            logger.info(f"eBay account deletion received for connection {connection.id}")
            connection.status = ConnectionStatus.INACTIVE.value
            self.db.commit()
            return connection

        return super().handle_webhook(topic, payload, connection)

    # ========== Helpers ==========

    def ebay_request(
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
            headers={
                "Authorization": f"Bearer {connection.access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
                "Content-Language": "en-US",
            },
            params=params,
            json=payload,
        )

    def map_to_inventory_item(self, listing: PlatformListing) -> Dict[str, Any]:
        product = listing.product
        condition = listing.effective_setting("default_condition") or product.condition or "NEW"
        return {
            "product": {
                "title": listing.effective_title()[:80],
                "description": listing.effective_description() or "",
                "imageUrls": listing.effective_images(),
            },
            "condition": condition,
            "availability": {
                "shipToLocationAvailability": {"quantity": listing.effective_quantity()},
            },
        }

    def map_to_offer(self, listing: PlatformListing, sku: str) -> Dict[str, Any]:
        settings = listing.effective_settings()
        credentials = listing.marketplace.credentials or {}

        listing_format = settings.get("listing_type") or "FIXED_PRICE"
        marketplace_id = settings.get("marketplace_id") or "EBAY_US"

        price = listing.effective_price()
        if listing_format == "AUCTION":
            price = apply_markup(price, settings.get("auction_markup"))
        else:
            price = apply_markup(price, settings.get("fixed_price_markup"))

        def policy(key: str) -> Optional[str]:
            return settings.get(key) or credentials.get(key)

        offer: Dict[str, Any] = {
            "sku": sku,
            "marketplaceId": marketplace_id,
            "format": listing_format,
            "listingDescription": listing.effective_description() or "",
            "availableQuantity": listing.effective_quantity(),
            "pricingSummary": {
                "price": {
                    "value": f"{round(price, 2):.2f}",
                    "currency": currency_for_marketplace(marketplace_id),
                }
            },
            "listingPolicies": {
                "fulfillmentPolicyId": policy("fulfillment_policy_id"),
                "paymentPolicyId": policy("payment_policy_id"),
                "returnPolicyId": policy("return_policy_id"),
            },
            "categoryId": listing.platform_category_id
            or listing.product.category_external_id
            or "1",
            "merchantLocationKey": policy("location_key") or "default",
        }

        duration_key = "listing_duration_auction" if listing_format == "AUCTION" else "listing_duration_fixed"
        if settings.get(duration_key):
            offer["listingDuration"] = settings[duration_key]

        if settings.get("best_offer_enabled"):
            offer["bestOfferTerms"] = {"bestOfferEnabled": True}

        return offer


def map_ebay_product(item: Dict[str, Any]) -> Dict[str, Any]:
    product = item.get("product") or {}
    availability = (item.get("availability") or {}).get("shipToLocationAvailability") or {}
    return {
        "external_id": item.get("sku"),
        "title": product.get("title") or item.get("sku"),
        "description": product.get("description") or "",
        "sku": item.get("sku"),
        "quantity": availability.get("quantity", 0),
        "images": product.get("imageUrls") or [],
        "condition": item.get("condition") or "NEW",
    }


def flatten_categories(node: Dict[str, Any], result: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
    """Depth-first flattening of an eBay category tree node."""
    if result is None:
        result = []

    category = node.get("category")
    if category:
        result.append({"id": category["categoryId"], "name": category["categoryName"]})

    for child in node.get("childCategoryTreeNodes") or []:
        flatten_categories(child, result)

    return result
