"""
Amazon Integration
Selling Partner API: Login with Amazon tokens, Listings Items, Orders and Notifications.
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

REGION_ENDPOINTS = {
    "na": "https://sellingpartnerapi-na.amazon.com",
    "eu": "https://sellingpartnerapi-eu.amazon.com",
    "fe": "https://sellingpartnerapi-fe.amazon.com",
}

# Default marketplace per region: US, DE, JP
REGION_MARKETPLACES = {
    "na": "ATVPDKIKX0DER",
    "eu": "A1PA6795UKMFR9",
    "fe": "A1VC38T7YXB528",
}

SHIPPED_STATUSES = ("Shipped", "PartiallyShipped")


class AmazonService(BasePlatformService):
    """Amazon seller integration. Access tokens last an hour and are refreshed with the LWA refresh token."""

    platform = Platform.AMAZON.value

    required_settings = {
        "AMAZON_APP_ID": "amazon_app_id",
        "AMAZON_CLIENT_ID": "amazon_client_id",
        "AMAZON_CLIENT_SECRET": "amazon_client_secret",
    }

    AUTHORIZE_URL = "https://sellercentral.amazon.com/apps/authorize/consent"
    TOKEN_URL = "https://api.amazon.com/auth/o2/token"
    LISTINGS_VERSION = "2021-08-01"
    DESTINATION_NAME = "backoffice-notifications"

    NOTIFICATION_TYPES = ["ORDER_CHANGE", "LISTINGS_ITEM_STATUS_CHANGE"]

    PAGE_SIZE = 20
    ORDER_LOOKBACK_DAYS = 30
    DEFAULT_TOKEN_LIFETIME = 3600

    # ========== Connection lifecycle ==========

    def connect(self, store: Store, params: Dict[str, Any]) -> str:
        self.ensure_configured()

        region = (params.get("region") or "na").lower()
        if region not in REGION_ENDPOINTS:
            raise InvalidRequestError(
                f"Unknown Amazon region: {region}", details={"regions": list(REGION_ENDPOINTS)}
            )

        query = urlencode(
            {
                "application_id": self.services.amazon_app_id,
                "state": self.encrypt_state({"store_id": store.id, "region": region}),
                "redirect_uri": self.callback_url(),
            }
        )
        return f"{self.AUTHORIZE_URL}?{query}"

    def handle_callback(self, store: Store, params: Dict[str, Any]) -> StoreMarketplace:
        """
        Exchange the Seller Central consent code for tokens.

        Args:
            store: Store the connection belongs to
            params: Callback query (``spapi_oauth_code``, ``selling_partner_id``, ``state``)

        Returns:
            The created or updated connection, keyed on the selling partner id
        """
        self.ensure_configured()

        code = params.get("spapi_oauth_code")
        if not code:
            raise OAuthError(self.platform, "Authorization code missing from callback")
        seller_id = params.get("selling_partner_id")
        if not seller_id:
            raise OAuthError(self.platform, "Selling partner id missing from callback")

        state = self.decrypt_state(params.get("state"))
        region = state.get("region") or "na"

        try:
            data = self.token_request({"grant_type": "authorization_code", "code": code})
        except PlatformAPIError as e:
            raise OAuthError(self.platform, f"Failed to obtain access token: {e.body}") from e

        connection = StoreMarketplace.upsert(
            self.db,
            keys={"store_id": store.id, "platform": self.platform, "external_store_id": seller_id},
            values={
                "name": f"Amazon ({seller_id})",
                "access_token": data["access_token"],
                "refresh_token": data.get("refresh_token"),
                "token_expires_at": utcnow()
                + timedelta(seconds=data.get("expires_in") or self.DEFAULT_TOKEN_LIFETIME),
                "credentials": {
                    "selling_partner_id": seller_id,
                    "region": region,
                    "marketplace_ids": [REGION_MARKETPLACES[region]],
                },
                "status": ConnectionStatus.ACTIVE.value,
                "connected_successfully": True,
                "last_error": None,
            },
        )
        self.db.commit()

        logger.info(f"Connected Amazon seller {seller_id} ({region}) for store {store.id}")
        return connection

    def refresh_token(self, connection: StoreMarketplace) -> StoreMarketplace:
        self.ensure_configured()

        if not connection.refresh_token:
            raise OAuthError(self.platform, "No refresh token available")

        try:
            data = self.token_request(
                {"grant_type": "refresh_token", "refresh_token": connection.refresh_token}
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
            response = self.amazon_request(connection, "GET", "/sellers/v1/marketplaceParticipations")
        except (PlatformAPIError, OAuthError) as e:
            logger.warning(f"Amazon credential check failed for connection {connection.id}: {e}")
            return False
        return "payload" in response

    def token_request(self, form: Dict[str, Any]) -> Dict[str, Any]:
        return self.request(
            "POST",
            self.TOKEN_URL,
            data={
                **form,
                "client_id": self.services.amazon_client_id,
                "client_secret": self.services.amazon_client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    # ========== Catalog ==========

    def pull_products(self, connection: StoreMarketplace) -> List[Dict[str, Any]]:
        def produce() -> Iterator[Dict[str, Any]]:
            self.ensure_valid_token(connection)
            params: Dict[str, Any] = {
                "marketplaceIds": self.marketplace_id(connection),
                "pageSize": self.PAGE_SIZE,
                "includedData": "summaries,offers,fulfillmentAvailability",
            }
            while True:
                response = self.amazon_request(
                    connection, "GET", self.listings_path(connection), params=dict(params)
                )
                for item in response.get("items", []):
                    yield map_amazon_product(item)

                next_token = (response.get("pagination") or {}).get("nextToken")
                if not next_token:
                    break
                params["pageToken"] = next_token

        return self.collect_pull(connection, "products", produce)

    def push_product(self, product: Product, connection: StoreMarketplace) -> PlatformListing:
        """
        Create or replace the listing item for the product's SKU.

        Amazon validates submissions asynchronously; an ``INVALID`` response
        is raised as a :class:`PlatformAPIError` carrying the listed issues.
        """
        self.ensure_valid_token(connection)
        listing = self.upsert_listing(product, connection)
        sku = listing.external_listing_id or self.listing_sku(listing)

        body = self.map_to_listing_item(listing)
        response = self.amazon_request(
            connection,
            "PUT",
            self.listings_path(connection, sku),
            body,
            params={"marketplaceIds": self.marketplace_id(connection)},
        )
        self.raise_for_issues(response)

        listing.external_listing_id = sku
        listing.platform_data = {
            "sku": sku,
            "product_type": body["productType"],
            "submission_id": response.get("submissionId"),
        }
        listing.mark_as_listed()
        self.db.commit()
        return listing

    def update_listing(self, listing: PlatformListing) -> PlatformListing:
        connection = listing.marketplace
        self.ensure_valid_token(connection)

        response = self.amazon_request(
            connection,
            "PUT",
            self.listings_path(connection, listing.external_listing_id),
            self.map_to_listing_item(listing),
            params={"marketplaceIds": self.marketplace_id(connection)},
        )
        self.raise_for_issues(response)

        listing.last_synced_at = utcnow()
        self.db.commit()
        return listing

    def delete_listing(self, listing: PlatformListing) -> None:
        connection = listing.marketplace
        self.ensure_valid_token(connection)

        self.amazon_request(
            connection,
            "DELETE",
            self.listings_path(connection, listing.external_listing_id),
            params={"marketplaceIds": self.marketplace_id(connection)},
        )
        listing.archive()
        self.db.commit()

    def unlist_listing(self, listing: PlatformListing) -> PlatformListing:
        # Zero availability takes the offer off sale without deleting the item
        self.patch_availability(listing, 0)
        listing.mark_as_ended()
        self.db.commit()
        return listing

    def relist_listing(self, listing: PlatformListing) -> PlatformListing:
        self.patch_availability(listing, listing.effective_quantity())
        listing.mark_as_listed()
        self.db.commit()
        return listing

    # ========== Inventory ==========

    def push_listing_quantity(self, listing: PlatformListing, context: Any) -> bool:
        self.patch_availability(listing, listing.effective_quantity())
        return True

    def patch_availability(self, listing: PlatformListing, quantity: int) -> None:
        connection = listing.marketplace
        self.ensure_valid_token(connection)

        response = self.amazon_request(
            connection,
            "PATCH",
            self.listings_path(connection, listing.external_listing_id),
            {
                "productType": (listing.platform_data or {}).get("product_type") or "PRODUCT",
                "patches": [
                    {
                        "op": "replace",
                        "path": "/attributes/fulfillment_availability",
                        "value": [
                            {
                                "fulfillment_channel_code": listing.effective_setting(
                                    "fulfillment_channel", "DEFAULT"
                                ),
                                "quantity": quantity,
                            }
                        ],
                    }
                ],
            },
            params={"marketplaceIds": self.marketplace_id(connection)},
        )
        self.raise_for_issues(response)

    # ========== Orders ==========

    def pull_orders(
        self, connection: StoreMarketplace, since: Optional[str] = None
    ) -> List[PlatformOrder]:
        """
        Import orders created after ``since``, following ``NextToken``.

        Args:
            connection: Amazon connection
            since: ISO-8601 ``CreatedAfter`` bound; defaults to the last 30 days

        Returns:
            The imported orders
        """

        def produce() -> Iterator[PlatformOrder]:
            self.ensure_valid_token(connection)
            marketplace_ids = ",".join(self.marketplace_ids(connection))
            created_after = since or (
                utcnow() - timedelta(days=self.ORDER_LOOKBACK_DAYS)
            ).strftime("%Y-%m-%dT%H:%M:%SZ")

            params: Dict[str, Any] = {"MarketplaceIds": marketplace_ids, "CreatedAfter": created_after}
            while True:
                response = self.amazon_request(connection, "GET", "/orders/v0/orders", params=params)
                payload = response.get("payload") or {}
                for amazon_order in payload.get("Orders", []):
                    yield self.import_order(amazon_order, connection)

                next_token = payload.get("NextToken")
                if not next_token:
                    break
                # The token encodes the original filters
                params = {"MarketplaceIds": marketplace_ids, "NextToken": next_token}

        return self.collect_pull(connection, "orders", produce)

    def fetch_order(self, connection: StoreMarketplace, order_id: str) -> PlatformOrder:
        self.ensure_valid_token(connection)
        response = self.amazon_request(connection, "GET", f"/orders/v0/orders/{order_id}")
        return self.import_order(response.get("payload") or {}, connection)

    def update_order_fulfillment(self, order: PlatformOrder, fulfillment: Dict[str, Any]) -> None:
        connection = order.marketplace
        self.ensure_valid_token(connection)

        # Order listings omit line items; they are fetched on first shipment
        if not order.line_items:
            response = self.amazon_request(
                connection, "GET", f"/orders/v0/orders/{order.external_order_id}/orderItems"
            )
            order.line_items = (response.get("payload") or {}).get("OrderItems", [])

        self.amazon_request(
            connection,
            "POST",
            f"/orders/v0/orders/{order.external_order_id}/shipmentConfirmation",
            {
                "marketplaceId": (order.platform_data or {}).get("MarketplaceId")
                or self.marketplace_id(connection),
                "packageDetail": {
                    "packageReferenceId": "1",
                    "carrierCode": fulfillment.get("carrier") or "Other",
                    "trackingNumber": fulfillment.get("tracking_number"),
                    "shipDate": utcnow().strftime("%Y-%m-%dT%H:%M:%SZ"),
                    "orderItems": [
                        {"orderItemId": item.get("OrderItemId"), "quantity": item.get("QuantityOrdered")}
                        for item in order.line_items or []
                    ],
                },
            },
        )
        order.fulfillment_status = "shipped"
        self.db.commit()

    def import_order(self, data: Dict[str, Any], connection: StoreMarketplace) -> PlatformOrder:
        order_total = data.get("OrderTotal") or {}
        buyer = data.get("BuyerInfo") or {}
        status = data.get("OrderStatus") or "Pending"

        if data.get("FulfillmentChannel") == "AFN":
            fulfillment_status = "fba"
        else:
            fulfillment_status = "shipped" if status in SHIPPED_STATUSES else status.lower()

        return PlatformOrder.upsert(
            self.db,
            connection.id,
            data["AmazonOrderId"],
            {
                "external_order_number": data["AmazonOrderId"],
                "status": status,
                "fulfillment_status": fulfillment_status,
                "payment_status": "pending" if status == "Pending" else "paid",
                "total": to_decimal(order_total.get("Amount")),
                "subtotal": to_decimal(order_total.get("Amount")),
                "shipping_cost": to_decimal(None),
                "tax": to_decimal(None),
                "discount": to_decimal(None),
                "currency": order_total.get("CurrencyCode") or "USD",
                "customer_data": {
                    "name": buyer.get("BuyerName"),
                    "email": buyer.get("BuyerEmail"),
                },
                "shipping_address": data.get("ShippingAddress"),
                "billing_address": None,
                "line_items": data.get("OrderItems") or [],
                "platform_data": data,
                "ordered_at": utc_from_timestamp(data.get("PurchaseDate")),
                "last_synced_at": utcnow(),
            },
        )

    # ========== Metadata and webhooks ==========

    def fetch_categories(self, connection: StoreMarketplace) -> List[Dict[str, Any]]:
        self.ensure_valid_token(connection)
        response = self.amazon_request(
            connection,
            "GET",
            "/definitions/2020-09-01/productTypes",
            params={"marketplaceIds": self.marketplace_id(connection)},
        )
        return [
            {"id": product_type["name"], "name": product_type.get("displayName") or product_type["name"]}
            for product_type in response.get("productTypes", [])
        ]

    def register_webhooks(self, connection: StoreMarketplace) -> None:
        if not self.services.amazon_aws_account_id:
            logger.warning("AMAZON_AWS_ACCOUNT_ID is not set; skipping Amazon notification subscriptions")
            return

        self.ensure_valid_token(connection)
        destination_id = self.notification_destination(connection)

        for notification_type in self.NOTIFICATION_TYPES:
            try:
                self.amazon_request(
                    connection,
                    "POST",
                    f"/notifications/v1/subscriptions/{notification_type}",
                    {"payloadVersion": "1.0", "destinationId": destination_id},
                )
            except PlatformAPIError as e:
                # Existing subscriptions are rejected with a conflict
                logger.info(f"Amazon subscription {notification_type} not created: {e.message}")

    def notification_destination(self, connection: StoreMarketplace) -> str:
        response = self.amazon_request(connection, "GET", "/notifications/v1/destinations")
        for destination in response.get("payload") or []:
            if destination.get("name") == self.DESTINATION_NAME:
                return destination["destinationId"]

        created = self.amazon_request(
            connection,
            "POST",
            "/notifications/v1/destinations",
            {
                "name": self.DESTINATION_NAME,
                "resourceSpecification": {
                    "eventBridge": {
                        "region": self.services.amazon_aws_region,
                        "accountId": self.services.amazon_aws_account_id,
                    }
                },
            },
        )
        return created["payload"]["destinationId"]

    def handle_webhook(
        self, topic: str, payload: Dict[str, Any], connection: StoreMarketplace
    ) -> Optional[Any]:
        notification_type = (topic or "").upper()
        notification = payload.get("Payload") or payload

        if notification_type in ("ORDER_CHANGE", "ORDER_STATUS_CHANGE"):
            change = (
                notification.get("OrderChangeNotification")
                or notification.get("OrderStatusChangeNotification")
                or notification
            )
            order_id = change.get("AmazonOrderId")
            if not order_id:
                return None
            order = self.fetch_order(connection, order_id)
            self.db.commit()
            return order

        if notification_type == "LISTINGS_ITEM_STATUS_CHANGE":
            listing = PlatformListing.find_by_external_id(self.db, connection.id, notification.get("Sku"))
            if listing is None:
                return None
            asin = notification.get("Asin")
            platform_data = dict(listing.platform_data or {})
            platform_data.update({"asin": asin, "item_status": notification.get("Status") or []})
            listing.platform_data = platform_data
            if asin:
                listing.listing_url = f"https://www.amazon.com/dp/{asin}"
            listing.last_synced_at = utcnow()
            self.db.commit()
            return listing

        return super().handle_webhook(topic, payload, connection)

    # ========== Helpers ==========

    def amazon_request(
        self,
        connection: StoreMarketplace,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        region = (connection.credentials or {}).get("region") or "na"
        return self.request(
            method,
            f"{REGION_ENDPOINTS.get(region, REGION_ENDPOINTS['na'])}{endpoint}",
            headers={
                "x-amz-access-token": connection.access_token,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            params=params,
            json=payload,
        )

    def raise_for_issues(self, response: Dict[str, Any]) -> None:
        errors = [
            issue.get("message") or issue.get("code")
            for issue in response.get("issues") or []
            if issue.get("severity") == "ERROR"
        ]
        if response.get("status") == "INVALID" or errors:
            raise PlatformAPIError(self.platform, 400, "; ".join(errors) or "Listing submission rejected")

    def listings_path(self, connection: StoreMarketplace, sku: Optional[str] = None) -> str:
        path = f"/listings/{self.LISTINGS_VERSION}/items/{connection.external_store_id}"
        return f"{path}/{sku}" if sku else path

    def marketplace_ids(self, connection: StoreMarketplace) -> List[str]:
        region = (connection.credentials or {}).get("region") or "na"
        return (connection.credentials or {}).get("marketplace_ids") or [
            REGION_MARKETPLACES.get(region, REGION_MARKETPLACES["na"])
        ]

    def marketplace_id(self, connection: StoreMarketplace) -> str:
        return self.marketplace_ids(connection)[0]

    def map_to_listing_item(self, listing: PlatformListing) -> Dict[str, Any]:
        product = listing.product
        connection = listing.marketplace
        marketplace_id = self.marketplace_id(connection)
        language_tag = listing.effective_setting("language_tag", "en_US")
        price = apply_markup(listing.effective_price(), listing.effective_setting("price_markup"))

        attributes: Dict[str, Any] = {
            "item_name": [
                {"value": listing.effective_title(), "language_tag": language_tag, "marketplace_id": marketplace_id}
            ],
            "brand": [{"value": product.brand or "Generic", "marketplace_id": marketplace_id}],
            "product_description": [
                {
                    "value": listing.effective_description() or "",
                    "language_tag": language_tag,
                    "marketplace_id": marketplace_id,
                }
            ],
            "purchasable_offer": [
                {
                    "currency": listing.effective_setting("currency", "USD"),
                    "our_price": [{"schedule": [{"value_with_tax": round(price, 2)}]}],
                    "marketplace_id": marketplace_id,
                }
            ],
            "fulfillment_availability": [
                {
                    "fulfillment_channel_code": listing.effective_setting("fulfillment_channel", "DEFAULT"),
                    "quantity": listing.effective_quantity(),
                }
            ],
        }
        if product.tags:
            attributes["bullet_point"] = [
                {"value": tag, "language_tag": language_tag, "marketplace_id": marketplace_id}
                for tag in product.tags
            ]
        images = listing.effective_images()
        if images:
            attributes["main_product_image_locator"] = [
                {"media_location": images[0], "marketplace_id": marketplace_id}
            ]

        return {
            "productType": listing.platform_category_id or product.category_external_id or "PRODUCT",
            "requirements": "LISTING",
            "attributes": attributes,
        }


def map_amazon_product(item: Dict[str, Any]) -> Dict[str, Any]:
    summary = (item.get("summaries") or [{}])[0]
    offer = (item.get("offers") or [{}])[0]
    availability = (item.get("fulfillmentAvailability") or [{}])[0]
    return {
        "external_id": item.get("sku"),
        "sku": item.get("sku"),
        "asin": summary.get("asin"),
        "title": summary.get("itemName") or item.get("sku"),
        "price": (offer.get("price") or {}).get("amount"),
        "quantity": availability.get("quantity") or 0,
        "condition": summary.get("conditionType"),
        "status": summary.get("status") or [],
    }
