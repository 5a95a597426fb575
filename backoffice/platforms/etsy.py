"""
Etsy Integration
OAuth2 with PKCE and the Etsy Open API v3.
"""

import base64
import hashlib
import logging
import secrets
from datetime import timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urlencode

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
from .base import BasePlatformService, apply_markup, utc_from_timestamp
from .exceptions import OAuthError, PlatformAPIError

logger = logging.getLogger(__name__)

CODE_VERIFIER_TTL = 600  # 10 minutes


def pkce_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def money_amount(money: Optional[Dict[str, Any]]):
    """Convert an Etsy ``{amount, divisor}`` money object to Decimal."""
    if not money:
        return to_decimal(0)
    divisor = money.get("divisor") or 100
    return to_decimal(money.get("amount") or 0) / divisor


class EtsyService(BasePlatformService):
    """Etsy shop integration. Etsy has no webhook subscriptions, so orders are polled."""

    platform = Platform.ETSY.value

    required_settings = {"ETSY_KEYSTRING": "etsy_keystring"}

    API_BASE_URL = "https://openapi.etsy.com/v3"
    AUTH_URL = "https://www.etsy.com/oauth/connect"
    TOKEN_URL = "https://api.etsy.com/v3/public/oauth/token"

    REQUIRED_SCOPES = [
        "listings_r",
        "listings_w",
        "transactions_r",
        "transactions_w",
        "shops_r",
        "shops_w",
    ]

    PAGE_SIZE = 100
    DEFAULT_TOKEN_LIFETIME = 3600

    @property
    def redirect_uri(self) -> str:
        return self.services.etsy_redirect_uri or self.callback_url()

    def verifier_key(self, store_id: int) -> str:
        return f"etsy_code_verifier:{store_id}"

    # ========== Connection lifecycle ==========

    def connect(self, store: Store, params: Dict[str, Any]) -> str:
        """Build the PKCE authorize URL; the verifier is cached until the callback pulls it."""
        self.ensure_configured()

        code_verifier = secrets.token_urlsafe(48)
        if not self.cache.set(self.verifier_key(store.id), code_verifier, ttl=CODE_VERIFIER_TTL):
            logger.warning(f"Could not store Etsy PKCE verifier for store {store.id}")

        query = urlencode(
            {
                "response_type": "code",
                "client_id": self.services.etsy_keystring,
                "redirect_uri": self.redirect_uri,
                "scope": " ".join(self.REQUIRED_SCOPES),
                "state": self.encrypt_state({"store_id": store.id}),
                "code_challenge": pkce_challenge(code_verifier),
                "code_challenge_method": "S256",
            }
        )
        return f"{self.AUTH_URL}?{query}"

    def handle_callback(self, store: Store, params: Dict[str, Any]) -> StoreMarketplace:
        self.ensure_configured()

        code = params.get("code")
        if not code:
            raise OAuthError(self.platform, "Authorization code missing from callback")

        code_verifier = self.cache.pull(self.verifier_key(store.id))
        if not code_verifier:
            raise OAuthError(self.platform, "Code verifier not found. Please try connecting again.")

        try:
            data = self.request(
                "POST",
                self.TOKEN_URL,
                data={
                    "grant_type": "authorization_code",
                    "client_id": self.services.etsy_keystring,
                    "redirect_uri": self.redirect_uri,
                    "code": code,
                    "code_verifier": code_verifier,
                },
            )
        except PlatformAPIError as e:
            raise OAuthError(self.platform, f"Failed to obtain access token: {e.body}") from e

        shop = self.fetch_shop_info(data["access_token"])
        if not shop.get("shop_id"):
            raise OAuthError(self.platform, "No Etsy shop found for this account")

        shop_id = str(shop["shop_id"])
        connection = StoreMarketplace.upsert(
            self.db,
            keys={"store_id": store.id, "platform": self.platform, "external_store_id": shop_id},
            values={
                "name": shop.get("shop_name") or "Etsy Shop",
                "access_token": data["access_token"],
                "refresh_token": data.get("refresh_token"),
                "token_expires_at": utcnow()
                + timedelta(seconds=data.get("expires_in") or self.DEFAULT_TOKEN_LIFETIME),
                "credentials": {"shop_id": shop["shop_id"], "user_id": shop["user_id"]},
                "status": ConnectionStatus.ACTIVE.value,
                "connected_successfully": True,
                "last_error": None,
            },
        )
        self.db.commit()

        logger.info(f"Connected Etsy shop {shop_id} for store {store.id}")
        return connection

    def refresh_token(self, connection: StoreMarketplace) -> StoreMarketplace:
        if not connection.refresh_token:
            raise OAuthError(self.platform, "No refresh token available")

        try:
            data = self.request(
                "POST",
                self.TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "client_id": self.services.etsy_keystring,
                    "refresh_token": connection.refresh_token,
                },
            )
        except PlatformAPIError as e:
            connection.mark_error(f"Failed to refresh token: {e.body[:200]}")
            self.db.commit()
            raise OAuthError(self.platform, f"Failed to refresh token: {e.body}") from e

        connection.access_token = data["access_token"]
        connection.refresh_token = data.get("refresh_token") or connection.refresh_token
        connection.token_expires_at = utcnow() + timedelta(
            seconds=data.get("expires_in") or self.DEFAULT_TOKEN_LIFETIME
        )
        self.db.commit()
        return connection

    def validate_credentials(self, connection: StoreMarketplace) -> bool:
        try:
            self.ensure_valid_token(connection)
            response = self.etsy_request(connection, "GET", f"/application/shops/{self.shop_id(connection)}")
        except (PlatformAPIError, OAuthError) as e:
            logger.warning(f"Etsy credential check failed for connection {connection.id}: {e}")
            return False
        return "shop_id" in response

    def fetch_shop_info(self, access_token: str) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "x-api-key": self.services.etsy_keystring or "",
        }
        user = self.request("GET", f"{self.API_BASE_URL}/application/users/me", headers=headers)
        user_id = user["user_id"]

        shops = self.request(
            "GET", f"{self.API_BASE_URL}/application/users/{user_id}/shops", headers=headers
        )
        # The endpoint returns either the shop itself or a result list
        shop = (shops.get("results") or [shops])[0] if shops else {}
        return {
            "user_id": user_id,
            "shop_id": shop.get("shop_id"),
            "shop_name": shop.get("shop_name"),
        }

    # ========== Catalog ==========

    def pull_products(self, connection: StoreMarketplace) -> List[Dict[str, Any]]:
        def produce() -> Iterator[Dict[str, Any]]:
            self.ensure_valid_token(connection)
            offset = 0
            while True:
                response = self.etsy_request(
                    connection,
                    "GET",
                    f"/application/shops/{self.shop_id(connection)}/listings/active",
                    params={"limit": self.PAGE_SIZE, "offset": offset},
                )
                for etsy_listing in response.get("results", []):
                    yield map_etsy_product(etsy_listing)

                offset += self.PAGE_SIZE
                if offset >= (response.get("count") or 0):
                    break

        return self.collect_pull(connection, "products", produce)

    def push_product(self, product: Product, connection: StoreMarketplace) -> PlatformListing:
        self.ensure_valid_token(connection)
        listing = self.upsert_listing(product, connection)
        payload = self.map_to_etsy_listing(listing)
        shop_id = self.shop_id(connection)

        if listing.external_listing_id:
            response = self.etsy_request(
                connection,
                "PATCH",
                f"/application/shops/{shop_id}/listings/{listing.external_listing_id}",
                payload,
            )
        else:
            response = self.etsy_request(connection, "POST", f"/application/shops/{shop_id}/listings", payload)

        listing_id = response["listing_id"]
        listing.external_listing_id = str(listing_id)
        listing.listing_url = response.get("url") or f"https://www.etsy.com/listing/{listing_id}"
        listing.platform_data = response
        listing.last_synced_at = utcnow()

        # New Etsy listings start as drafts until activated
        if response.get("state") == "active":
            listing.mark_as_listed()
        else:
            listing.status = ListingStatus.PENDING.value

        self.db.commit()
        return listing

    def update_listing(self, listing: PlatformListing) -> PlatformListing:
        connection = listing.marketplace
        self.ensure_valid_token(connection)

        response = self.etsy_request(
            connection,
            "PATCH",
            f"/application/shops/{self.shop_id(connection)}/listings/{listing.external_listing_id}",
            self.map_to_etsy_listing(listing),
        )
        listing.platform_data = response
        listing.last_synced_at = utcnow()
        self.db.commit()
        return listing

    def delete_listing(self, listing: PlatformListing) -> None:
        connection = listing.marketplace
        self.ensure_valid_token(connection)
        self.etsy_request(connection, "DELETE", f"/application/listings/{listing.external_listing_id}")
        listing.archive()
        self.db.commit()

    def unlist_listing(self, listing: PlatformListing) -> PlatformListing:
        self.set_listing_state(listing, "inactive")
        listing.mark_as_ended()
        self.db.commit()
        return listing

    def relist_listing(self, listing: PlatformListing) -> PlatformListing:
        self.set_listing_state(listing, "active")
        listing.mark_as_listed()
        self.db.commit()
        return listing

    def set_listing_state(self, listing: PlatformListing, state: str) -> None:
        connection = listing.marketplace
        self.ensure_valid_token(connection)
        self.etsy_request(
            connection,
            "PATCH",
            f"/application/shops/{self.shop_id(connection)}/listings/{listing.external_listing_id}",
            {"state": state},
        )

    # ========== Inventory ==========

    def push_listing_quantity(self, listing: PlatformListing, context: Any) -> bool:
        settings = listing.effective_settings()
        price = apply_markup(listing.effective_price(), settings.get("price_markup"))

        self.etsy_request(
            listing.marketplace,
            "PUT",
            f"/application/listings/{listing.external_listing_id}/inventory",
            {
                "products": [
                    {
                        "offerings": [
                            {
                                "price": round(price, 2),
                                "quantity": listing.effective_quantity(),
                                "is_enabled": True,
                            }
                        ]
                    }
                ]
            },
        )
        return True

    # ========== Orders ==========

    def pull_orders(
        self, connection: StoreMarketplace, since: Optional[str] = None
    ) -> List[PlatformOrder]:
        """Import shop receipts as orders, paging by ``offset`` until ``count``."""

        def produce() -> Iterator[PlatformOrder]:
            self.ensure_valid_token(connection)
            params: Dict[str, Any] = {"limit": self.PAGE_SIZE, "offset": 0}
            if since:
                since_at = utc_from_timestamp(since)
                if since_at is not None:
                    params["min_created"] = int(since_at.replace(tzinfo=timezone.utc).timestamp())

            while True:
                response = self.etsy_request(
                    connection,
                    "GET",
                    f"/application/shops/{self.shop_id(connection)}/receipts",
                    params=dict(params),
                )
                for receipt in response.get("results", []):
                    yield self.import_order(receipt, connection)

                params["offset"] += self.PAGE_SIZE
                if params["offset"] >= (response.get("count") or 0):
                    break

        return self.collect_pull(connection, "orders", produce)

    def update_order_fulfillment(self, order: PlatformOrder, fulfillment: Dict[str, Any]) -> None:
        connection = order.marketplace
        self.ensure_valid_token(connection)

        self.etsy_request(
            connection,
            "POST",
            f"/application/shops/{self.shop_id(connection)}/receipts/{order.external_order_id}/tracking",
            {
                "tracking_code": fulfillment.get("tracking_number") or "",
                "carrier_name": fulfillment.get("carrier") or "other",
                "send_bcc": False,
            },
        )
        order.fulfillment_status = "shipped"
        self.db.commit()

    def import_order(self, receipt: Dict[str, Any], connection: StoreMarketplace) -> PlatformOrder:
        grand_total = receipt.get("grandtotal") or {}
        return PlatformOrder.upsert(
            self.db,
            connection.id,
            receipt["receipt_id"],
            {
                "external_order_number": str(receipt["receipt_id"]),
                "status": receipt.get("status"),
                "fulfillment_status": "shipped" if receipt.get("is_shipped") else "pending",
                "payment_status": "paid" if receipt.get("is_paid") else "pending",
                "total": money_amount(grand_total),
                "subtotal": money_amount(receipt.get("subtotal")),
                "shipping_cost": money_amount(receipt.get("total_shipping_cost")),
                "tax": money_amount(receipt.get("total_tax_cost")),
                "discount": money_amount(receipt.get("discount_amt")),
                "currency": grand_total.get("currency_code") or "USD",
                "customer_data": {
                    "name": receipt.get("name"),
                    "email": receipt.get("buyer_email"),
                },
                "shipping_address": {
                    "name": receipt.get("name") or "",
                    "address1": receipt.get("first_line") or "",
                    "address2": receipt.get("second_line") or "",
                    "city": receipt.get("city") or "",
                    "state": receipt.get("state") or "",
                    "zip": receipt.get("zip") or "",
                    "country": receipt.get("country_iso") or "",
                },
                "billing_address": None,
                "line_items": receipt.get("transactions") or [],
                "platform_data": receipt,
                "ordered_at": utc_from_timestamp(receipt.get("create_timestamp")),
                "last_synced_at": utcnow(),
            },
        )

    # ========== Metadata ==========

    def fetch_categories(self, connection: StoreMarketplace) -> List[Dict[str, Any]]:
        self.ensure_valid_token(connection)
        response = self.etsy_request(connection, "GET", "/application/seller-taxonomy/nodes")
        return flatten_taxonomy(response.get("results") or [])

    # ========== Helpers ==========

    def shop_id(self, connection: StoreMarketplace) -> Any:
        shop_id = (connection.credentials or {}).get("shop_id") or connection.external_store_id
        if not shop_id:
            raise OAuthError(self.platform, f"Connection {connection.id} has no Etsy shop id")
        return shop_id

    def etsy_request(
        self,
        connection: StoreMarketplace,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return self.request(
            method,
            f"{self.API_BASE_URL}{endpoint}",
            headers={
                "Authorization": f"Bearer {connection.access_token}",
                "x-api-key": self.services.etsy_keystring or "",
                "Content-Type": "application/json",
            },
            params=params,
            json=payload,
        )

    def map_to_etsy_listing(self, listing: PlatformListing) -> Dict[str, Any]:
        product = listing.product
        settings = listing.effective_settings()
        price = apply_markup(listing.effective_price(), settings.get("price_markup"))

        payload: Dict[str, Any] = {
            "title": listing.effective_title()[:140],
            "description": listing.effective_description() or "",
            "price": {
                "amount": int(round(price * 100)),
                "divisor": 100,
                "currency_code": settings.get("currency") or "USD",
            },
            "quantity": listing.effective_quantity(),
            "who_made": settings.get("who_made") or "i_did",
            "when_made": settings.get("when_made") or "made_to_order",
            "taxonomy_id": int(listing.platform_category_id or product.category_external_id or 1),
            "is_supply": bool(settings.get("is_supply", False)),
            "tags": list(product.tags or [])[:13],
            "materials": [],
        }

        if settings.get("shipping_profile_id"):
            payload["shipping_profile_id"] = int(settings["shipping_profile_id"])
        if settings.get("return_policy_id"):
            payload["return_policy_id"] = int(settings["return_policy_id"])

        return payload


def map_etsy_product(etsy_listing: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "external_id": etsy_listing.get("listing_id"),
        "title": etsy_listing.get("title"),
        "description": etsy_listing.get("description"),
        "price": float(money_amount(etsy_listing.get("price"))),
        "quantity": etsy_listing.get("quantity"),
        "tags": etsy_listing.get("tags") or [],
        "materials": etsy_listing.get("materials") or [],
        "category_id": etsy_listing.get("taxonomy_id"),
    }


def flatten_taxonomy(nodes: List[Dict[str, Any]], result: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
    if result is None:
        result = []

    for node in nodes:
        result.append(
            {
                "id": node["id"],
                "name": node["name"],
                "full_path": node.get("full_path_taxonomy_ids") or [],
            }
        )
        if node.get("children"):
            flatten_taxonomy(node["children"], result)

    return result
