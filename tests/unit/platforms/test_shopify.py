"""
Tests for the Shopify integration.
"""

import base64
import hashlib
import hmac
from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import pytest

from backoffice.api.errors import InvalidRequestError
from backoffice.db.models import PlatformOrder, StoreMarketplace
from backoffice.platforms import OAuthError
from backoffice.platforms.shopify import next_page_info, normalize_shop_domain

SHOPIFY_ORDER = {
    "id": 450789469,
    "order_number": 1001,
    "financial_status": "paid",
    "fulfillment_status": None,
    "total_price": "219.99",
    "subtotal_price": "199.99",
    "total_tax": "12.00",
    "currency": "USD",
    "shipping_lines": [{"price": "5.00"}, {"price": "3.00"}],
    "discount_codes": [{"code": "WELCOME", "amount": "10.00"}],
    "customer": {"id": 207119551, "email": "bob@example.com"},
    "line_items": [{"sku": "ROPE-18", "quantity": 1}],
    "created_at": "2024-03-01T10:00:00-05:00",
}


@pytest.fixture
def shopify(manager):
    return manager.get("shopify")


@pytest.fixture
def connection(make_connection):
    return make_connection("shopify")


class TestConnect:
    def test_authorize_url(self, shopify, store):
        url = shopify.connect(store, {"shop": "harbor"})

        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        assert parsed.netloc == "harbor.myshopify.com"
        assert parsed.path == "/admin/oauth/authorize"
        assert query["client_id"] == ["shopify-client"]
        assert query["redirect_uri"] == ["https://backoffice.test/platforms/shopify/callback"]
        assert "write_inventory" in query["scope"][0].split(",")
        assert shopify.decrypt_state(query["state"][0]) == {
            "store_id": store.id,
            "shop_domain": "harbor.myshopify.com",
        }

    def test_shop_domain_required(self, shopify, store):
        with pytest.raises(InvalidRequestError):
            shopify.connect(store, {})

    def test_callback_creates_connection(self, shopify, store, http, make_response, db_session):
        http.request.return_value = make_response(
            200, {"access_token": "shpat_123", "scope": "read_products,write_products"}
        )
        state = shopify.encrypt_state({"store_id": store.id, "shop_domain": "harbor.myshopify.com"})

        connection = shopify.handle_callback(store, {"code": "auth-code", "state": state})

        assert connection.id is not None
        assert connection.platform == "shopify"
        assert connection.shop_domain == "harbor.myshopify.com"
        assert connection.name == "harbor.myshopify.com"
        assert connection.access_token == "shpat_123"
        assert connection.token_expires_at is None
        assert connection.status == "active"

        args, kwargs = http.request.call_args
        assert args == ("POST", "https://harbor.myshopify.com/admin/oauth/access_token")
        assert kwargs["json"] == {
            "client_id": "shopify-client",
            "client_secret": "shopify-secret",
            "code": "auth-code",
        }

    def test_reconnecting_updates_existing_connection(self, shopify, store, connection, http, make_response):
        http.request.return_value = make_response(200, {"access_token": "shpat_new"})
        state = shopify.encrypt_state({"store_id": store.id, "shop_domain": "harbor.myshopify.com"})

        reconnected = shopify.handle_callback(store, {"code": "c", "state": state})

        assert reconnected.id == connection.id
        assert reconnected.access_token == "shpat_new"

    def test_callback_requires_code(self, shopify, store):
        with pytest.raises(OAuthError, match="Authorization code missing"):
            shopify.handle_callback(store, {"state": "x"})

    def test_token_exchange_failure(self, shopify, store, http, make_response, db_session):
        http.request.return_value = make_response(400, {"error": "invalid_request"})
        state = shopify.encrypt_state({"store_id": store.id, "shop_domain": "harbor.myshopify.com"})

        with pytest.raises(OAuthError, match="Failed to obtain access token"):
            shopify.handle_callback(store, {"code": "c", "state": state})

        assert db_session.query(StoreMarketplace).count() == 0

    def test_validate_credentials(self, shopify, connection, http, make_response):
        http.request.return_value = make_response(200, {"shop": {"id": 1}})
        assert shopify.validate_credentials(connection)

        http.request.return_value = make_response(401, {"errors": "Invalid API key"})
        assert not shopify.validate_credentials(connection)


class TestCatalog:
    def test_pull_products_follows_link_header(self, shopify, connection, http, make_response):
        http.request.side_effect = [
            make_response(
                200,
                {"products": [{"id": 1, "title": "Ring", "variants": [{"id": 11, "sku": "R-1"}]}]},
                headers={
                    "Link": '<https://harbor.myshopify.com/admin/api/2024-01/products.json'
                    '?limit=250&page_info=abc123>; rel="next"'
                },
            ),
            make_response(200, {"products": [{"id": 2, "title": "Chain"}]}),
        ]

        products = shopify.pull_products(connection)

        assert [p["external_id"] for p in products] == [1, 2]
        assert products[0]["variants"][0]["sku"] == "R-1"
        second_params = http.request.call_args_list[1].kwargs["params"]
        assert second_params == {"limit": 250, "page_info": "abc123"}
        assert connection.last_sync_at is not None
        assert connection.last_order_sync_at is None

    def test_push_product_creates_listing(self, shopify, product, connection, http, make_response):
        http.request.return_value = make_response(
            201,
            {
                "product": {
                    "id": 632910392,
                    "handle": "gold-rope-chain",
                    "status": "active",
                    "variants": [{"id": 808950810, "sku": "ROPE-18", "inventory_item_id": 39072856}],
                }
            },
        )

        listing = shopify.push_product(product, connection)

        assert listing.external_listing_id == "632910392"
        assert listing.status == "listed"
        assert listing.published_at is not None
        assert listing.listing_url == "https://harbor.myshopify.com/products/gold-rope-chain"
        assert listing.listing_variants[0].external_variant_id == "808950810"
        assert listing.listing_variants[0].external_inventory_item_id == "39072856"

        args, kwargs = http.request.call_args
        assert args == ("POST", "https://harbor.myshopify.com/admin/api/2024-01/products.json")
        assert kwargs["headers"]["X-Shopify-Access-Token"] == "shopify-access-token"
        sent = kwargs["json"]["product"]
        assert sent["title"] == "14K Gold Rope Chain"
        assert sent["tags"] == "gold, chain"
        assert sent["status"] == "active"
        assert sent["images"] == [{"src": "https://cdn.example.com/rope-chain.jpg"}]
        assert sent["variants"] == [
            {
                "sku": "ROPE-18",
                "price": "199.99",
                "inventory_quantity": 5,
                "barcode": None,
                "inventory_management": "shopify",
                "option1": "18 inch",
            }
        ]

    def test_push_existing_listing_updates(self, shopify, product, connection, make_listing, http, make_response):
        make_listing(product, connection, external_listing_id="632910392")
        http.request.return_value = make_response(
            200, {"product": {"id": 632910392, "handle": "gold-rope-chain", "status": "draft"}}
        )

        listing = shopify.push_product(product, connection)

        args, _ = http.request.call_args
        assert args == ("PUT", "https://harbor.myshopify.com/admin/api/2024-01/products/632910392.json")
        assert listing.status == "not_listed"

    def test_unlist_sets_draft(self, shopify, product, connection, make_listing, http, make_response):
        listing = make_listing(product, connection)
        http.request.return_value = make_response(200, {"product": {"id": 1001}})

        shopify.unlist_listing(listing)

        assert http.request.call_args.kwargs["json"] == {"product": {"id": "1001", "status": "draft"}}
        assert listing.status == "ended"

    def test_delete_archives(self, shopify, product, connection, make_listing, http, make_response):
        listing = make_listing(product, connection)
        http.request.return_value = make_response(200, {})

        shopify.delete_listing(listing)

        assert http.request.call_args.args[0] == "DELETE"
        assert listing.status == "archived"


class TestInventory:
    def test_sync_sets_levels_at_first_location(
        self, shopify, product, connection, make_listing, http, make_response
    ):
        listing = make_listing(product, connection)
        listing.listing_variants[0].external_inventory_item_id = "39072856"
        http.request.side_effect = [
            make_response(200, {"locations": [{"id": 655441491}, {"id": 1}]}),
            make_response(200, {"inventory_level": {}}),
        ]

        counts = shopify.sync_inventory(connection)

        assert counts == {"updated": 1, "skipped": 0, "failed": 0}
        assert http.request.call_args.kwargs["json"] == {
            "location_id": 655441491,
            "inventory_item_id": "39072856",
            "available": 5,
        }
        assert listing.platform_quantity == 5

    def test_listing_without_inventory_item_is_skipped(
        self, shopify, product, connection, make_listing, http, make_response
    ):
        make_listing(product, connection)
        http.request.return_value = make_response(200, {"locations": [{"id": 655441491}]})

        counts = shopify.sync_inventory(connection)

        assert counts == {"updated": 0, "skipped": 1, "failed": 0}
        assert http.request.call_count == 1


class TestOrders:
    def test_pull_orders(self, shopify, connection, http, make_response):
        http.request.return_value = make_response(200, {"orders": [SHOPIFY_ORDER]})

        orders = shopify.pull_orders(connection, since="2024-03-01T00:00:00Z")

        assert len(orders) == 1
        order = orders[0]
        assert order.external_order_id == "450789469"
        assert order.external_order_number == "1001"
        assert order.status == "paid"
        assert order.payment_status == "paid"
        assert order.total == Decimal("219.99")
        assert order.shipping_cost == Decimal("8.00")
        assert order.discount == Decimal("10.00")
        assert order.ordered_at.hour == 15
        assert http.request.call_args.kwargs["params"] == {
            "limit": 250,
            "status": "any",
            "created_at_min": "2024-03-01T00:00:00Z",
        }

    def test_pull_orders_follows_link_header(self, shopify, connection, http, make_response):
        http.request.side_effect = [
            make_response(
                200,
                {"orders": [SHOPIFY_ORDER]},
                headers={
                    "Link": '<https://harbor.myshopify.com/admin/api/2024-01/orders.json'
                    '?limit=250&page_info=next42>; rel="next"'
                },
            ),
            make_response(200, {"orders": [dict(SHOPIFY_ORDER, id=450789470, order_number=1002)]}),
        ]

        orders = shopify.pull_orders(connection, since="2024-03-01T00:00:00Z")

        assert [o.external_order_id for o in orders] == ["450789469", "450789470"]
        assert http.request.call_count == 2
        assert http.request.call_args_list[1].kwargs["params"] == {"limit": 250, "page_info": "next42"}
        assert connection.sync_logs[0].summary == {"imported_count": 2}
        assert connection.last_order_sync_at == connection.sync_logs[0].started_at

    def test_import_is_idempotent(self, shopify, connection, db_session):
        shopify.import_order(SHOPIFY_ORDER, connection)
        shopify.import_order(dict(SHOPIFY_ORDER, financial_status="refunded"), connection)

        orders = db_session.query(PlatformOrder).all()
        assert len(orders) == 1
        assert orders[0].status == "refunded"

    def test_fulfillment(self, shopify, connection, http, make_response):
        order = shopify.import_order(SHOPIFY_ORDER, connection)
        http.request.return_value = make_response(201, {"fulfillment": {"id": 1}})

        shopify.update_order_fulfillment(order, {"tracking_number": "1Z999"})

        args, kwargs = http.request.call_args
        assert args[1].endswith("/orders/450789469/fulfillments.json")
        assert kwargs["json"] == {"fulfillment": {"tracking_number": "1Z999"}}
        assert order.fulfillment_status == "fulfilled"


class TestWebhooks:
    def test_order_topic_imports_order(self, shopify, connection):
        order = shopify.handle_webhook("orders/create", SHOPIFY_ORDER, connection)

        assert isinstance(order, PlatformOrder)
        assert order.external_order_id == "450789469"

    def test_refund_reimports_order(self, shopify, connection, http, make_response):
        http.request.return_value = make_response(
            200, {"order": dict(SHOPIFY_ORDER, financial_status="partially_refunded")}
        )

        order = shopify.handle_webhook("refunds/create", {"order_id": 450789469}, connection)

        assert http.request.call_args.args[1].endswith("/orders/450789469.json")
        assert order.status == "partially_refunded"

    def test_product_update_refreshes_platform_data(self, shopify, product, connection, make_listing):
        listing = make_listing(product, connection, external_listing_id="632910392")

        result = shopify.handle_webhook("products/update", {"id": 632910392, "title": "New"}, connection)

        assert result.id == listing.id
        assert listing.platform_data == {"id": 632910392, "title": "New"}

    def test_unknown_topic_is_ignored(self, shopify, connection):
        assert shopify.handle_webhook("carts/create", {}, connection) is None

    def test_verify_webhook(self, shopify):
        body = b'{"id": 1}'
        signature = base64.b64encode(hmac.new(b"shopify-secret", body, hashlib.sha256).digest()).decode()

        assert shopify.verify_webhook(body, signature)
        assert not shopify.verify_webhook(body + b" ", signature)
        assert not shopify.verify_webhook(body, None)

    def test_register_webhooks(self, shopify, connection, http, make_response):
        http.request.return_value = make_response(201, {"webhook": {}})

        shopify.register_webhooks(connection)

        topics = [c.kwargs["json"]["webhook"]["topic"] for c in http.request.call_args_list]
        assert topics == shopify.WEBHOOK_TOPICS
        address = http.request.call_args.kwargs["json"]["webhook"]["address"]
        assert address == f"https://backoffice.test/webhooks/shopify/{connection.id}"


class TestHelpers:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("harbor", "harbor.myshopify.com"),
            ("https://harbor.myshopify.com/", "harbor.myshopify.com"),
            ("  harbor.myshopify.com ", "harbor.myshopify.com"),
        ],
    )
    def test_normalize_shop_domain(self, raw, expected):
        assert normalize_shop_domain(raw) == expected

    def test_next_page_info(self):
        links = {"next": {"url": "https://x/products.json?limit=250&page_info=cursor1", "rel": "next"}}

        assert next_page_info(links) == "cursor1"
        assert next_page_info({}) is None
        assert next_page_info({"previous": {"url": "https://x?page_info=p"}}) is None
