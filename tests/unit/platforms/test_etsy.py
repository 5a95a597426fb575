"""
Tests for the Etsy integration.
"""

from datetime import timedelta
from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import pytest

from backoffice.db.models import utcnow
from backoffice.platforms import OAuthError
from backoffice.platforms.etsy import flatten_taxonomy, money_amount, pkce_challenge

ETSY_RECEIPT = {
    "receipt_id": 1234567890,
    "status": "Paid",
    "is_paid": True,
    "is_shipped": False,
    "name": "Ann Buyer",
    "buyer_email": "ann@example.com",
    "first_line": "1 Main St",
    "city": "Portland",
    "zip": "97201",
    "country_iso": "US",
    "grandtotal": {"amount": 21599, "divisor": 100, "currency_code": "USD"},
    "subtotal": {"amount": 19999, "divisor": 100, "currency_code": "USD"},
    "total_shipping_cost": {"amount": 1600, "divisor": 100, "currency_code": "USD"},
    "transactions": [{"transaction_id": 1, "sku": "ROPE-18"}],
    "create_timestamp": 1709305200,
}


@pytest.fixture
def etsy(manager):
    return manager.get("etsy")


@pytest.fixture
def connection(make_connection):
    return make_connection("etsy", token_expires_at=utcnow() + timedelta(hours=1))


class TestConnect:
    def test_authorize_url_uses_pkce(self, etsy, store, cache):
        url = etsy.connect(store, {})

        query = parse_qs(urlparse(url).query)
        verifier = cache.get(f"etsy_code_verifier:{store.id}")
        assert url.startswith("https://www.etsy.com/oauth/connect?")
        assert verifier
        assert cache.client.ttls[f"backoffice:etsy_code_verifier:{store.id}"] == 600
        assert query["code_challenge"] == [pkce_challenge(verifier)]
        assert query["code_challenge_method"] == ["S256"]
        assert query["client_id"] == ["etsy-keystring"]
        assert query["redirect_uri"] == ["https://backoffice.test/platforms/etsy/callback"]

    def test_callback(self, etsy, store, cache, http, make_response):
        cache.set(f"etsy_code_verifier:{store.id}", "the-verifier", ttl=600)
        http.request.side_effect = [
            make_response(200, {"access_token": "42.etsy", "refresh_token": "42.refresh", "expires_in": 3600}),
            make_response(200, {"user_id": 42}),
            make_response(200, {"count": 1, "results": [{"shop_id": 555, "shop_name": "HarborJewels"}]}),
        ]

        connection = etsy.handle_callback(store, {"code": "auth-code"})

        assert connection.name == "HarborJewels"
        assert connection.external_store_id == "555"
        assert connection.credentials == {"shop_id": 555, "user_id": 42}
        assert connection.refresh_token == "42.refresh"

        token_call = http.request.call_args_list[0]
        assert token_call.args == ("POST", "https://api.etsy.com/v3/public/oauth/token")
        assert token_call.kwargs["data"]["code_verifier"] == "the-verifier"
        assert http.request.call_args_list[2].args[1] == "https://openapi.etsy.com/v3/application/users/42/shops"

        # The verifier is single use
        assert cache.get(f"etsy_code_verifier:{store.id}") is None

    def test_shop_endpoint_returning_shop_object(self, etsy, store, cache, http, make_response):
        cache.set(f"etsy_code_verifier:{store.id}", "v")
        http.request.side_effect = [
            make_response(200, {"access_token": "t"}),
            make_response(200, {"user_id": 42}),
            make_response(200, {"shop_id": 777, "shop_name": "Solo"}),
        ]

        assert etsy.handle_callback(store, {"code": "c"}).external_store_id == "777"

    def test_callback_without_verifier(self, etsy, store, http):
        with pytest.raises(OAuthError, match="Code verifier not found"):
            etsy.handle_callback(store, {"code": "auth-code"})

        http.request.assert_not_called()

    def test_callback_without_shop(self, etsy, store, cache, http, make_response):
        cache.set(f"etsy_code_verifier:{store.id}", "v")
        http.request.side_effect = [
            make_response(200, {"access_token": "t"}),
            make_response(200, {"user_id": 42}),
            make_response(200, {"count": 0, "results": []}),
        ]

        with pytest.raises(OAuthError, match="No Etsy shop found"):
            etsy.handle_callback(store, {"code": "c"})

    def test_refresh_keeps_refresh_token_when_not_rotated(self, etsy, connection, http, make_response):
        http.request.return_value = make_response(200, {"access_token": "new", "expires_in": 3600})

        etsy.refresh_token(connection)

        assert connection.access_token == "new"
        assert connection.refresh_token == "etsy-refresh-token"


class TestCatalog:
    def test_push_product_creates_draft(self, etsy, product, connection, http, make_response):
        connection.settings = {"price_markup": 20, "who_made": "someone_else"}
        http.request.return_value = make_response(
            201, {"listing_id": 1500000001, "state": "draft", "url": "https://www.etsy.com/listing/1500000001"}
        )

        listing = etsy.push_product(product, connection)

        assert listing.external_listing_id == "1500000001"
        assert listing.status == "pending"
        assert listing.listing_url == "https://www.etsy.com/listing/1500000001"

        args, kwargs = http.request.call_args
        assert args == ("POST", "https://openapi.etsy.com/v3/application/shops/555/listings")
        assert kwargs["headers"]["x-api-key"] == "etsy-keystring"
        payload = kwargs["json"]
        assert payload["price"] == {"amount": 23999, "divisor": 100, "currency_code": "USD"}
        assert payload["quantity"] == 5
        assert payload["who_made"] == "someone_else"
        assert payload["when_made"] == "made_to_order"
        assert payload["tags"] == ["gold", "chain"]

    def test_push_existing_active_listing(self, etsy, product, connection, make_listing, http, make_response):
        make_listing(product, connection, external_listing_id="1500000001")
        http.request.return_value = make_response(200, {"listing_id": 1500000001, "state": "active"})

        listing = etsy.push_product(product, connection)

        assert http.request.call_args.args[0] == "PATCH"
        assert listing.status == "listed"
        assert listing.listing_url == "https://www.etsy.com/listing/1500000001"

    def test_unlist_and_relist(self, etsy, product, connection, make_listing, http, make_response):
        listing = make_listing(product, connection)
        http.request.return_value = make_response(200, {"listing_id": 1001})

        etsy.unlist_listing(listing)
        assert http.request.call_args.kwargs["json"] == {"state": "inactive"}
        assert listing.status == "ended"

        etsy.relist_listing(listing)
        assert http.request.call_args.kwargs["json"] == {"state": "active"}
        assert listing.status == "listed"

    def test_missing_shop_id(self, etsy, make_connection):
        connection = make_connection("etsy", credentials={}, external_store_id=None)

        with pytest.raises(OAuthError, match="has no Etsy shop id"):
            etsy.shop_id(connection)


class TestInventoryAndOrders:
    def test_inventory_offering(self, etsy, product, connection, make_listing, http, make_response):
        make_listing(product, connection)
        http.request.return_value = make_response(200, {"products": []})

        counts = etsy.sync_inventory(connection)

        assert counts["updated"] == 1
        args, kwargs = http.request.call_args
        assert args == ("PUT", "https://openapi.etsy.com/v3/application/listings/1001/inventory")
        assert kwargs["json"]["products"][0]["offerings"] == [
            {"price": 199.99, "quantity": 5, "is_enabled": True}
        ]

    def test_expired_token_is_refreshed_before_sync(self, etsy, product, make_connection, make_listing, http, make_response):
        connection = make_connection("etsy", token_expires_at=utcnow() - timedelta(minutes=1))
        make_listing(product, connection)
        http.request.side_effect = [
            make_response(200, {"access_token": "fresh", "expires_in": 3600}),
            make_response(200, {}),
        ]

        etsy.sync_inventory(connection)

        assert http.request.call_args.kwargs["headers"]["Authorization"] == "Bearer fresh"

    def test_pull_orders(self, etsy, connection, http, make_response):
        http.request.return_value = make_response(200, {"count": 1, "results": [ETSY_RECEIPT]})

        orders = etsy.pull_orders(connection, since="2024-03-01T15:00:00Z")

        order = orders[0]
        assert order.external_order_id == "1234567890"
        assert order.payment_status == "paid"
        assert order.fulfillment_status == "pending"
        assert order.total == Decimal("215.99")
        assert order.shipping_cost == Decimal("16.00")
        assert order.shipping_address["city"] == "Portland"
        assert http.request.call_args.kwargs["params"] == {"limit": 100, "offset": 0, "min_created": 1709305200}

    def test_pull_orders_pages_by_offset(self, etsy, connection, http, make_response):
        http.request.side_effect = [
            make_response(200, {"count": 101, "results": [ETSY_RECEIPT]}),
            make_response(200, {"count": 101, "results": [dict(ETSY_RECEIPT, receipt_id=1234567891)]}),
        ]

        orders = etsy.pull_orders(connection)

        assert [o.external_order_id for o in orders] == ["1234567890", "1234567891"]
        assert [c.kwargs["params"] for c in http.request.call_args_list] == [
            {"limit": 100, "offset": 0},
            {"limit": 100, "offset": 100},
        ]

    def test_fulfillment_posts_tracking(self, etsy, connection, http, make_response):
        order = etsy.import_order(ETSY_RECEIPT, connection)
        http.request.return_value = make_response(200, {})

        etsy.update_order_fulfillment(order, {"tracking_number": "9400", "carrier": "usps"})

        args, kwargs = http.request.call_args
        assert args[1].endswith("/shops/555/receipts/1234567890/tracking")
        assert kwargs["json"] == {"tracking_code": "9400", "carrier_name": "usps", "send_bcc": False}
        assert order.fulfillment_status == "shipped"


class TestHelpers:
    def test_money_amount(self):
        assert money_amount({"amount": 1999, "divisor": 100}) == Decimal("19.99")
        assert money_amount(None) == Decimal("0")

    def test_flatten_taxonomy(self):
        nodes = [
            {
                "id": 68887482,
                "name": "Jewelry",
                "full_path_taxonomy_ids": [68887482],
                "children": [{"id": 68887494, "name": "Necklaces", "full_path_taxonomy_ids": [68887482, 68887494]}],
            }
        ]

        assert [node["name"] for node in flatten_taxonomy(nodes)] == ["Jewelry", "Necklaces"]

    def test_pkce_challenge_is_unpadded_base64url(self):
        # RFC 7636 appendix B
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

        assert pkce_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
