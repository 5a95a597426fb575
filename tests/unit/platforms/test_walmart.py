"""
Tests for the Walmart Marketplace integration.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from backoffice.api.errors import InvalidRequestError
from backoffice.db.models import utcnow
from backoffice.platforms import OAuthError
from backoffice.platforms.walmart import fulfillment_status, map_walmart_product
from backoffice.security import decrypt_value

API = "https://marketplace.walmartapis.com"


def order_line(number, status="Created", product="199.99", shipping="0.00", tax="12.00"):
    return {
        "lineNumber": number,
        "item": {"sku": "ROPE-18", "productName": "14K Gold Rope Chain"},
        "orderLineQuantity": {"unitOfMeasurement": "EACH", "amount": "1"},
        "charges": {
            "charge": [
                {
                    "chargeType": "PRODUCT",
                    "chargeAmount": {"currency": "USD", "amount": product},
                    "tax": {"taxName": "Tax1", "taxAmount": {"currency": "USD", "amount": tax}},
                },
                {"chargeType": "SHIPPING", "chargeAmount": {"currency": "USD", "amount": shipping}},
            ]
        },
        "orderLineStatuses": {"orderLineStatus": [{"status": status}]},
    }


WALMART_ORDER = {
    "purchaseOrderId": "1796277083022",
    "customerOrderId": "5281956426648",
    "customerEmailId": "ann@relay.walmart.com",
    "orderDate": 1709305200000,
    "shippingInfo": {
        "phone": "5035550100",
        "postalAddress": {"name": "Ann Buyer", "address1": "1 Main St", "city": "Portland", "state": "OR", "postalCode": "97201"},
    },
    "orderLines": {"orderLine": [order_line("1", shipping="5.00")]},
}


@pytest.fixture
def walmart(manager):
    return manager.get("walmart")


@pytest.fixture
def connection(make_connection):
    return make_connection("walmart")


class TestConnect:
    def test_connect_points_to_credentials_form(self, walmart, store):
        assert walmart.connect(store, {}) == (
            f"https://backoffice.test/settings/integrations/walmart?store={store.id}"
        )

    def test_connect_with_credentials(self, walmart, store, http, make_response):
        http.request.return_value = make_response(
            200, {"access_token": "wm-token", "token_type": "Bearer", "expires_in": 900}
        )

        connection = walmart.connect_with_credentials(
            store, {"client_id": "wm-live", "client_secret": "wm-live-secret", "seller_id": "10001"}
        )

        assert connection.external_store_id == "10001"
        assert connection.name == "Walmart Marketplace"
        assert connection.access_token == "wm-token"
        assert connection.credentials["client_secret"] != "wm-live-secret"
        assert decrypt_value(connection.credentials["client_secret"]) == "wm-live-secret"

        args, kwargs = http.request.call_args
        assert args == ("POST", f"{API}/v3/token")
        assert kwargs["auth"] == ("wm-live", "wm-live-secret")
        assert kwargs["data"] == {"grant_type": "client_credentials"}
        assert kwargs["headers"]["WM_SVC.NAME"] == "Walmart Marketplace"
        assert kwargs["headers"]["WM_QOS.CORRELATION_ID"]

    def test_missing_credentials(self, walmart, store, http):
        with pytest.raises(InvalidRequestError) as exc_info:
            walmart.connect_with_credentials(store, {"client_id": "wm-live"})

        assert exc_info.value.details == {"missing": ["client_secret"]}
        http.request.assert_not_called()

    def test_rejected_credentials(self, walmart, store, http, make_response):
        http.request.return_value = make_response(401, {"error": [{"code": "UNAUTHORIZED.GMP_GATEWAY_API"}]})

        with pytest.raises(OAuthError, match="Failed to authenticate with Walmart"):
            walmart.connect_with_credentials(store, {"client_id": "wm-live", "client_secret": "bad"})

    def test_expired_token_is_reissued(self, walmart, make_connection, http, make_response):
        connection = make_connection("walmart", token_expires_at=utcnow() - timedelta(minutes=1))
        http.request.side_effect = [
            make_response(200, {"access_token": "wm-fresh", "expires_in": 900}),
            make_response(200, {"totalResults": 0, "results": {"feed": []}}),
        ]

        assert walmart.validate_credentials(connection)

        token_call, feeds_call = http.request.call_args_list
        assert token_call.kwargs["auth"] == ("wm-client", "wm-secret")
        assert feeds_call.kwargs["headers"]["WM_SEC.ACCESS_TOKEN"] == "wm-fresh"
        assert feeds_call.kwargs["auth"] == ("wm-client", "wm-secret")


class TestCatalog:
    def test_push_product_submits_item_feed(self, walmart, product, connection, http, make_response):
        http.request.return_value = make_response(202, {"feedId": "F129C19240844B97A3C6AD8F1A2C4997@AU8BAQA"})

        listing = walmart.push_product(product, connection)

        assert listing.external_listing_id == "ROPE-18"
        assert listing.status == "pending"
        assert listing.platform_data == {
            "sku": "ROPE-18",
            "feed_id": "F129C19240844B97A3C6AD8F1A2C4997@AU8BAQA",
            "feed_status": "RECEIVED",
        }

        args, kwargs = http.request.call_args
        assert args == ("POST", f"{API}/v3/feeds")
        assert kwargs["params"] == {"feedType": "item"}
        item = kwargs["json"]["ItemFeed"]["item"][0]
        assert item["sku"] == "ROPE-18"
        assert item["productName"] == "14K Gold Rope Chain"
        assert item["price"] == {"currency": "USD", "amount": 199.99}
        assert item["category"] == "Necklaces"
        assert item["mainImageUrl"] == "https://cdn.example.com/rope-chain.jpg"

    def test_unlist_zeroes_inventory(self, walmart, product, connection, make_listing, http, make_response):
        listing = make_listing(product, connection, external_listing_id="ROPE-18")
        http.request.return_value = make_response(200, {"sku": "ROPE-18"})

        walmart.unlist_listing(listing)

        args, kwargs = http.request.call_args
        assert args == ("PUT", f"{API}/v3/inventory")
        assert kwargs["params"] == {"sku": "ROPE-18"}
        assert kwargs["json"] == {"sku": "ROPE-18", "quantity": {"unit": "EACH", "amount": 0}}
        assert listing.status == "ended"

    def test_delete_retires_item(self, walmart, product, connection, make_listing, http, make_response):
        listing = make_listing(product, connection, external_listing_id="ROPE-18")
        http.request.return_value = make_response(200, {"sku": "ROPE-18", "message": "Thank you."})

        walmart.delete_listing(listing)

        assert http.request.call_args.args == ("DELETE", f"{API}/v3/items/ROPE-18")
        assert listing.status == "archived"

    def test_pull_products_pages_by_offset(self, walmart, connection, http, make_response):
        first_page = [{"sku": f"SKU-{n}", "productName": "Ring"} for n in range(50)]
        http.request.side_effect = [
            make_response(200, {"ItemResponse": first_page, "totalItems": 51}),
            make_response(200, {"ItemResponse": [{"sku": "SKU-50"}], "totalItems": 51}),
        ]

        products = walmart.pull_products(connection)

        assert len(products) == 51
        assert [c.kwargs["params"]["offset"] for c in http.request.call_args_list] == [0, 50]


class TestInventory:
    def test_sync_sends_one_feed(self, walmart, product, connection, make_listing, http, make_response):
        listing = make_listing(product, connection, external_listing_id="ROPE-18")
        http.request.return_value = make_response(202, {"feedId": "INV-1"})

        counts = walmart.sync_inventory(connection)

        assert counts == {"updated": 1, "skipped": 0, "failed": 0}
        args, kwargs = http.request.call_args
        assert args == ("POST", f"{API}/v3/feeds")
        assert kwargs["params"] == {"feedType": "inventory"}
        assert kwargs["json"] == {
            "InventoryFeed": {"inventory": [{"sku": "ROPE-18", "quantity": {"unit": "EACH", "amount": 5}}]}
        }
        assert listing.platform_quantity == 5

    def test_feed_failure(self, walmart, product, connection, make_listing, http, make_response):
        make_listing(product, connection, external_listing_id="ROPE-18")
        http.request.return_value = make_response(500, "Internal Server Error")

        counts = walmart.sync_inventory(connection)

        assert counts == {"updated": 0, "skipped": 0, "failed": 1}
        assert connection.sync_logs[0].errors

    def test_nothing_to_sync(self, walmart, connection, http):
        counts = walmart.sync_inventory(connection)

        assert counts == {"updated": 0, "skipped": 0, "failed": 0}
        http.request.assert_not_called()


class TestOrders:
    def test_import_order(self, walmart, connection):
        order = walmart.import_order(WALMART_ORDER, connection)

        assert order.external_order_id == "1796277083022"
        assert order.external_order_number == "5281956426648"
        assert order.status == "Created"
        assert order.fulfillment_status == "pending"
        assert order.payment_status == "paid"
        assert order.subtotal == Decimal("199.99")
        assert order.shipping_cost == Decimal("5.00")
        assert order.tax == Decimal("12.00")
        assert order.total == Decimal("216.99")
        assert order.shipping_address["zip"] == "97201"
        assert order.customer_data["email"] == "ann@relay.walmart.com"
        assert order.ordered_at.isoformat() == "2024-03-01T15:00:00"

    def test_pull_orders_follows_next_cursor(self, walmart, connection, http, make_response):
        cursor = "?limit=100&hasMoreElements=true&soIndex=2&poIndex=2"
        http.request.side_effect = [
            make_response(200, {"list": {"meta": {"nextCursor": cursor}, "elements": {"order": [WALMART_ORDER]}}}),
            make_response(
                200,
                {"list": {"meta": {}, "elements": {"order": [dict(WALMART_ORDER, purchaseOrderId="1796277083023")]}}},
            ),
        ]

        orders = walmart.pull_orders(connection, since="2024-03-01T00:00:00Z")

        assert [o.external_order_id for o in orders] == ["1796277083022", "1796277083023"]
        first, second = http.request.call_args_list
        assert first.args == ("GET", f"{API}/v3/orders")
        assert first.kwargs["params"] == {"limit": 100, "createdStartDate": "2024-03-01T00:00:00Z"}
        assert second.args == ("GET", f"{API}/v3/orders{cursor}")
        assert second.kwargs["params"] is None

    def test_fulfillment_ships_every_line(self, walmart, connection, http, make_response):
        order = walmart.import_order(WALMART_ORDER, connection)
        http.request.return_value = make_response(200, {"order": {}})

        walmart.update_order_fulfillment(order, {"carrier": "USPS", "tracking_number": "9400"})

        args, kwargs = http.request.call_args
        assert args == ("POST", f"{API}/v3/orders/1796277083022/shipping")
        (line,) = kwargs["json"]["orderShipment"]["orderLines"]["orderLine"]
        status = line["orderLineStatuses"]["orderLineStatus"][0]
        assert line["lineNumber"] == "1"
        assert status["status"] == "Shipped"
        assert status["statusQuantity"]["amount"] == "1"
        assert status["trackingInfo"]["carrierName"] == {"carrier": "USPS"}
        assert status["trackingInfo"]["trackingNumber"] == "9400"
        assert order.fulfillment_status == "shipped"


class TestWebhooks:
    def test_po_created_imports_order(self, walmart, connection):
        payload = {"source": {"eventType": "PO_CREATED"}, "payload": WALMART_ORDER}

        order = walmart.handle_webhook("PO_CREATED", payload, connection)

        assert order.external_order_id == "1796277083022"

    def test_item_published_lists_pending_listing(self, walmart, product, connection, make_listing):
        listing = make_listing(product, connection, status="pending", external_listing_id="ROPE-18")
        payload = {
            "source": {"eventType": "ITEM_UPDATED"},
            "payload": {"sku": "ROPE-18", "itemId": "5512345678", "publishedStatus": "PUBLISHED"},
        }

        walmart.handle_webhook("ITEM_UPDATED", payload, connection)

        assert listing.status == "listed"
        assert listing.listing_url == "https://www.walmart.com/ip/5512345678"
        assert listing.platform_data["published_status"] == "PUBLISHED"

    def test_item_system_problem_records_error(self, walmart, product, connection, make_listing):
        listing = make_listing(product, connection, status="pending", external_listing_id="ROPE-18")
        payload = {
            "payload": {
                "sku": "ROPE-18",
                "publishedStatus": "SYSTEM_PROBLEM",
                "unpublishedReasons": {"reason": ["Missing UPC"]},
            }
        }

        walmart.handle_webhook("ITEM_UPDATED", payload, connection)

        assert listing.status == "error"
        assert listing.last_error == "Missing UPC"

    def test_unknown_item_is_ignored(self, walmart, connection):
        assert walmart.handle_webhook("ITEM_UPDATED", {"payload": {"sku": "NOPE"}}, connection) is None

    def test_duplicate_subscription_is_tolerated(self, walmart, connection, http, make_response):
        http.request.return_value = make_response(409, {"errors": [{"code": "CONFLICT"}]})

        walmart.register_webhooks(connection)

        assert http.request.call_count == len(walmart.WEBHOOK_EVENTS)
        assert http.request.call_args.kwargs["json"]["eventUrl"] == (
            f"https://backoffice.test/webhooks/walmart/{connection.id}"
        )


class TestHelpers:
    def test_fulfillment_status(self):
        assert fulfillment_status([order_line("1", status="Shipped"), order_line("2", status="Shipped")]) == "shipped"
        assert fulfillment_status([order_line("1", status="Shipped"), order_line("2")]) == "pending"
        assert fulfillment_status([]) == "pending"

    def test_map_walmart_product(self):
        mapped = map_walmart_product(
            {
                "sku": "ROPE-18",
                "wpid": "0RCPILAXM0C1",
                "productName": "Rope Chain",
                "price": {"currency": "USD", "amount": 199.99},
                "publishedStatus": "PUBLISHED",
            }
        )

        assert mapped["external_id"] == "ROPE-18"
        assert mapped["item_id"] == "0RCPILAXM0C1"
        assert mapped["price"] == 199.99
        assert mapped["quantity"] == 0
