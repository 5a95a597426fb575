"""
Tests for the shared platform plumbing and the platform manager.
"""

from datetime import datetime, timedelta

import pytest
import requests

from backoffice.config import ServicesSettings
from backoffice.db.models import Platform, SyncLog, utcnow
from backoffice.platforms import (
    EbayService,
    EtsyService,
    PlatformAPIError,
    PlatformManager,
    PlatformNotConfiguredError,
    ShopifyService,
    UnsupportedPlatformError,
    WooCommerceService,
)
from backoffice.platforms.base import apply_markup, utc_from_timestamp
from backoffice.security import InvalidStateError


class TestPlatformManager:
    def test_resolves_services(self, manager):
        assert isinstance(manager.get("shopify"), ShopifyService)
        assert isinstance(manager.get("EBAY"), EbayService)
        assert isinstance(manager.get(Platform.ETSY), EtsyService)
        assert isinstance(manager.get("woocommerce"), WooCommerceService)

    def test_services_are_reused(self, manager):
        assert manager.get("shopify") is manager.get("Shopify")

    def test_forwards_http_session(self, manager, http):
        assert manager.get("shopify").http is http

    def test_unsupported_platform(self, manager):
        with pytest.raises(UnsupportedPlatformError) as exc_info:
            manager.get("poshmark")

        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "Unsupported platform: poshmark"

    def test_supported_platforms(self, manager):
        assert PlatformManager.supported_platforms() == ["shopify", "ebay", "etsy", "woocommerce", "amazon", "walmart"]
        assert manager.supports("Etsy")
        assert not manager.supports("poshmark")

    def test_for_connection(self, manager, make_connection):
        assert isinstance(manager.for_connection(make_connection("etsy")), EtsyService)


class TestRequests:
    def test_non_2xx_raises_platform_error(self, manager, http, make_response):
        http.request.return_value = make_response(422, '{"errors": {"title": ["can\'t be blank"]}}')

        with pytest.raises(PlatformAPIError) as exc_info:
            manager.get("shopify").request("POST", "https://harbor.myshopify.com/admin/api/x.json")

        error = exc_info.value
        assert error.upstream_status == 422
        assert error.status_code == 502
        assert "can't be blank" in error.body
        assert error.details["platform"] == "shopify"

    def test_transport_error_raises_platform_error(self, manager, http):
        http.request.side_effect = requests.ConnectionError("connection refused")

        with pytest.raises(PlatformAPIError) as exc_info:
            manager.get("ebay").request("GET", "https://api.ebay.com/x")

        assert exc_info.value.upstream_status is None
        assert "connection refused" in exc_info.value.body

    def test_empty_body_decodes_to_dict(self, manager, http, make_response):
        http.request.return_value = make_response(204)

        assert manager.get("ebay").request("PUT", "https://api.ebay.com/x") == {}

    def test_timeout_is_applied(self, manager, http, make_response):
        http.request.return_value = make_response(200, {"ok": True})

        manager.get("etsy").request("GET", "https://openapi.etsy.com/v3/x")

        assert http.request.call_args.kwargs["timeout"] == 30


class TestConfiguration:
    def test_missing_credentials(self, db_session):
        services = ServicesSettings(app_key="x", ebay_client_id="id", ebay_client_secret="", ebay_redirect_uri="")
        service = EbayService(db_session, services=services)

        with pytest.raises(PlatformNotConfiguredError) as exc_info:
            service.ensure_configured()

        assert exc_info.value.status_code == 503
        assert exc_info.value.missing == ["EBAY_CLIENT_SECRET", "EBAY_REDIRECT_URI"]

    def test_urls(self, manager, make_connection):
        connection = make_connection("woocommerce")
        service = manager.get("woocommerce")

        assert service.callback_url() == "https://backoffice.test/platforms/woocommerce/callback"
        assert service.get_webhook_url(connection) == f"https://backoffice.test/webhooks/woocommerce/{connection.id}"


class TestOAuthState:
    def test_round_trip(self, manager):
        service = manager.get("ebay")
        state = service.encrypt_state({"store_id": 12})

        assert service.decrypt_state(state) == {"store_id": 12}

    def test_missing_state(self, manager):
        with pytest.raises(InvalidStateError):
            manager.get("ebay").decrypt_state(None)

    def test_garbage_state(self, manager):
        with pytest.raises(InvalidStateError):
            manager.get("ebay").decrypt_state("not-a-token")


class TestSyncBookkeeping:
    def test_failed_pull_keeps_partial_results(self, manager, http, make_connection, make_response, db_session):
        connection = make_connection("woocommerce")
        http.request.side_effect = [
            make_response(200, [{"id": n, "name": f"Product {n}"} for n in range(100)]),
            make_response(503, "Service Unavailable"),
        ]

        products = manager.get("woocommerce").pull_products(connection)

        assert len(products) == 100
        sync_log = db_session.query(SyncLog).one()
        assert sync_log.status == "failed"
        assert sync_log.entity_type == "products"
        assert sync_log.direction == "pull"
        assert sync_log.success_count == 100
        assert "503" in sync_log.errors[0]
        assert connection.last_error.startswith("Pull products failed")

    def test_expired_token_is_refreshed_first(self, manager, http, make_connection, make_response):
        connection = make_connection("ebay", token_expires_at=utcnow() - timedelta(minutes=5))
        http.request.side_effect = [
            make_response(200, {"access_token": "fresh-token", "expires_in": 7200}),
            make_response(200, {"sellingLimit": {"quantity": 100}}),
        ]

        assert manager.get("ebay").validate_credentials(connection)

        assert connection.access_token == "fresh-token"
        assert connection.token_expires_at > utcnow()
        privilege_call = http.request.call_args_list[1]
        assert privilege_call.kwargs["headers"]["Authorization"] == "Bearer fresh-token"

    def test_categories_are_cached(self, manager, http, make_connection, make_response, cache):
        connection = make_connection("shopify")
        http.request.return_value = make_response(
            200, {"custom_collections": [{"id": 841564295, "title": "Rings", "handle": "rings"}]}
        )
        service = manager.get("shopify")

        first = service.get_categories(connection)
        second = service.get_categories(connection)

        assert first == second == [{"id": 841564295, "name": "Rings", "handle": "rings"}]
        assert http.request.call_count == 1
        assert cache.get(f"categories:shopify:{connection.id}") == first


class TestHelpers:
    def test_utc_from_timestamp(self):
        assert utc_from_timestamp("2024-03-01T10:00:00-05:00") == datetime(2024, 3, 1, 15, 0)
        assert utc_from_timestamp("2024-03-01T15:00:00Z") == datetime(2024, 3, 1, 15, 0)
        assert utc_from_timestamp(1709305200) == datetime(2024, 3, 1, 15, 0)
        assert utc_from_timestamp("yesterday") is None
        assert utc_from_timestamp(None) is None

    def test_apply_markup(self):
        assert apply_markup(100.0, 15) == pytest.approx(115.0)
        assert apply_markup(100.0, "10") == pytest.approx(110.0)
        assert apply_markup(100.0, None) == 100.0
