"""
Pytest configuration and shared fixtures
"""

import json
import os
from decimal import Decimal
from typing import Any, Dict, Optional
from unittest.mock import MagicMock

import pytest
import requests
from cryptography.fernet import Fernet
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Settings are read lazily, but db.session builds its engine at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["APP_KEY"] = Fernet.generate_key().decode()
os.environ["APP_URL"] = "https://backoffice.test"
os.environ["SHOPIFY_CLIENT_ID"] = "shopify-client"
os.environ["SHOPIFY_CLIENT_SECRET"] = "shopify-secret"
os.environ["EBAY_CLIENT_ID"] = "ebay-client"
os.environ["EBAY_CLIENT_SECRET"] = "ebay-secret"
os.environ["EBAY_REDIRECT_URI"] = "Back_Office-RuName"
os.environ["ETSY_KEYSTRING"] = "etsy-keystring"
os.environ["AMAZON_APP_ID"] = "amzn1.sp.solution.harbor"
os.environ["AMAZON_CLIENT_ID"] = "amzn1.application-oa2-client.harbor"
os.environ["AMAZON_CLIENT_SECRET"] = "amazon-secret"
for name in ("OPENAI_API_URL", "ANTHROPIC_API_URL", "OPENAI_API_KEY", "ANTHROPIC_API_KEY"):
    os.environ.pop(name, None)

from backoffice.api.config import reset_settings  # noqa: E402
from backoffice.cache import RedisCache, set_redis_cache  # noqa: E402
from backoffice.config import get_services_settings  # noqa: E402
from backoffice.db.models import (  # noqa: E402
    Base,
    PlatformListing,
    PlatformListingVariant,
    Product,
    ProductVariant,
    Store,
    StoreMarketplace,
)
from backoffice.platforms import PlatformManager  # noqa: E402
from backoffice.security import encrypt_value  # noqa: E402


class FakeRedis:
    """Dict-backed stand-in for a redis.Redis client."""

    def __init__(self):
        self.store: Dict[str, Any] = {}
        self.ttls: Dict[str, int] = {}

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value):
        self.store[key] = value
        return True

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, *keys):
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    def ping(self):
        return True


def build_response(
    status_code: int = 200,
    body: Any = None,
    headers: Optional[Dict[str, str]] = None,
) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    if body is None:
        response._content = b""
    elif isinstance(body, (bytes, str)):
        response._content = body.encode() if isinstance(body, str) else body
    else:
        response._content = json.dumps(body).encode()
    response.headers.update(headers or {})
    response.encoding = "utf-8"
    response.url = "https://api.test/"
    return response


@pytest.fixture(autouse=True)
def reset_configuration():
    """Re-read settings from the environment for every test."""
    get_services_settings.cache_clear()
    reset_settings()
    yield
    get_services_settings.cache_clear()
    reset_settings()


@pytest.fixture(autouse=True)
def cache():
    cache = RedisCache(client=FakeRedis())
    set_redis_cache(cache)
    yield cache
    set_redis_cache(None)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_response():
    """Build ``requests.Response`` objects for mocked HTTP calls."""
    return build_response


@pytest.fixture
def http():
    """Mocked ``requests.Session``; queue responses on ``http.request.side_effect``."""
    return MagicMock(spec=requests.Session)


@pytest.fixture
def manager(db_session, http, cache):
    return PlatformManager(db_session, http=http, cache=cache)


# ========== Model factories ==========


@pytest.fixture
def store(db_session):
    store = Store(name="Harbor Jewelers")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture
def product(db_session, store):
    product = Product(
        store_id=store.id,
        title="14K Gold Rope Chain",
        description="Solid 14K yellow gold rope chain.",
        handle="gold-rope-chain",
        brand="Harbor",
        category_name="Necklaces",
        condition="NEW",
        tags=["gold", "chain"],
        images=["https://cdn.example.com/rope-chain.jpg"],
        is_published=True,
    )
    product.variants = [
        ProductVariant(sku="ROPE-18", price=Decimal("199.99"), quantity=5, option1="18 inch"),
    ]
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture
def make_connection(db_session, store):
    def factory(platform: str = "shopify", **overrides) -> StoreMarketplace:
        values: Dict[str, Any] = {
            "store_id": store.id,
            "platform": platform,
            "name": f"{platform} account",
            "status": "active",
            "connected_successfully": True,
            "access_token": f"{platform}-access-token",
            "credentials": {},
            "settings": {},
        }
        if platform == "shopify":
            values["shop_domain"] = "harbor.myshopify.com"
        elif platform == "ebay":
            values["refresh_token"] = "ebay-refresh-token"
            values["external_store_id"] = "harbor_seller"
        elif platform == "etsy":
            values["refresh_token"] = "etsy-refresh-token"
            values["external_store_id"] = "555"
            values["credentials"] = {"shop_id": 555, "user_id": 42}
        elif platform == "woocommerce":
            values["shop_domain"] = "https://harbor.example.com"
            values["access_token"] = "ck_harbor"
            values["credentials"] = {
                "site_url": "https://harbor.example.com",
                "consumer_key": "ck_harbor",
                "consumer_secret": encrypt_value("cs_harbor"),
            }
        elif platform == "amazon":
            values["refresh_token"] = "Atzr|amazon-refresh-token"
            values["external_store_id"] = "A2HARBOR"
            values["credentials"] = {
                "selling_partner_id": "A2HARBOR",
                "region": "na",
                "marketplace_ids": ["ATVPDKIKX0DER"],
            }
        elif platform == "walmart":
            values["external_store_id"] = "10001"
            values["credentials"] = {
                "client_id": "wm-client",
                "client_secret": encrypt_value("wm-secret"),
                "seller_id": "10001",
            }
        values.update(overrides)

        connection = StoreMarketplace(**values)
        db_session.add(connection)
        db_session.commit()
        return connection

    return factory


@pytest.fixture
def make_listing(db_session):
    def factory(product: Product, connection: StoreMarketplace, **overrides) -> PlatformListing:
        values: Dict[str, Any] = {
            "store_marketplace_id": connection.id,
            "product_id": product.id,
            "status": "listed",
            "external_listing_id": "1001",
            "platform_settings": {},
            "platform_data": {},
        }
        values.update(overrides)

        listing = PlatformListing(**values)
        listing.listing_variants = [
            PlatformListingVariant(product_variant=variant, platform_data={})
            for variant in product.variants
        ]
        db_session.add(listing)
        db_session.commit()
        return listing

    return factory
