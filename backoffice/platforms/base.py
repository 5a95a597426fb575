"""
Platform Integration Base
The marketplace contract and the behaviour shared by every platform service.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
from sqlalchemy.orm import Session

from ..api.config import APISettings, get_settings
from ..cache import RedisCache, get_redis_cache
from ..config import ServicesSettings, get_services_settings
from ..db.models import (
    ListingStatus,
    PlatformListing,
    PlatformListingVariant,
    PlatformOrder,
    Product,
    Store,
    StoreMarketplace,
    SyncLog,
    utcnow,
)
from ..security import InvalidStateError, decrypt_payload, encrypt_payload
from .exceptions import PlatformAPIError, PlatformNotConfiguredError

logger = logging.getLogger(__name__)


class PlatformInterface(ABC):
    """Operations every marketplace integration provides."""

    platform: str = ""

    # ========== Connection lifecycle ==========

    @abstractmethod
    def connect(self, store: Store, params: Dict[str, Any]) -> str:
        """Return the URL the merchant is sent to in order to authorize access."""

    @abstractmethod
    def handle_callback(self, store: Store, params: Dict[str, Any]) -> StoreMarketplace:
        """Complete authorization and persist the connection."""

    @abstractmethod
    def disconnect(self, connection: StoreMarketplace) -> None:
        pass

    @abstractmethod
    def refresh_token(self, connection: StoreMarketplace) -> StoreMarketplace:
        """
        Obtain a fresh access token for the connection.

        Args:
            connection: Connection whose token expired or is about to

        Returns:
            The same connection with ``access_token`` and ``token_expires_at`` updated

        Raises:
            OAuthError: If the platform refuses the refresh; the connection's
                ``last_error`` records why
        """

    @abstractmethod
    def validate_credentials(self, connection: StoreMarketplace) -> bool:
        """Make one cheap authenticated call; False on any API or OAuth failure."""

    # ========== Catalog ==========

    @abstractmethod
    def pull_products(self, connection: StoreMarketplace) -> List[Dict[str, Any]]:
        """
        Read the remote catalog, following the platform's pagination.

        Args:
            connection: Connection to read from

        Returns:
            Platform products mapped to plain dicts (``external_id``, ``title``,
            ``price``, ``quantity`` and platform-specific extras)
        """

    @abstractmethod
    def push_product(self, product: Product, connection: StoreMarketplace) -> PlatformListing:
        """
        Publish a product, creating its listing on first push.

        Args:
            product: Local product to publish
            connection: Target connection

        Returns:
            The listing, with ``external_listing_id`` set

        Raises:
            PlatformAPIError: If the platform rejects the product
        """

    @abstractmethod
    def update_listing(self, listing: PlatformListing) -> PlatformListing:
        pass

    @abstractmethod
    def delete_listing(self, listing: PlatformListing) -> None:
        pass

    @abstractmethod
    def unlist_listing(self, listing: PlatformListing) -> PlatformListing:
        """Take the listing off sale without deleting it; the listing ends up ``ended``."""

    @abstractmethod
    def relist_listing(self, listing: PlatformListing) -> PlatformListing:
        """
        Put an ended listing back on sale.

        Args:
            listing: Listing previously unlisted

        Returns:
            The listing, now ``listed``

        Raises:
            InvalidRequestError: If the platform has nothing left to republish
        """

    @abstractmethod
    def sync_inventory(self, connection: StoreMarketplace) -> Dict[str, int]:
        """
        Push effective quantities for every listed listing on the connection.

        Args:
            connection: Connection to sync

        Returns:
            Counts keyed ``updated``, ``skipped`` and ``failed``
        """

    # ========== Orders ==========

    @abstractmethod
    def pull_orders(
        self, connection: StoreMarketplace, since: Optional[str] = None
    ) -> List[PlatformOrder]:
        """
        Import orders, following the platform's pagination to the last page.

        Args:
            connection: Connection to import from
            since: ISO-8601 lower bound on order creation time, or None for
                the platform default

        Returns:
            The created or updated orders
        """

    @abstractmethod
    def update_order_fulfillment(self, order: PlatformOrder, fulfillment: Dict[str, Any]) -> None:
        """
        Mark an order shipped on the platform.

        Args:
            order: Imported order
            fulfillment: ``carrier``, ``tracking_number`` and optional ``tracking_url``
        """

    # ========== Metadata and webhooks ==========

    @abstractmethod
    def get_categories(self, connection: StoreMarketplace) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def get_webhook_url(self, connection: StoreMarketplace) -> str:
        pass

    @abstractmethod
    def register_webhooks(self, connection: StoreMarketplace) -> None:
        pass

    @abstractmethod
    def handle_webhook(
        self, topic: str, payload: Dict[str, Any], connection: StoreMarketplace
    ) -> Optional[Any]:
        """
        Apply one webhook delivery.

        Args:
            topic: Event type as resolved from the delivery
            payload: Decoded body
            connection: Connection the delivery arrived for

        Returns:
            The affected order or listing, or None when the event was ignored
        """


class BasePlatformService(PlatformInterface):
    """
    Shared plumbing for platform services.

    Services are bound to one SQLAlchemy session and commit their own
    changes once the remote call has succeeded.
    """

    # Environment variable name -> ServicesSettings attribute
    required_settings: Dict[str, str] = {}

    # OAuth state lifetime in seconds
    state_ttl = 600

    def __init__(
        self,
        db: Session,
        settings: Optional[APISettings] = None,
        services: Optional[ServicesSettings] = None,
        http: Optional[requests.Session] = None,
        cache: Optional[RedisCache] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.services = services or get_services_settings()
        self.http = http or requests.Session()
        self._cache = cache

    @property
    def cache(self) -> RedisCache:
        if self._cache is None:
            self._cache = get_redis_cache()
        return self._cache

    # ========== Configuration ==========

    def ensure_configured(self) -> None:
        missing = [
            env_name
            for env_name, attribute in self.required_settings.items()
            if not getattr(self.services, attribute, None)
        ]
        if missing:
            raise PlatformNotConfiguredError(self.platform, missing)

    def callback_url(self) -> str:
        return f"{self.settings.app_url}/platforms/{self.platform}/callback"

    def get_webhook_url(self, connection: StoreMarketplace) -> str:
        return f"{self.settings.app_url}/webhooks/{self.platform}/{connection.id}"

    # ========== OAuth state ==========

    def encrypt_state(self, payload: Dict[str, Any]) -> str:
        return encrypt_payload(payload, key=self.services.app_key)

    def decrypt_state(self, state: Optional[str]) -> Dict[str, Any]:
        if not state:
            raise InvalidStateError("Missing OAuth state")
        return decrypt_payload(state, key=self.services.app_key, ttl=self.state_ttl)

    # ========== HTTP ==========

    def send(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        data: Optional[Dict[str, Any]] = None,
        auth: Optional[tuple] = None,
    ) -> requests.Response:
        """
        Send a request and return the raw response.

        Raises:
            PlatformAPIError: On transport failure or any non-2xx status
        """
        try:
            response = self.http.request(
                method.upper(),
                url,
                headers=headers,
                params=params,
                json=json,
                data=data,
                auth=auth,
                timeout=self.services.http_timeout_seconds,
            )
        except requests.RequestException as e:
            logger.error(f"{self.platform} request failed: {method} {url}: {e}")
            raise PlatformAPIError(self.platform, None, str(e)) from e

        if not response.ok:
            logger.warning(
                f"{self.platform} API returned {response.status_code} for {method} {url}",
                extra={"platform": self.platform, "status_code": response.status_code},
            )
            raise PlatformAPIError(self.platform, response.status_code, response.text)

        return response

    def request(self, method: str, url: str, **kwargs) -> Any:
        """Send a request and decode the JSON body (``{}`` when empty)."""
        response = self.send(method, url, **kwargs)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    # ========== Tokens ==========

    def ensure_valid_token(self, connection: StoreMarketplace) -> StoreMarketplace:
        if connection.is_token_expired():
            logger.info(f"Access token expired for connection {connection.id}, refreshing")
            return self.refresh_token(connection)
        return connection

    def refresh_token(self, connection: StoreMarketplace) -> StoreMarketplace:
        # Platforms with non-expiring tokens keep this default
        return connection

    def disconnect(self, connection: StoreMarketplace) -> None:
        connection.soft_delete()
        self.db.commit()
        logger.info(f"Disconnected {self.platform} connection {connection.id}")

    # ========== Sync bookkeeping ==========

    def log_sync(self, connection: StoreMarketplace, entity_type: str, direction: str) -> SyncLog:
        sync_log = SyncLog(
            store_marketplace_id=connection.id,
            entity_type=entity_type,
            direction=direction,
            status="running",
        )
        self.db.add(sync_log)
        self.db.flush()
        return sync_log

    def handle_api_error(self, connection: StoreMarketplace, exc: Exception, context: str) -> None:
        logger.error(
            f"{context}: {exc}",
            extra={"platform": self.platform, "connection_id": connection.id},
        )
        connection.mark_error(f"{context}: {exc}")

    def collect_pull(
        self,
        connection: StoreMarketplace,
        entity_type: str,
        produce: Callable[[], Iterable[Any]],
    ) -> List[Any]:
        """
        Drain ``produce()`` into a list, tracking progress in a SyncLog.

        A failure part-way through marks the log failed and returns the
        items collected before it.
        """
        sync_log = self.log_sync(connection, entity_type, "pull")
        items: List[Any] = []

        try:
            for item in produce():
                items.append(item)
                sync_log.increment_processed()
                sync_log.increment_success()

            sync_log.mark_completed({"imported_count": len(items)})
            connection.record_sync()
            if entity_type == "orders":
                connection.last_order_sync_at = sync_log.started_at
        except Exception as e:
            self.handle_api_error(connection, e, f"Pull {entity_type} failed")
            sync_log.mark_failed([str(e)])

        self.db.commit()
        return items

    # ========== Inventory ==========

    def listings_to_sync(self, connection: StoreMarketplace) -> List[PlatformListing]:
        return [
            listing
            for listing in connection.listings
            if listing.is_listed() and listing.external_listing_id
        ]

    def prepare_inventory_sync(self, connection: StoreMarketplace) -> Any:
        """Fetch whatever per-run context the platform needs (e.g. a location id)."""
        return None

    def push_listing_quantity(self, listing: PlatformListing, context: Any) -> bool:
        """Send one listing's quantity; return False when there is nothing to send."""
        raise NotImplementedError

    def sync_inventory(self, connection: StoreMarketplace) -> Dict[str, int]:
        self.ensure_valid_token(connection)
        sync_log = self.log_sync(connection, "inventory", "push")
        counts = {"updated": 0, "skipped": 0, "failed": 0}
        errors = []

        context = self.prepare_inventory_sync(connection)

        for listing in self.listings_to_sync(connection):
            sync_log.increment_processed()
            try:
                if self.push_listing_quantity(listing, context):
                    listing.platform_quantity = listing.effective_quantity()
                    listing.last_synced_at = utcnow()
                    counts["updated"] += 1
                    sync_log.increment_success()
                else:
                    counts["skipped"] += 1
            except PlatformAPIError as e:
                logger.warning(f"Inventory sync failed for listing {listing.id}: {e}")
                counts["failed"] += 1
                errors.append(f"listing {listing.id}: {e.message}")
                sync_log.increment_error()

        sync_log.mark_completed(counts)
        if errors:
            sync_log.errors = errors
        connection.record_sync()
        self.db.commit()

        logger.info(
            f"Inventory sync for {self.platform} connection {connection.id}: "
            f"{counts['updated']} updated, {counts['skipped']} skipped, {counts['failed']} failed"
        )
        return counts

    # ========== Categories ==========

    def fetch_categories(self, connection: StoreMarketplace) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def get_categories(self, connection: StoreMarketplace) -> List[Dict[str, Any]]:
        cache_key = f"categories:{self.platform}:{connection.id}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        categories = self.fetch_categories(connection)
        self.cache.set(cache_key, categories, ttl=self.settings.cache_ttl_categories)
        return categories

    # ========== Webhooks ==========

    def register_webhooks(self, connection: StoreMarketplace) -> None:
        logger.info(f"{self.platform} does not support webhook registration")

    def handle_webhook(
        self, topic: str, payload: Dict[str, Any], connection: StoreMarketplace
    ) -> Optional[Any]:
        logger.debug(f"Ignoring {self.platform} webhook topic {topic}")
        return None

    # ========== Listing helpers ==========

    def upsert_listing(self, product: Product, connection: StoreMarketplace) -> PlatformListing:
        """Find the product's listing on this connection, creating it (and its variants) if needed."""
        listing = PlatformListing.find_for(self.db, product.id, connection.id)
        if listing is None:
            listing = PlatformListing(
                store_marketplace_id=connection.id,
                product_id=product.id,
                status=ListingStatus.NOT_LISTED.value,
                platform_settings={},
                platform_data={},
            )
            listing.product = product
            listing.marketplace = connection
            self.db.add(listing)

        if not listing.listing_variants:
            for variant in product.variants:
                listing.listing_variants.append(
                    PlatformListingVariant(product_variant=variant, platform_data={})
                )

        self.db.flush()
        return listing

    def listing_sku(self, listing: PlatformListing) -> str:
        """First variant SKU, else the product handle."""
        if listing.listing_variants:
            sku = listing.listing_variants[0].effective_sku()
            if sku:
                return sku
        return listing.product.handle or f"product-{listing.product_id}"

    def find_listing_variant(
        self, listing: PlatformListing, sku: Optional[str]
    ) -> Optional[PlatformListingVariant]:
        for listing_variant in listing.listing_variants:
            if sku and listing_variant.effective_sku() == sku:
                return listing_variant
        return None


def utc_from_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or unix timestamp into a naive UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable timestamp from platform: {value!r}")
            return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def apply_markup(price: float, percent: Any) -> float:
    if not percent:
        return price
    return price * (1 + float(percent) / 100)
