"""
Listing Orchestration
Drives a single listing through its platform service and the status machine.
"""

import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..api.errors import InvalidRequestError
from ..db.models import (
    InvalidStatusTransition,
    ListingStatus,
    PlatformListing,
    Product,
    StoreMarketplace,
    utcnow,
)
from .exceptions import ListingSyncError, PlatformAPIError
from .manager import PlatformManager

logger = logging.getLogger(__name__)


class ListingService:
    """
    Publish, update, unlist, relist and delete listings.

    Status changes are validated before the platform is called; a failed
    platform call leaves ``last_error`` on the listing and raises
    :class:`ListingSyncError`.
    """

    def __init__(self, db: Session, manager: Optional[PlatformManager] = None):
        self.db = db
        self.manager = manager or PlatformManager(db)

    def publish(self, product: Product, connection: StoreMarketplace) -> PlatformListing:
        service = self.manager.for_connection(connection)
        listing = service.upsert_listing(product, connection)

        if listing.is_listed() and listing.external_listing_id:
            return self.update(listing)

        if listing.is_archived():
            listing.transition_to(ListingStatus.NOT_LISTED.value)
        listing.transition_to(ListingStatus.PENDING.value)
        self.db.commit()
        listing_id = listing.id

        try:
            listing = service.push_product(product, connection)
        except Exception as e:
            self.db.rollback()
            listing = self.db.get(PlatformListing, listing_id)
            listing.mark_as_error(str(e))
            self.db.commit()
            logger.error(
                f"Publishing product {product.id} to {connection.platform} failed: {e}",
                extra={"listing_id": listing_id, "connection_id": connection.id},
            )
            raise ListingSyncError(listing_id, "publish", str(e)) from e

        logger.info(
            f"Published product {product.id} to {connection.platform}",
            extra={"listing_id": listing.id, "external_id": listing.external_listing_id},
        )
        return listing

    def update(self, listing: PlatformListing) -> PlatformListing:
        if not listing.external_listing_id:
            raise InvalidRequestError(
                "Listing has not been published to the platform yet",
                details={"listing_id": listing.id},
            )
        service = self.manager.for_connection(listing.marketplace)
        return self._call(listing, "update", lambda: service.update_listing(listing))

    def unlist(self, listing: PlatformListing) -> PlatformListing:
        self._ensure_transition(listing, ListingStatus.ENDED.value)
        service = self.manager.for_connection(listing.marketplace)
        return self._call(listing, "unlist", lambda: service.unlist_listing(listing))

    def relist(self, listing: PlatformListing) -> PlatformListing:
        self._ensure_transition(listing, ListingStatus.LISTED.value)
        service = self.manager.for_connection(listing.marketplace)
        return self._call(listing, "relist", lambda: service.relist_listing(listing))

    def delete(self, listing: PlatformListing) -> PlatformListing:
        if listing.is_listed() or listing.external_listing_id:
            service = self.manager.for_connection(listing.marketplace)
            self._call(listing, "delete", lambda: service.delete_listing(listing))
        else:
            listing.archive()
            self.db.commit()

        logger.info(f"Archived listing {listing.id}")
        return listing

    def sync_price(self, listing: PlatformListing, price: float) -> PlatformListing:
        """Apply ``price`` to the listing and its variants, then push it."""
        listing.platform_price = price
        for listing_variant in listing.listing_variants:
            listing_variant.price = price

        listing = self.update(listing)
        listing.last_synced_at = utcnow()
        self.db.commit()
        return listing

    def sync_quantity(self, listing: PlatformListing, quantity: Optional[int] = None) -> PlatformListing:
        """Push the listing's quantity, optionally capping it at ``quantity`` first."""
        if quantity is not None:
            listing.quantity_override = quantity

        listing = self.update(listing)
        listing.platform_quantity = listing.effective_quantity()
        listing.last_synced_at = utcnow()
        self.db.commit()
        return listing

    def _ensure_transition(self, listing: PlatformListing, target: str) -> None:
        if not listing.can_transition_to(target):
            raise InvalidStatusTransition(listing.status, target)

    def _call(
        self, listing: PlatformListing, action: str, operation: Callable[[], Optional[PlatformListing]]
    ) -> PlatformListing:
        listing_id = listing.id
        try:
            result = operation()
        except PlatformAPIError as e:
            self.db.rollback()
            listing = self.db.get(PlatformListing, listing_id)
            listing.last_error = e.message
            self.db.commit()
            logger.warning(f"Listing {listing_id} {action} failed: {e.message}")
            raise ListingSyncError(listing_id, action, e.message) from e

        return result or listing
