"""
Listing Endpoints
Publish and manage product listings on connected marketplaces.
"""

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..dependencies import get_db, get_listing, get_listing_service, get_product, get_request_id
from ..errors import ResourceNotFoundError
from ..schemas.platforms import ListingResponse, ListingUpdate
from ...db.models import PlatformListing, Product, StoreMarketplace
from ...platforms import ListingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["listings"])


@router.post(
    "/products/{product_id}/listings/{connection_id}",
    response_model=ListingResponse,
    status_code=status.HTTP_201_CREATED,
)
def publish_listing(
    connection_id: int,
    product: Product = Depends(get_product),
    db: Session = Depends(get_db),
    listings: ListingService = Depends(get_listing_service),
    request_id: str = Depends(get_request_id),
) -> ListingResponse:
    connection = StoreMarketplace.find_active(db, connection_id)
    if connection is None or connection.store_id != product.store_id:
        raise ResourceNotFoundError("Connection", connection_id)

    logger.info(
        f"Publishing product {product.id} to connection {connection.id}",
        extra={"request_id": request_id},
    )
    listing = listings.publish(product, connection)
    return ListingResponse.model_validate(listing)


@router.put("/listings/{listing_id}", response_model=ListingResponse)
def update_listing(
    update: ListingUpdate,
    listing: PlatformListing = Depends(get_listing),
    db: Session = Depends(get_db),
    listings: ListingService = Depends(get_listing_service),
) -> ListingResponse:
    """
    Apply overrides and push them when the listing is live on the platform.

    Unpublished listings only store the overrides.
    """
    if update.title is not None:
        listing.title = update.title
    if update.description is not None:
        listing.description = update.description
    if update.platform_settings is not None:
        listing.platform_settings = {**(listing.platform_settings or {}), **update.platform_settings}

    if not listing.external_listing_id:
        if update.price is not None:
            listing.platform_price = update.price
        if update.quantity is not None:
            listing.quantity_override = update.quantity
        db.commit()
        return ListingResponse.model_validate(listing)

    if update.price is not None:
        listing = listings.sync_price(listing, update.price)
    if update.quantity is not None:
        listing = listings.sync_quantity(listing, update.quantity)
    if update.price is None and update.quantity is None:
        listing = listings.update(listing)

    return ListingResponse.model_validate(listing)


@router.delete("/listings/{listing_id}", response_model=ListingResponse)
def delete_listing(
    listing: PlatformListing = Depends(get_listing),
    listings: ListingService = Depends(get_listing_service),
) -> ListingResponse:
    return ListingResponse.model_validate(listings.delete(listing))


@router.post("/listings/{listing_id}/unlist", response_model=ListingResponse)
def unlist_listing(
    listing: PlatformListing = Depends(get_listing),
    listings: ListingService = Depends(get_listing_service),
) -> ListingResponse:
    return ListingResponse.model_validate(listings.unlist(listing))


@router.post("/listings/{listing_id}/relist", response_model=ListingResponse)
def relist_listing(
    listing: PlatformListing = Depends(get_listing),
    listings: ListingService = Depends(get_listing_service),
) -> ListingResponse:
    return ListingResponse.model_validate(listings.relist(listing))
