"""
Dependency Injection
FastAPI dependencies for database, services, and configurations.
"""

import logging
from typing import Generator

from fastapi import Depends, Request
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings
from .errors import ResourceNotFoundError
from ..db.models import Product, Store, StoreMarketplace, PlatformListing, PlatformOrder
from ..inventory import InventoryService
from ..platforms import ListingService, PlatformManager, WebhookProcessor
from ..search import WebPriceSearchService

logger = logging.getLogger(__name__)

# Database engine and session factory
_engine = None
_SessionLocal = None


def get_db_engine():
    """Get database engine (singleton)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,  # Verify connections before using
        )
        logger.info(f"Database engine created: {settings.database_url.split('@')[-1]}")
    return _engine


def get_session_factory():
    """Get database session factory (singleton)."""
    global _SessionLocal
    if _SessionLocal is None:
        engine = get_db_engine()
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        logger.info("Database session factory created")
    return _SessionLocal


def get_db() -> Generator[Session, None, None]:
    """
    Get database session.

    Use as FastAPI dependency:
        @app.get("/endpoint")
        def endpoint(db: Session = Depends(get_db)):
            ...
    """
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID", "-")


# ========== Services ==========


def get_platform_manager(db: Session = Depends(get_db)) -> PlatformManager:
    return PlatformManager(db)


def get_listing_service(
    db: Session = Depends(get_db),
    manager: PlatformManager = Depends(get_platform_manager),
) -> ListingService:
    return ListingService(db, manager)


def get_webhook_processor(
    db: Session = Depends(get_db),
    manager: PlatformManager = Depends(get_platform_manager),
) -> WebhookProcessor:
    return WebhookProcessor(db, manager)


def get_inventory_service(db: Session = Depends(get_db)) -> InventoryService:
    return InventoryService(db)


def get_price_search_service(db: Session = Depends(get_db)) -> WebPriceSearchService:
    return WebPriceSearchService(db)


# ========== Resource lookups ==========


def get_store(store_id: int, db: Session = Depends(get_db)) -> Store:
    store = db.get(Store, store_id)
    if store is None:
        raise ResourceNotFoundError("Store", store_id)
    return store


def get_connection(connection_id: int, db: Session = Depends(get_db)) -> StoreMarketplace:
    connection = StoreMarketplace.find_active(db, connection_id)
    if connection is None:
        raise ResourceNotFoundError("Connection", connection_id)
    return connection


def get_product(product_id: int, db: Session = Depends(get_db)) -> Product:
    product = db.get(Product, product_id)
    if product is None:
        raise ResourceNotFoundError("Product", product_id)
    return product


def get_listing(listing_id: int, db: Session = Depends(get_db)) -> PlatformListing:
    listing = db.get(PlatformListing, listing_id)
    if listing is None:
        raise ResourceNotFoundError("Listing", listing_id)
    return listing


def get_order(order_id: int, db: Session = Depends(get_db)) -> PlatformOrder:
    order = db.get(PlatformOrder, order_id)
    if order is None:
        raise ResourceNotFoundError("Order", order_id)
    return order
