"""
API Routers
FastAPI route handlers for different endpoints.
"""

from .health import router as health_router
from .inventory import router as inventory_router
from .listings import router as listings_router
from .orders import router as orders_router
from .platforms import router as platforms_router
from .search import router as search_router
from .webhooks import router as webhooks_router

__all__ = [
    "health_router",
    "platforms_router",
    "listings_router",
    "orders_router",
    "inventory_router",
    "webhooks_router",
    "search_router",
]
