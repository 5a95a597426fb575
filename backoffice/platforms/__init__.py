"""
Marketplace Integrations
Platform services, listing orchestration and webhook processing.
"""

from .amazon import AmazonService
from .base import BasePlatformService, PlatformInterface
from .ebay import EbayService
from .etsy import EtsyService
from .exceptions import (
    ListingSyncError,
    OAuthError,
    PlatformAPIError,
    PlatformNotConfiguredError,
    UnsupportedPlatformError,
)
from .listings import ListingService
from .manager import PlatformManager
from .shopify import ShopifyService
from .walmart import WalmartService
from .webhooks import WebhookProcessor, resolve_topic
from .woocommerce import WooCommerceService

__all__ = [
    "PlatformInterface",
    "BasePlatformService",
    "ShopifyService",
    "EbayService",
    "EtsyService",
    "WooCommerceService",
    "AmazonService",
    "WalmartService",
    "PlatformManager",
    "ListingService",
    "WebhookProcessor",
    "resolve_topic",
    "PlatformAPIError",
    "UnsupportedPlatformError",
    "PlatformNotConfiguredError",
    "OAuthError",
    "ListingSyncError",
]
