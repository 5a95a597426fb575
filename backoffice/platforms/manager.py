"""
Platform Manager
Resolves platform names and connections to their service implementations.
"""

import logging
from typing import Dict, List, Type

from sqlalchemy.orm import Session

from ..db.models import Platform, StoreMarketplace
from .amazon import AmazonService
from .base import BasePlatformService
from .ebay import EbayService
from .etsy import EtsyService
from .exceptions import UnsupportedPlatformError
from .shopify import ShopifyService
from .walmart import WalmartService
from .woocommerce import WooCommerceService

logger = logging.getLogger(__name__)


class PlatformManager:
    """
    Registry of platform services bound to one database session.

    Extra keyword arguments (settings, http session, cache) are forwarded to
    every service it builds.
    """

    SERVICES: Dict[str, Type[BasePlatformService]] = {
        Platform.SHOPIFY.value: ShopifyService,
        Platform.EBAY.value: EbayService,
        Platform.ETSY.value: EtsyService,
        Platform.WOOCOMMERCE.value: WooCommerceService,
        Platform.AMAZON.value: AmazonService,
        Platform.WALMART.value: WalmartService,
    }

    def __init__(self, db: Session, **service_kwargs):
        self.db = db
        self.service_kwargs = service_kwargs
        self._services: Dict[str, BasePlatformService] = {}

    def get(self, platform) -> BasePlatformService:
        if isinstance(platform, Platform):
            platform = platform.value
        platform = (platform or "").lower()

        if platform not in self.SERVICES:
            raise UnsupportedPlatformError(platform)

        if platform not in self._services:
            self._services[platform] = self.SERVICES[platform](self.db, **self.service_kwargs)
            logger.debug(f"Created {platform} service")

        return self._services[platform]

    def for_connection(self, connection: StoreMarketplace) -> BasePlatformService:
        return self.get(connection.platform)

    def supports(self, platform: str) -> bool:
        return (platform or "").lower() in self.SERVICES

    @classmethod
    def supported_platforms(cls) -> List[str]:
        return list(cls.SERVICES.keys())
