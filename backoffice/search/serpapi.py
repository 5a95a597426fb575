"""
SerpAPI Provider
Google Shopping and eBay sold-listing searches through serpapi.com.
"""

import logging
from typing import Any, Dict, Optional

import requests

from ..config import ServicesSettings, get_services_settings
from ..db.models import StoreIntegration

logger = logging.getLogger(__name__)


class SerpApiProvider:
    """
    Thin wrapper over the SerpAPI search endpoint.

    Searches never raise: failures come back as ``{"error": message}``.
    Each successful search records one use on the bound integration.
    """

    TIMEOUT_SECONDS = 30

    def __init__(
        self,
        integration: Optional[StoreIntegration] = None,
        session: Optional[requests.Session] = None,
        settings: Optional[ServicesSettings] = None,
    ):
        self.integration = integration
        self.session = session or requests.Session()
        self.base_url = (settings or get_services_settings()).serpapi_base_url

    def set_integration(self, integration: Optional[StoreIntegration]) -> "SerpApiProvider":
        self.integration = integration
        return self

    def is_configured(self) -> bool:
        return self.integration is not None and bool(self.integration.api_key)

    def search_google_shopping(self, query: str) -> Dict[str, Any]:
        return self._search(
            {"engine": "google_shopping", "q": query, "num": 20},
            query,
            source="google_shopping",
        )

    def search_ebay_sold(self, query: str) -> Dict[str, Any]:
        return self._search(
            {"engine": "ebay", "_nkw": query, "LH_Sold": "1", "LH_Complete": "1"},
            query,
            source="ebay_sold",
        )

    def _search(self, params: Dict[str, Any], query: str, source: str) -> Dict[str, Any]:
        if not self.is_configured():
            return {"error": "SerpAPI not configured"}

        try:
            response = self.session.get(
                self.base_url,
                params={**params, "api_key": self.integration.api_key},
                timeout=self.TIMEOUT_SECONDS,
            )

            if not response.ok:
                logger.warning(
                    f"SerpAPI {source} search failed with status {response.status_code}",
                    extra={"query": query, "status": response.status_code, "body": response.text[:500]},
                )
                return {"error": "Search request failed"}

            results = response.json()
            self.integration.record_usage()
            return results
        except Exception as e:
            logger.error(f"SerpAPI {source} search error: {e}", extra={"query": query})
            return {"error": str(e)}
