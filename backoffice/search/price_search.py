"""
Web Price Search
Comparable prices from Google Shopping and eBay sold listings.
"""

import logging
import re
from datetime import datetime, timezone
from statistics import median
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..db.models import StoreIntegration
from .serpapi import SerpApiProvider

logger = logging.getLogger(__name__)

METAL_LABELS = {
    "gold_10k": "10K Gold",
    "gold_14k": "14K Gold",
    "gold_18k": "18K Gold",
    "gold_22k": "22K Gold",
    "gold_24k": "24K Gold",
    "silver": "Sterling Silver",
    "platinum": "Platinum",
    "palladium": "Palladium",
}

SKIPPED_ATTRIBUTES = {"dwt", "weight", "weight_dwt"}

MAX_QUERY_TERMS = 5


def empty_summary() -> Dict[str, Any]:
    return {"min": None, "max": None, "avg": None, "median": None, "count": 0}


def build_search_query(criteria: Dict[str, Any]) -> str:
    parts: List[str] = []

    if criteria.get("title"):
        parts.append(criteria["title"])

    metal_label = METAL_LABELS.get(criteria.get("precious_metal") or "")
    if metal_label:
        parts.append(metal_label)

    if criteria.get("category"):
        parts.append(criteria["category"])

    attributes = criteria.get("attributes")
    if isinstance(attributes, dict):
        for key, value in attributes.items():
            if key in SKIPPED_ATTRIBUTES:
                continue
            if value and isinstance(value, str) and len(value) < 50:
                parts.append(value)

    return " ".join(parts[:MAX_QUERY_TERMS])


def extract_price(value: Any) -> Optional[float]:
    """Numeric price from a number or a string such as ``"$1,299.99"``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = re.sub(r"[^0-9.]", "", value)
        try:
            price = float(cleaned)
        except ValueError:
            return None
        return price if price > 0 else None
    return None


def price_summary(listings: List[Dict[str, Any]]) -> Dict[str, Any]:
    prices = [listing["price"] for listing in listings if listing.get("price")]
    if not prices:
        return empty_summary()

    return {
        "min": min(prices),
        "max": max(prices),
        "avg": round(sum(prices) / len(prices), 2),
        "median": round(median(prices), 2),
        "count": len(prices),
    }


class WebPriceSearchService:
    def __init__(self, db: Session, provider: Optional[SerpApiProvider] = None):
        self.db = db
        self.provider = provider or SerpApiProvider()

    def search_prices(self, store_id: int, criteria: Dict[str, Any]) -> Dict[str, Any]:
        integration = StoreIntegration.find_active_for_store(
            self.db, store_id, StoreIntegration.PROVIDER_SERPAPI
        )
        if integration is None:
            return {
                "error": "SerpAPI integration not configured. Please configure it in Settings > Integrations.",
                "listings": [],
                "summary": empty_summary(),
            }

        self.provider.set_integration(integration)
        query = build_search_query(criteria)
        if not query.strip():
            return {"error": "No search criteria provided", "listings": [], "summary": empty_summary()}

        google_shopping = self.provider.search_google_shopping(query)
        ebay_sold = self.provider.search_ebay_sold(query)
        self.db.commit()

        searched_at = datetime.now(timezone.utc).isoformat()

        if "error" in google_shopping and "error" in ebay_sold:
            return {
                "error": google_shopping["error"],
                "listings": [],
                "summary": empty_summary(),
                "searched_at": searched_at,
                "query": query,
            }

        listings = normalize_google_shopping(google_shopping) + normalize_ebay_sold(ebay_sold)
        listings.sort(key=lambda listing: listing["price"])

        logger.info(
            f"Price search for store {store_id} found {len(listings)} listings",
            extra={"query": query},
        )
        return {
            "listings": listings,
            "summary": price_summary(listings),
            "searched_at": searched_at,
            "query": query,
        }


def normalize_google_shopping(results: Dict[str, Any]) -> List[Dict[str, Any]]:
    listings = []
    for item in results.get("shopping_results") or []:
        raw = item.get("price") if item.get("price") is not None else item.get("extracted_price")
        price = extract_price(raw)
        if price is None:
            continue
        listings.append(
            {
                "source": "Google Shopping",
                "title": item.get("title") or "Unknown",
                "price": price,
                "link": item.get("link"),
                "image": item.get("thumbnail"),
                "seller": item.get("source"),
                "condition": item.get("second_hand_condition"),
            }
        )
    return listings


def normalize_ebay_sold(results: Dict[str, Any]) -> List[Dict[str, Any]]:
    listings = []
    for item in results.get("organic_results") or []:
        price_data = item.get("price")
        if isinstance(price_data, dict):
            raw = price_data.get("raw") if price_data.get("raw") is not None else price_data.get("extracted")
            price = extract_price(raw)
        else:
            price = extract_price(price_data)
        if price is None:
            continue
        listings.append(
            {
                "source": "eBay (Sold)",
                "title": item.get("title") or "Unknown",
                "price": price,
                "link": item.get("link"),
                "image": item.get("thumbnail"),
                "sold_date": item.get("date"),
                "condition": item.get("condition"),
            }
        )
    return listings
