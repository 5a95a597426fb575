"""
Search Providers
Third-party web search used for price research.
"""

from .price_search import WebPriceSearchService
from .serpapi import SerpApiProvider

__all__ = ["SerpApiProvider", "WebPriceSearchService"]
