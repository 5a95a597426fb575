"""
Price search schemas.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class PriceSearchRequest(BaseModel):
    store_id: int
    title: Optional[str] = None
    category: Optional[str] = None
    precious_metal: Optional[str] = Field(None, description="Metal code, e.g. gold_14k")
    attributes: Dict[str, Any] = Field(default_factory=dict)


class PriceSummary(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None
    avg: Optional[float] = None
    median: Optional[float] = None
    count: int = 0


class PriceSearchResponse(BaseModel):
    listings: List[Dict[str, Any]]
    summary: PriceSummary
    query: Optional[str] = None
    searched_at: Optional[str] = None
    error: Optional[str] = None
