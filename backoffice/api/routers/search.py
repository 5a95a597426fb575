"""
Price Search Endpoint
POST /api/v1/search/prices - Comparable prices from the web.
"""

import logging

from fastapi import APIRouter, Depends

from ..dependencies import get_price_search_service, get_request_id
from ..schemas.search import PriceSearchRequest, PriceSearchResponse
from ...search import WebPriceSearchService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["search"])


@router.post("/search/prices", response_model=PriceSearchResponse)
def search_prices(
    request: PriceSearchRequest,
    service: WebPriceSearchService = Depends(get_price_search_service),
    request_id: str = Depends(get_request_id),
) -> PriceSearchResponse:
    criteria = request.model_dump(exclude={"store_id"}, exclude_none=True)
    logger.info(f"Price search for store {request.store_id}", extra={"request_id": request_id})

    return PriceSearchResponse(**service.search_prices(request.store_id, criteria))
