"""
Order Endpoints
Pull marketplace orders and push fulfillment back.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status

from ..dependencies import get_connection, get_order, get_platform_manager
from ..schemas.platforms import FulfillmentRequest, OrderPullRequest, OrderPullResponse, OrderResponse
from ...db.models import PlatformOrder, StoreMarketplace
from ...platforms import PlatformManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["orders"])


@router.post("/connections/{connection_id}/orders/pull", response_model=OrderPullResponse)
def pull_orders(
    request: Optional[OrderPullRequest] = None,
    connection: StoreMarketplace = Depends(get_connection),
    manager: PlatformManager = Depends(get_platform_manager),
) -> OrderPullResponse:
    orders = manager.for_connection(connection).pull_orders(
        connection, since=request.since if request else None
    )
    return OrderPullResponse(
        connection_id=connection.id,
        imported=len(orders),
        orders=[OrderResponse.model_validate(order) for order in orders],
    )


@router.post(
    "/orders/{order_id}/fulfillment",
    response_model=OrderResponse,
    status_code=status.HTTP_200_OK,
)
def fulfill_order(
    fulfillment: FulfillmentRequest,
    order: PlatformOrder = Depends(get_order),
    manager: PlatformManager = Depends(get_platform_manager),
) -> OrderResponse:
    service = manager.for_connection(order.marketplace)
    service.update_order_fulfillment(order, fulfillment.model_dump(exclude_none=True))

    logger.info(f"Fulfillment sent for order {order.external_order_id}", extra={"order_id": order.id})
    return OrderResponse.model_validate(order)
