"""
Webhook Endpoint
POST /webhooks/{platform}/{connection_id} - Receive marketplace events.
"""

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from ..config import APISettings, get_settings
from ..dependencies import get_db, get_webhook_processor
from ..errors import APIError, InvalidRequestError, ResourceNotFoundError
from ...db.models import Platform, StoreMarketplace
from ...platforms import WebhookProcessor, resolve_topic
from ...tasks.platforms import process_webhook

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/{platform}/{connection_id}", status_code=status.HTTP_202_ACCEPTED)
async def receive_webhook(
    platform: str,
    connection_id: int,
    request: Request,
    db: Session = Depends(get_db),
    processor: WebhookProcessor = Depends(get_webhook_processor),
    settings: APISettings = Depends(get_settings),
) -> Dict[str, Any]:
    """
    Store the delivery and queue it for processing.

    Shopify deliveries are HMAC-verified when a client secret is configured.
    """
    connection = StoreMarketplace.find_active(db, connection_id)
    if connection is None or connection.platform != platform:
        raise ResourceNotFoundError("Connection", connection_id)

    body = await request.body()

    if platform == Platform.SHOPIFY.value and settings.verify_webhook_signatures:
        service = processor.manager.get(platform)
        if service.services.shopify_client_secret and not service.verify_webhook(
            body, request.headers.get("x-shopify-hmac-sha256")
        ):
            logger.warning(f"Rejected Shopify webhook with bad signature for connection {connection_id}")
            raise APIError("Invalid webhook signature", status_code=status.HTTP_401_UNAUTHORIZED)

    try:
        payload = json.loads(body or b"{}")
    except ValueError as e:
        raise InvalidRequestError("Webhook body is not valid JSON") from e
    if not isinstance(payload, dict):
        raise InvalidRequestError("Webhook body must be a JSON object")

    topic = resolve_topic(request.headers, payload)
    if not topic:
        raise InvalidRequestError("Webhook topic could not be determined")

    log = processor.record(connection, topic, payload)
    process_webhook.delay(log.id)

    return {"webhook_log_id": log.id, "status": "queued", "event_type": topic}
