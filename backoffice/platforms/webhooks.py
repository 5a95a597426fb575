"""
Webhook Processing
Stores inbound marketplace webhooks and dispatches them by event type.
"""

import logging
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from ..db.models import (
    ListingStatus,
    PlatformListing,
    PlatformOrder,
    StoreMarketplace,
    WebhookLog,
)
from .manager import PlatformManager

logger = logging.getLogger(__name__)

LISTING_EVENTS = ("item_sold", "item_closed", "item_suspended")

LISTING_EVENT_STATUS = {
    "item_closed": ListingStatus.ENDED.value,
    "item_suspended": ListingStatus.ERROR.value,
}

ORDER_EVENTS = [
    "orders/create",
    "orders/updated",
    "orders/paid",
    "orders/fulfilled",
    "orders/cancelled",
    "order.created",
    "order.updated",
    "order.paid",
    "order.completed",
    "order_change",
    "receipt.created",
    "receipt.updated",
    "woocommerce_order_created",
    "woocommerce_order_updated",
    "po_created",
    "po_line_updated",
    "order_status_change",
]

REFUND_EVENTS = [
    "refunds/create",
    "refunds/updated",
    "refund.created",
    "refund.updated",
    "order.refunded",
]

# Non-order topics the platform services act on directly
PLATFORM_EVENTS = [
    "products/update",
    "product.updated",
    "product.deleted",
    "marketplace_account_deletion",
    "listings_item_status_change",
    "item_updated",
]


def _matches(event_type: str, events) -> bool:
    return any(event in event_type or event_type in event for event in events)


def is_listing_event(event_type: str) -> bool:
    return event_type in LISTING_EVENTS


def is_refund_event(event_type: str) -> bool:
    return _matches(event_type, REFUND_EVENTS) or "refund" in event_type


def is_order_event(event_type: str) -> bool:
    return _matches(event_type, ORDER_EVENTS) or "order" in event_type


def is_platform_event(event_type: str) -> bool:
    return event_type in PLATFORM_EVENTS


def resolve_topic(headers: Mapping[str, str], payload: Dict[str, Any]) -> Optional[str]:
    """
    Event type of an inbound webhook.

    Shopify and WooCommerce send it in a header; eBay in ``metadata.topic``,
    Amazon in ``NotificationType`` and Walmart in ``source.eventType``.
    """
    topic = headers.get("x-shopify-topic") or headers.get("x-wc-webhook-topic")
    if topic:
        return topic
    if not isinstance(payload, dict):
        return None

    metadata = payload.get("metadata")
    if isinstance(metadata, dict) and metadata.get("topic"):
        return metadata["topic"]
    if payload.get("NotificationType"):
        return payload["NotificationType"]
    source = payload.get("source")
    if isinstance(source, dict) and source.get("eventType"):
        return source["eventType"]
    return payload.get("eventType")


def listing_id_from_payload(payload: Dict[str, Any]) -> Optional[str]:
    resource = payload.get("resource") or {}
    for value in (
        resource.get("listingId"),
        resource.get("itemId"),
        payload.get("listingId"),
        payload.get("itemId"),
    ):
        if value:
            return str(value)
    return None


class WebhookProcessor:
    """Records webhook deliveries and processes stored ones."""

    def __init__(self, db: Session, manager: Optional[PlatformManager] = None):
        self.db = db
        self.manager = manager or PlatformManager(db)

    def record(
        self,
        connection: StoreMarketplace,
        event_type: str,
        payload: Dict[str, Any],
    ) -> WebhookLog:
        external_id = payload.get("id") if isinstance(payload, dict) else None
        log = WebhookLog(
            store_marketplace_id=connection.id,
            platform=connection.platform,
            event_type=event_type,
            payload=payload,
            external_id=str(external_id) if external_id is not None else None,
            status=WebhookLog.STATUS_PENDING,
            attempts=0,
        )
        self.db.add(log)
        self.db.commit()

        logger.info(
            f"Recorded {connection.platform} webhook {event_type}",
            extra={"webhook_log_id": log.id, "connection_id": connection.id},
        )
        return log

    def process(self, log: WebhookLog) -> WebhookLog:
        """
        Process one stored webhook.

        Raises the underlying exception while the log can still be retried,
        so the task queue schedules another attempt.
        """
        log.mark_as_processing()
        self.db.commit()

        event_type = (log.event_type or "").lower()

        try:
            if is_listing_event(event_type):
                self.process_listing_event(log, event_type)
            elif is_refund_event(event_type) or is_order_event(event_type) or is_platform_event(event_type):
                self.dispatch_to_platform(log, event_type)
            else:
                log.mark_as_skipped(f"Unhandled event type: {event_type}")
        except Exception as e:
            self.db.rollback()
            log.mark_as_failed(str(e))
            self.db.commit()
            logger.error(
                f"Webhook {log.id} ({event_type}) failed on attempt {log.attempts}: {e}",
                extra={"webhook_log_id": log.id},
            )
            if log.can_retry():
                raise
            return log

        self.db.commit()
        return log

    def process_listing_event(self, log: WebhookLog, event_type: str) -> None:
        connection = self._marketplace(log)

        external_id = listing_id_from_payload(log.payload or {})
        if not external_id:
            log.mark_as_skipped("No listing ID in payload")
            return

        listing = PlatformListing.find_by_external_id(self.db, connection.id, external_id)
        if listing is None:
            log.mark_as_skipped(f"Listing not found for external ID: {external_id}")
            return

        new_status = LISTING_EVENT_STATUS.get(event_type)
        if new_status is not None:
            if not listing.can_transition_to(new_status):
                log.mark_as_skipped(
                    f"Listing {listing.id} cannot move from {listing.status} to {new_status}"
                )
                return
            listing.transition_to(new_status)
            if new_status == ListingStatus.ERROR.value:
                listing.last_error = "Listing suspended by the platform"

        log.mark_as_completed(
            {"listing_id": listing.id, "event": event_type, "new_status": new_status}
        )

    def dispatch_to_platform(self, log: WebhookLog, event_type: str) -> None:
        connection = self._marketplace(log)
        service = self.manager.for_connection(connection)

        result = service.handle_webhook(log.event_type, log.payload or {}, connection)

        response: Dict[str, Any] = {"processed_event": event_type}
        if isinstance(result, PlatformOrder):
            response["order_id"] = result.id
            response["status"] = result.status
            log.external_id = result.external_order_id
        elif isinstance(result, PlatformListing):
            response["listing_id"] = result.id

        log.mark_as_completed(response)

    def _marketplace(self, log: WebhookLog) -> StoreMarketplace:
        connection = log.marketplace
        if connection is None:
            raise RuntimeError("No store marketplace found for webhook")
        return connection
