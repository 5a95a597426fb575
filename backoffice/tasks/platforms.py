"""
Marketplace Tasks
Webhook processing, inventory push, order pull and token refresh.
"""

import logging
from typing import Any, Dict, List, Optional

from .celery_app import app

logger = logging.getLogger(__name__)


def _active_connections(db) -> List[Any]:
    from ..db.models import ConnectionStatus, StoreMarketplace

    return (
        db.query(StoreMarketplace)
        .filter(
            StoreMarketplace.deleted_at.is_(None),
            StoreMarketplace.status == ConnectionStatus.ACTIVE.value,
        )
        .all()
    )


@app.task(bind=True, name="tasks.process_webhook", max_retries=3, default_retry_delay=60)
def process_webhook(self, webhook_log_id: int) -> Dict[str, Any]:
    """
    Process one stored webhook delivery.

    The processor re-raises while the log has attempts left; those
    failures are retried after ``default_retry_delay`` seconds.
    """
    from ..db.session import SessionLocal
    from ..db.models import WebhookLog
    from ..platforms import WebhookProcessor

    db = SessionLocal()
    try:
        log = db.get(WebhookLog, webhook_log_id)
        if log is None:
            logger.warning(f"Webhook log {webhook_log_id} not found")
            return {"status": "error", "error": "Webhook log not found"}

        try:
            log = WebhookProcessor(db).process(log)
        except Exception as e:
            logger.error(f"Error processing webhook {webhook_log_id}: {e}", exc_info=True)
            raise self.retry(exc=e)

        return {"status": log.status, "webhook_log_id": log.id, "event_type": log.event_type}
    finally:
        db.close()


@app.task(bind=True, name="tasks.sync_inventory", max_retries=2, default_retry_delay=120)
def sync_inventory(self, connection_id: int) -> Dict[str, Any]:
    from ..db.session import SessionLocal
    from ..db.models import StoreMarketplace
    from ..platforms import PlatformManager

    db = SessionLocal()
    try:
        connection = StoreMarketplace.find_active(db, connection_id)
        if connection is None:
            return {"status": "error", "error": "Connection not found", "connection_id": connection_id}

        counts = PlatformManager(db).for_connection(connection).sync_inventory(connection)
        return {"status": "success", "connection_id": connection_id, **counts}
    except Exception as e:
        logger.error(f"Inventory sync failed for connection {connection_id}: {e}", exc_info=True)
        try:
            raise self.retry(exc=e)
        except self.MaxRetriesExceededError:
            return {"status": "error", "connection_id": connection_id, "error": str(e)}
    finally:
        db.close()


@app.task(bind=True, name="tasks.pull_orders", max_retries=2, default_retry_delay=120)
def pull_orders(self, connection_id: int, since: Optional[str] = None) -> Dict[str, Any]:
    """Import orders created after ``since`` (defaults to the start of the last completed order pull)."""
    from ..db.session import SessionLocal
    from ..db.models import StoreMarketplace
    from ..platforms import PlatformManager

    db = SessionLocal()
    try:
        connection = StoreMarketplace.find_active(db, connection_id)
        if connection is None:
            return {"status": "error", "error": "Connection not found", "connection_id": connection_id}

        if since is None and connection.last_order_sync_at is not None:
            since = connection.last_order_sync_at.isoformat() + "Z"

        orders = PlatformManager(db).for_connection(connection).pull_orders(connection, since=since)
        return {"status": "success", "connection_id": connection_id, "imported": len(orders)}
    except Exception as e:
        logger.error(f"Order pull failed for connection {connection_id}: {e}", exc_info=True)
        try:
            raise self.retry(exc=e)
        except self.MaxRetriesExceededError:
            return {"status": "error", "connection_id": connection_id, "error": str(e)}
    finally:
        db.close()


@app.task(name="tasks.refresh_expiring_tokens")
def refresh_expiring_tokens(minutes_ahead: int = 30) -> Dict[str, Any]:
    from ..db.session import SessionLocal
    from ..platforms import PlatformManager

    db = SessionLocal()
    refreshed, failed = [], []
    try:
        manager = PlatformManager(db)
        for connection in _active_connections(db):
            if not connection.refresh_token or not connection.expires_within(minutes_ahead):
                continue
            try:
                manager.for_connection(connection).refresh_token(connection)
                refreshed.append(connection.id)
            except Exception as e:
                db.rollback()
                logger.warning(f"Token refresh failed for connection {connection.id}: {e}")
                failed.append(connection.id)

        logger.info(f"Token refresh: {len(refreshed)} refreshed, {len(failed)} failed")
        return {"refreshed": refreshed, "failed": failed}
    finally:
        db.close()


@app.task(name="tasks.sync_all_inventory")
def sync_all_inventory() -> Dict[str, Any]:
    from ..db.session import SessionLocal

    db = SessionLocal()
    try:
        connection_ids = [connection.id for connection in _active_connections(db)]
    finally:
        db.close()

    for connection_id in connection_ids:
        sync_inventory.delay(connection_id)

    logger.info(f"Queued inventory sync for {len(connection_ids)} connections")
    return {"queued": connection_ids}


@app.task(name="tasks.pull_all_orders")
def pull_all_orders() -> Dict[str, Any]:
    from ..db.session import SessionLocal

    db = SessionLocal()
    try:
        connection_ids = [connection.id for connection in _active_connections(db)]
    finally:
        db.close()

    for connection_id in connection_ids:
        pull_orders.delay(connection_id)

    return {"queued": connection_ids}
