"""
Platform Connection Endpoints
OAuth connect/callback and connection maintenance.
"""

import logging
from typing import Any, Dict, List
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from ..config import APISettings, get_settings
from ..dependencies import get_connection, get_db, get_platform_manager, get_request_id, get_store
from ..errors import ResourceNotFoundError
from ..schemas.platforms import (
    ConnectionResponse,
    InventorySyncQueued,
    ValidationResult,
    WalmartCredentials,
    WooCommerceCredentials,
)
from ...db.models import Platform, Store, StoreMarketplace
from ...platforms import PlatformManager
from ...tasks.platforms import sync_inventory as sync_inventory_task

logger = logging.getLogger(__name__)

router = APIRouter(tags=["platforms"])


@router.get(
    "/api/v1/stores/{store_id}/platforms/{platform}/connect",
    status_code=status.HTTP_307_TEMPORARY_REDIRECT,
)
def connect_platform(
    platform: str,
    request: Request,
    store: Store = Depends(get_store),
    manager: PlatformManager = Depends(get_platform_manager),
    request_id: str = Depends(get_request_id),
) -> RedirectResponse:
    """Send the merchant to the platform's authorization page."""
    service = manager.get(platform)
    url = service.connect(store, dict(request.query_params))

    logger.info(f"Starting {platform} connection for store {store.id}", extra={"request_id": request_id})
    return RedirectResponse(url=url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.post(
    "/api/v1/stores/{store_id}/platforms/woocommerce/credentials",
    response_model=ConnectionResponse,
    status_code=status.HTTP_201_CREATED,
)
def connect_woocommerce(
    credentials: WooCommerceCredentials,
    store: Store = Depends(get_store),
    manager: PlatformManager = Depends(get_platform_manager),
) -> ConnectionResponse:
    service = manager.get(Platform.WOOCOMMERCE)
    connection = service.connect_with_credentials(
        store,
        {
            "site_url": str(credentials.site_url),
            "consumer_key": credentials.consumer_key,
            "consumer_secret": credentials.consumer_secret,
        },
    )
    return ConnectionResponse.model_validate(connection)


@router.post(
    "/api/v1/stores/{store_id}/platforms/walmart/credentials",
    response_model=ConnectionResponse,
    status_code=status.HTTP_201_CREATED,
)
def connect_walmart(
    credentials: WalmartCredentials,
    store: Store = Depends(get_store),
    manager: PlatformManager = Depends(get_platform_manager),
) -> ConnectionResponse:
    connection = manager.get(Platform.WALMART).connect_with_credentials(store, credentials.model_dump())
    return ConnectionResponse.model_validate(connection)


@router.get("/platforms/{platform}/callback")
def platform_callback(
    platform: str,
    request: Request,
    db: Session = Depends(get_db),
    manager: PlatformManager = Depends(get_platform_manager),
    settings: APISettings = Depends(get_settings),
) -> RedirectResponse:
    """
    OAuth redirect target.

    The encrypted ``state`` identifies the store the connection belongs to.
    """
    service = manager.get(platform)
    params: Dict[str, Any] = dict(request.query_params)

    state = service.decrypt_state(params.get("state"))
    store = db.get(Store, state.get("store_id"))
    if store is None:
        raise ResourceNotFoundError("Store", state.get("store_id"))

    connection = service.handle_callback(store, params)

    try:
        service.register_webhooks(connection)
    except Exception as e:
        logger.warning(f"Webhook registration failed for connection {connection.id}: {e}")

    query = urlencode({"connected": platform, "connection": connection.id})
    return RedirectResponse(
        url=f"{settings.app_url}/settings/marketplaces?{query}",
        status_code=status.HTTP_303_SEE_OTHER,
    )


@router.post("/api/v1/connections/{connection_id}/refresh", response_model=ConnectionResponse)
def refresh_connection(
    connection: StoreMarketplace = Depends(get_connection),
    manager: PlatformManager = Depends(get_platform_manager),
) -> ConnectionResponse:
    connection = manager.for_connection(connection).refresh_token(connection)
    return ConnectionResponse.model_validate(connection)


@router.post("/api/v1/connections/{connection_id}/validate", response_model=ValidationResult)
def validate_connection(
    connection: StoreMarketplace = Depends(get_connection),
    manager: PlatformManager = Depends(get_platform_manager),
) -> ValidationResult:
    valid = manager.for_connection(connection).validate_credentials(connection)
    return ValidationResult(connection_id=connection.id, valid=valid)


@router.delete("/api/v1/connections/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
def disconnect(
    connection: StoreMarketplace = Depends(get_connection),
    manager: PlatformManager = Depends(get_platform_manager),
) -> None:
    manager.for_connection(connection).disconnect(connection)


@router.post("/api/v1/connections/{connection_id}/webhooks", status_code=status.HTTP_202_ACCEPTED)
def register_webhooks(
    connection: StoreMarketplace = Depends(get_connection),
    manager: PlatformManager = Depends(get_platform_manager),
) -> Dict[str, Any]:
    service = manager.for_connection(connection)
    service.register_webhooks(connection)
    return {"connection_id": connection.id, "webhook_url": service.get_webhook_url(connection)}


@router.get("/api/v1/connections/{connection_id}/categories")
def list_categories(
    connection: StoreMarketplace = Depends(get_connection),
    manager: PlatformManager = Depends(get_platform_manager),
) -> List[Dict[str, Any]]:
    return manager.for_connection(connection).get_categories(connection)


@router.post(
    "/api/v1/connections/{connection_id}/sync-inventory",
    response_model=InventorySyncQueued,
    status_code=status.HTTP_202_ACCEPTED,
)
def queue_inventory_sync(connection: StoreMarketplace = Depends(get_connection)) -> InventorySyncQueued:
    result = sync_inventory_task.delay(connection.id)
    logger.info(f"Queued inventory sync for connection {connection.id}", extra={"task_id": result.id})
    return InventorySyncQueued(connection_id=connection.id, task_id=result.id)
