"""
Health Check Endpoints
Endpoints for health checks and status monitoring.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, status
from sqlalchemy import text
from sqlalchemy.orm import Session

from ..config import APISettings, get_settings
from ..dependencies import get_db
from ...cache import get_redis_cache
from ...platforms import PlatformManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> Dict[str, str]:
    """Basic liveness check."""
    return {"status": "healthy", "timestamp": _now()}


@router.get("/status", status_code=status.HTTP_200_OK)
def status_check(
    settings: APISettings = Depends(get_settings),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """
    Detailed status check.

    Checks the database and Redis, and lists the supported platforms.
    Any failing component marks the service ``degraded``.
    """
    status_info: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": _now(),
        "version": settings.version,
        "components": {},
        "platforms": PlatformManager.supported_platforms(),
    }

    try:
        db.execute(text("SELECT 1"))
        status_info["components"]["database"] = {
            "status": "healthy",
            "url": settings.database_url.split("@")[-1],  # Hide credentials
        }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        status_info["components"]["database"] = {"status": "unhealthy", "error": str(e)}
        status_info["status"] = "degraded"

    redis_healthy = get_redis_cache().ping()
    status_info["components"]["redis"] = {"status": "healthy" if redis_healthy else "unhealthy"}
    if not redis_healthy:
        status_info["status"] = "degraded"

    return status_info
