"""
Request Logging Middleware
Logs each request once it completes, tagged with the request id.
"""

import logging
import re
import time
import uuid
from typing import Any, Callable, Dict

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Load balancer health checks; only failures are logged
QUIET_PATHS = ("/health",)

WEBHOOK_PATH = re.compile(r"^/webhooks/(?P<platform>[\w-]+)/(?P<connection_id>\d+)")
STORE_PATH = re.compile(r"^/api/v1/stores/(?P<store_id>\d+)/")


def request_context(request: Request, request_id: str) -> Dict[str, Any]:
    """Log fields for a request: id, method, path, plus the store or webhook source it targets."""
    path = request.url.path
    context: Dict[str, Any] = {
        "request_id": request_id,
        "method": request.method,
        "path": path,
        "client": request.client.host if request.client else None,
    }

    webhook = WEBHOOK_PATH.match(path)
    if webhook:
        context["platform"] = webhook.group("platform")
        context["connection_id"] = int(webhook.group("connection_id"))
    store = STORE_PATH.match(path)
    if store:
        context["store_id"] = int(store.group("store_id"))
    return context


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one line per request with its status and duration.

    Incoming ``X-Request-ID`` values are reused, otherwise one is generated;
    either way it is echoed on the response. 5xx responses log at ERROR and
    4xx at WARNING, so rejected webhook deliveries stand out.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        context = request_context(request, request_id)

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"{request.method} {request.url.path} raised {type(e).__name__}",
                exc_info=True,
                extra={**context, "duration_ms": round((time.perf_counter() - start_time) * 1000, 2)},
            )
            raise

        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        status_code = response.status_code

        if status_code >= 500:
            level = logging.ERROR
        elif status_code >= 400:
            level = logging.WARNING
        elif request.url.path in QUIET_PATHS:
            level = None
        else:
            level = logging.INFO

        if level is not None:
            logger.log(
                level,
                f"{request.method} {request.url.path} -> {status_code} ({duration_ms}ms)",
                extra={**context, "status_code": status_code, "duration_ms": duration_ms},
            )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response
