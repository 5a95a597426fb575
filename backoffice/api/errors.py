"""
Error Handlers
Custom exceptions and their HTTP rendering for FastAPI.
"""

import base64
import json
import logging
from typing import Any, Dict, Optional, Union
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response
from fastapi.exceptions import RequestValidationError

from ..db.models import InvalidStatusTransition
from ..security import InvalidStateError

logger = logging.getLogger(__name__)

FLASH_COOKIE = "flash"
ERRORS_COOKIE = "errors"
FLASH_COOKIE_MAX_AGE = 60


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def report(self) -> bool:
        """Whether the error should be written to the error log."""
        return True


class ResourceNotFoundError(APIError):
    """Exception raised when resource is not found."""

    def __init__(self, resource: str, resource_id: Union[int, str]):
        super().__init__(
            message=f"{resource} not found: {resource_id}",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id},
        )

    def report(self) -> bool:
        return False


class InvalidRequestError(APIError):
    """Exception raised for invalid requests."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message=message, status_code=status.HTTP_400_BAD_REQUEST, details=details)

    def report(self) -> bool:
        return False


class InsufficientStockError(APIError):
    """
    Raised when a stock deduction asks for more units than are available.

    This is a user-facing validation condition: it is never logged and is
    rendered according to who asked (JSON API client, Inertia page, or a
    plain web form).
    """

    def __init__(self, sku: str, requested: int, available: int):
        self.sku = sku
        self.requested = requested
        self.available = available
        super().__init__(
            message=(
                f"Insufficient stock for SKU {sku}: "
                f"requested {requested}, available {available}"
            ),
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"sku": sku, "requested": requested, "available": available},
        )

    def report(self) -> bool:
        return False

    def render(self, request: Request) -> Response:
        if is_inertia_request(request):
            return redirect_back(request, ERRORS_COOKIE, {"quantity": self.message})

        if wants_json(request):
            return JSONResponse(
                status_code=self.status_code,
                content=error_envelope(self),
            )

        return redirect_back(request, FLASH_COOKIE, {"error": self.message})


def is_inertia_request(request: Request) -> bool:
    return request.headers.get("x-inertia", "").lower() == "true"


def wants_json(request: Request) -> bool:
    accept = request.headers.get("accept", "")
    return "json" in accept or request.url.path.startswith("/api/")


def encode_cookie_payload(payload: Dict[str, Any]) -> str:
    return base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()


def decode_cookie_payload(value: str) -> Dict[str, Any]:
    return json.loads(base64.urlsafe_b64decode(value.encode()).decode())


def redirect_back(request: Request, cookie_name: str, payload: Dict[str, Any]) -> RedirectResponse:
    """303 back to the referring page, carrying one-shot data in a cookie."""
    target = request.headers.get("referer") or "/"
    response = RedirectResponse(url=target, status_code=status.HTTP_303_SEE_OTHER)
    response.set_cookie(
        cookie_name,
        encode_cookie_payload(payload),
        max_age=FLASH_COOKIE_MAX_AGE,
        httponly=True,
        samesite="lax",
    )
    return response


def error_envelope(exc: APIError, details: Optional[Any] = None) -> Dict[str, Any]:
    return {
        "error": {
            "message": exc.message,
            "type": exc.__class__.__name__,
            "details": exc.details if details is None else details,
        }
    }


def setup_error_handlers(app: FastAPI) -> None:
    """
    Set up custom error handlers for the FastAPI app.

    Args:
        app: FastAPI application instance
    """

    @app.exception_handler(InsufficientStockError)
    async def insufficient_stock_handler(request: Request, exc: InsufficientStockError):
        """Render stock errors per client type; never logged."""
        return exc.render(request)

    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError):
        """Handle custom API errors."""
        if exc.report():
            logger.error(
                f"API error: {exc.message}",
                extra={
                    "status_code": exc.status_code,
                    "details": exc.details,
                    "path": request.url.path,
                },
            )

        return JSONResponse(status_code=exc.status_code, content=error_envelope(exc))

    @app.exception_handler(InvalidStatusTransition)
    async def status_transition_handler(request: Request, exc: InvalidStatusTransition):
        """Handle listing status machine violations."""
        logger.warning(f"Rejected listing transition: {exc}", extra={"path": request.url.path})

        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "error": {
                    "message": str(exc),
                    "type": "InvalidStatusTransition",
                    "details": {"current": exc.current, "target": exc.target},
                }
            },
        )

    @app.exception_handler(InvalidStateError)
    async def invalid_state_handler(request: Request, exc: InvalidStateError):
        """Handle tampered or expired OAuth state."""
        logger.warning(f"Invalid OAuth state: {exc}", extra={"path": request.url.path})

        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": {"message": str(exc), "type": "InvalidStateError"}},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors."""
        logger.warning(f"Validation error: {exc}", extra={"path": request.url.path})

        # Convert error details to JSON-serializable format
        errors = []
        for error in exc.errors():
            errors.append(
                {
                    "loc": error.get("loc", []),
                    "msg": str(error.get("msg", "")),
                    "type": error.get("type", ""),
                }
            )

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": {
                    "message": "Request validation failed",
                    "type": "ValidationError",
                    "details": errors,
                }
            },
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        """Handle value errors."""
        logger.warning(f"Value error: {exc}", extra={"path": request.url.path})

        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": {
                    "message": str(exc),
                    "type": "ValueError",
                }
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.error(f"Unexpected error: {exc}", exc_info=True, extra={"path": request.url.path})

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "message": "An unexpected error occurred",
                    "type": "InternalServerError",
                }
            },
        )
