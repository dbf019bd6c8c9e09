"""Exception handlers for the checkout API.

Every error response has the shape ``{"error": message, "code": CODE}``,
plus ``retryAfter`` and a ``Retry-After`` header when a dependency is
unavailable. Production responses never carry internal details: 5xx and
provider-rejection messages are replaced with generic text.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ...environment import Environment
from ...exceptions import (
    CheckoutException,
    InvalidSessionError,
    ProviderRejectedError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)

GENERIC_SERVER_ERROR = "An internal error occurred"
GENERIC_REJECTION = "Payment could not be processed. Please check your payment details."

STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "AUTHENTICATION_REQUIRED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    413: "REQUEST_ENTITY_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    429: "RATE_LIMIT_EXCEEDED",
}


def get_request_id(request: Request) -> str:
    if hasattr(request.state, "request_id"):
        return request.state.request_id
    return request.headers.get("X-Request-ID", "unknown")


def create_error_response(
    status_code: int,
    body: Dict[str, Any],
    request_id: str,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    response_headers = {"X-Request-ID": request_id}
    if headers:
        response_headers.update(headers)
    return JSONResponse(status_code=status_code, content=body, headers=response_headers)


def register_exception_handlers(app: FastAPI, environment: Environment) -> None:
    """Register all exception handlers with the FastAPI application."""
    production = environment.is_production

    @app.exception_handler(CheckoutException)
    async def checkout_exception_handler(request: Request, exc: CheckoutException) -> JSONResponse:
        request_id = get_request_id(request)
        if exc.http_status >= 500:
            logger.error(
                "Server error: %s - %s",
                exc.error_code,
                exc.message,
                extra={"error_code": exc.error_code, "path": request.url.path},
                exc_info=exc.http_status == 500,
            )
        else:
            logger.warning(
                "Client error: %s - %s",
                exc.error_code,
                exc.message,
                extra={"error_code": exc.error_code, "path": request.url.path},
            )

        body = exc.to_dict()
        if isinstance(exc, InvalidSessionError):
            # expired, unknown and hijack-suspected sessions look the same to the caller
            body["code"] = InvalidSessionError.error_code
            body.pop("details", None)
        if production:
            body.pop("details", None)
            if exc.http_status >= 500 and not isinstance(exc, ProviderUnavailableError):
                body["error"] = GENERIC_SERVER_ERROR
            if isinstance(exc, ProviderRejectedError):
                body["error"] = GENERIC_REJECTION

        headers = None
        if isinstance(exc, ProviderUnavailableError):
            headers = {"Retry-After": str(exc.retry_after)}
        return create_error_response(exc.http_status, body, request_id, headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        request_id = get_request_id(request)
        errors = [
            {"field": ".".join(str(loc) for loc in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        logger.warning(
            "Validation error: %d field(s) failed",
            len(errors),
            extra={"path": request.url.path},
        )
        body: Dict[str, Any] = {"error": "Invalid request", "code": "INVALID_INPUT"}
        if not production:
            body["details"] = {"errors": errors}
        return create_error_response(400, body, request_id)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        request_id = get_request_id(request)
        code = STATUS_CODES.get(exc.status_code, "INTERNAL_ERROR")
        message = str(exc.detail) if exc.detail else "An error occurred"
        if production and exc.status_code >= 500:
            message = GENERIC_SERVER_ERROR
        return create_error_response(
            exc.status_code,
            {"error": message, "code": code},
            request_id,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        request_id = get_request_id(request)
        logger.error(
            "Unhandled exception: %s",
            type(exc).__name__,
            extra={"path": request.url.path, "method": request.method},
            exc_info=True,
        )
        body: Dict[str, Any] = {"error": GENERIC_SERVER_ERROR, "code": "INTERNAL_ERROR"}
        if not production:
            body["details"] = {"exception_type": type(exc).__name__, "message": str(exc)}
        return create_error_response(500, body, request_id)
