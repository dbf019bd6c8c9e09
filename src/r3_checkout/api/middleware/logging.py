"""Request logging middleware with correlation IDs."""
from __future__ import annotations

import logging
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from ...logging_config import generate_request_id, request_id_var, session_ref_var

logger = logging.getLogger("r3_checkout.api")


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs each request with timing and a correlation ID.

    Accepts an incoming X-Request-ID for distributed tracing and echoes it
    back on the response.
    """

    def __init__(self, app, exclude_paths: list[str] | None = None):
        super().__init__(app)
        self.exclude_paths = exclude_paths or ["/health"]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        request_token = request_id_var.set(request_id)
        session_token = session_ref_var.set(None)
        request.state.request_id = request_id

        try:
            if request.url.path in self.exclude_paths:
                response = await call_next(request)
                response.headers["X-Request-ID"] = request_id
                return response

            method = request.method
            path = request.url.path
            forwarded = request.headers.get("X-Forwarded-For", "")
            client_ip = forwarded.split(",")[0].strip() if forwarded else (
                request.client.host if request.client else "unknown"
            )

            logger.info(
                "Request started",
                extra={"event": "request_start", "method": method, "path": path, "client_ip": client_ip},
            )

            start_time = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception as e:
                duration_ms = (time.perf_counter() - start_time) * 1000
                logger.error(
                    "Request failed",
                    extra={
                        "event": "request_error",
                        "method": method,
                        "path": path,
                        "error_type": type(e).__name__,
                        "duration_ms": round(duration_ms, 2),
                    },
                    exc_info=True,
                )
                raise

            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                "Request completed",
                extra={
                    "event": "request_complete",
                    "method": method,
                    "path": path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
            return response
        finally:
            session_ref_var.reset(session_token)
            request_id_var.reset(request_token)
