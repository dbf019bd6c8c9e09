"""Structured logging with request correlation.

Provides:
- JSON log lines carrying request, session and payment-intent context
- Context variables populated by the request middleware
- Helpers for payment and security-event log lines

Raw session ids and secrets must never reach a log line; use mask_token.
"""
from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
session_ref_var: ContextVar[Optional[str]] = ContextVar("session_ref", default=None)
payment_intent_id_var: ContextVar[Optional[str]] = ContextVar("payment_intent_id", default=None)

_CONTEXT_FIELDS = ("request_id", "session_ref", "payment_intent_id")

_RESERVED_ATTRS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    *_CONTEXT_FIELDS,
})


class CorrelationIDFilter(logging.Filter):
    """Copy the current request context onto each log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        record.session_ref = session_ref_var.get()
        # explicit extra= values win over the ambient context
        if not getattr(record, "payment_intent_id", None):
            record.payment_intent_id = payment_intent_id_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }

        for field_name in _CONTEXT_FIELDS:
            value = getattr(record, field_name, None)
            if value:
                log_data[field_name] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or a plain format (False)
        log_file: Optional file path for logging output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(request_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(CorrelationIDFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(CorrelationIDFilter())
        root_logger.addHandler(file_handler)

    # Third-party noise
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)


def generate_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


def mask_token(value: Optional[str]) -> str:
    """Return a log-safe reference to a bearer token."""
    if not value:
        return "-"
    if len(value) <= 8:
        return "***"
    return f"{value[:6]}..."


class LogContext:
    """Context manager for temporary logging context."""

    def __init__(
        self,
        request_id: Optional[str] = None,
        session_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
    ):
        self.request_id = request_id
        self.session_ref = mask_token(session_id) if session_id else None
        self.payment_intent_id = payment_intent_id
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        if self.request_id:
            self._tokens.append((request_id_var, request_id_var.set(self.request_id)))
        if self.session_ref:
            self._tokens.append((session_ref_var, session_ref_var.set(self.session_ref)))
        if self.payment_intent_id:
            self._tokens.append(
                (payment_intent_id_var, payment_intent_id_var.set(self.payment_intent_id))
            )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()


def log_payment(
    logger: logging.Logger,
    level: str,
    message: str,
    payment_intent_id: Optional[str] = None,
    amount: Optional[int] = None,
    rail: Optional[str] = None,
    **kwargs,
) -> None:
    """Log a payment-related message with context."""
    extra = kwargs.copy()
    if payment_intent_id:
        extra["payment_intent_id"] = payment_intent_id
    if amount is not None:
        extra["amount"] = amount
    if rail:
        extra["rail"] = rail
    getattr(logger, level.lower())(message, extra=extra)


def log_security_event(
    logger: logging.Logger,
    event: str,
    **kwargs,
) -> None:
    """Log a security-relevant event (suspicious session, CSRF failure, ...)."""
    extra = kwargs.copy()
    extra["security_event"] = event
    logger.warning("Security event: %s", event, extra=extra)
