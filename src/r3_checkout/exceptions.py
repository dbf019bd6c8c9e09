"""Exception hierarchy for the checkout service.

Every checkout-specific exception inherits from CheckoutException, which
carries:
- error_code: machine-readable code (e.g. "INVALID_SESSION")
- http_status: status code used by the API layer
- message: human-readable message
- details: optional context dictionary

Business logic raises these; only the HTTP layer maps them to responses.
EnvironmentMismatchError and DuplicateEventError are internal to webhook
reconciliation and are never surfaced to the payment provider.
"""
from __future__ import annotations

from typing import Any, Optional


class CheckoutException(Exception):
    """Base exception for all checkout errors."""

    error_code: str = "CHECKOUT_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result: dict[str, Any] = {
            "error": self.message,
            "code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Input errors (400)
# =============================================================================

class InvalidInputError(CheckoutException):
    """Client-correctable input problem."""

    error_code = "INVALID_INPUT"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class InvalidAmountError(InvalidInputError):
    """Amount outside the accepted bounds."""

    error_code = "INVALID_AMOUNT"

    def __init__(self, amount: Any, maximum: int) -> None:
        super().__init__(
            "Invalid amount",
            field="amount",
            details={"amount": amount, "maximum": maximum},
        )


# =============================================================================
# Session & request guards (401 / 403)
# =============================================================================

class InvalidSessionError(CheckoutException):
    """Missing, unknown or unusable session."""

    error_code = "INVALID_SESSION"
    http_status = 401

    def __init__(
        self,
        message: str = "Invalid or expired session",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details)


class SessionExpiredError(InvalidSessionError):
    """Session exists but its absolute expiry has passed."""

    error_code = "SESSION_EXPIRED"


class SuspiciousSessionError(InvalidSessionError):
    """Session used from a client that does not match its binding."""

    error_code = "SUSPICIOUS_SESSION"


class InvalidCSRFError(CheckoutException):
    """Missing or mismatched anti-forgery token."""

    error_code = "INVALID_CSRF"
    http_status = 403

    def __init__(self, message: str = "Invalid CSRF token") -> None:
        super().__init__(message)


class UnauthorizedDomainError(CheckoutException):
    """Request originates from a storefront domain that is not allowed."""

    error_code = "UNAUTHORIZED_DOMAIN"
    http_status = 403

    def __init__(self, domain: Optional[str]) -> None:
        super().__init__("Unauthorized domain", details={"domain": domain})


# =============================================================================
# External dependency errors
# =============================================================================

class ProviderRejectedError(CheckoutException):
    """The payment provider declined the request itself."""

    error_code = "PROVIDER_REJECTED"
    http_status = 400

    def __init__(
        self,
        message: str,
        provider_code: Optional[str] = None,
        param: Optional[str] = None,
        http_status: Optional[int] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if provider_code:
            details["provider_code"] = provider_code
        if param:
            details["param"] = param
        super().__init__(message, details=details)
        self.provider_code = provider_code
        self.param = param
        if http_status == 422:
            self.http_status = 422


class ProviderUnavailableError(CheckoutException):
    """A dependency is unreachable after retries or its circuit is open."""

    error_code = "PROVIDER_UNAVAILABLE"
    http_status = 503

    def __init__(
        self,
        dependency: str,
        retry_after: int = 30,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(
            message or "Service temporarily unavailable. Please try again shortly.",
            details={"dependency": dependency, "retry_after": retry_after},
        )
        self.dependency = dependency
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["retryAfter"] = self.retry_after
        return result


class CommercePlatformError(CheckoutException):
    """The commerce platform rejected an order mutation."""

    error_code = "COMMERCE_PLATFORM_ERROR"
    http_status = 502

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message, details={"status_code": status_code})
        self.status_code = status_code


# =============================================================================
# Webhook errors
# =============================================================================

class WebhookSignatureError(CheckoutException):
    """Webhook signature missing, invalid or outside the tolerance window."""

    error_code = "INVALID_SIGNATURE"
    http_status = 400


class WebhookPayloadError(CheckoutException):
    """Webhook body could not be parsed into an event."""

    error_code = "INVALID_PAYLOAD"
    http_status = 400


class EnvironmentMismatchError(CheckoutException):
    """Event belongs to another deployment environment."""

    error_code = "ENVIRONMENT_MISMATCH"
    http_status = 200

    def __init__(self, expected: str, received: Optional[str]) -> None:
        super().__init__(
            f"Event environment {received!r} does not match {expected!r}",
            details={"expected": expected, "received": received},
        )


class DuplicateEventError(CheckoutException):
    """Event was already applied for this payment intent."""

    error_code = "DUPLICATE_EVENT"
    http_status = 200

    def __init__(self, payment_intent_id: str, order_id: Optional[str] = None) -> None:
        super().__init__(
            f"Order already recorded for {payment_intent_id}",
            details={"payment_intent_id": payment_intent_id, "order_id": order_id},
        )
        self.payment_intent_id = payment_intent_id
        self.order_id = order_id


# =============================================================================
# Configuration
# =============================================================================

class ConfigurationError(CheckoutException):
    """Required configuration is missing or invalid."""

    error_code = "CONFIGURATION_ERROR"
    http_status = 500
