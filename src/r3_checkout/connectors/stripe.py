"""Stripe payment provider connector.

The Stripe SDK is synchronous; calls run in a worker thread so the event loop
is never blocked. Client-correctable Stripe errors are translated into
ProviderRejectedError here. Transient errors are left as raised so the
resilience layer can classify and retry them.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional

import stripe

from r3_checkout.connectors.base import PaymentProvider
from r3_checkout.exceptions import (
    ProviderRejectedError,
    WebhookPayloadError,
    WebhookSignatureError,
)

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_TOLERANCE = 300


def _intent_to_dict(intent: Any) -> Dict[str, Any]:
    next_action = getattr(intent, "next_action", None)
    action: Optional[Dict[str, Any]] = None
    if next_action:
        action = {"type": getattr(next_action, "type", None)}
        microdeposits = getattr(next_action, "verify_with_microdeposits", None)
        if microdeposits:
            action["hosted_verification_url"] = getattr(
                microdeposits, "hosted_verification_url", None
            )
    return {
        "id": intent.id,
        "client_secret": getattr(intent, "client_secret", None),
        "status": getattr(intent, "status", None),
        "amount": getattr(intent, "amount", None),
        "currency": getattr(intent, "currency", None),
        "payment_method_types": list(getattr(intent, "payment_method_types", None) or []),
        "livemode": bool(getattr(intent, "livemode", False)),
        "next_action": action,
    }


class StripeConnector(PaymentProvider):
    """Stripe payment provider."""

    def __init__(
        self,
        api_key: str,
        webhook_secret: str = "",
        webhook_tolerance: int = DEFAULT_WEBHOOK_TOLERANCE,
    ):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._tolerance = webhook_tolerance
        self._stripe = stripe

    @property
    def is_test_mode(self) -> bool:
        return self._api_key.startswith(("sk_test_", "rk_test_"))

    async def _request(self, method: Callable[..., Any], **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(method, api_key=self._api_key, **kwargs)
        except (stripe.CardError, stripe.InvalidRequestError, stripe.IdempotencyError) as exc:
            logger.warning(
                "Stripe rejected request: %s",
                getattr(exc, "code", None) or type(exc).__name__,
                extra={"provider_code": getattr(exc, "code", None), "param": getattr(exc, "param", None)},
            )
            raise ProviderRejectedError(
                getattr(exc, "user_message", None) or "Payment request was rejected by the payment provider",
                provider_code=getattr(exc, "code", None),
                param=getattr(exc, "param", None),
                http_status=getattr(exc, "http_status", None),
            ) from exc

    async def create_payment_intent(
        self,
        params: Dict[str, Any],
        idempotency_key: str,
    ) -> Dict[str, Any]:
        intent = await self._request(
            self._stripe.PaymentIntent.create,
            idempotency_key=idempotency_key,
            **params,
        )
        return _intent_to_dict(intent)

    async def create_payment_method(
        self,
        params: Dict[str, Any],
        idempotency_key: str,
    ) -> Dict[str, Any]:
        method = await self._request(
            self._stripe.PaymentMethod.create,
            idempotency_key=idempotency_key,
            **params,
        )
        return {"id": method.id, "type": getattr(method, "type", None)}

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        if not signature:
            raise WebhookSignatureError("Missing signature")
        try:
            payload_text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise WebhookPayloadError("Webhook body is not valid UTF-8") from exc

        try:
            self._stripe.WebhookSignature.verify_header(
                payload_text,
                signature,
                self._webhook_secret,
                self._tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError("Invalid signature") from exc

        try:
            event = json.loads(payload_text)
        except ValueError as exc:
            raise WebhookPayloadError("Invalid payload") from exc
        if (
            not isinstance(event, dict)
            or not event.get("type")
            or not isinstance(event.get("data"), dict)
            or not isinstance(event["data"].get("object"), dict)
        ):
            raise WebhookPayloadError("Invalid payload")
        return event
