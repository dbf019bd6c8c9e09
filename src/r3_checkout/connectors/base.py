"""Interfaces for the payment provider and the commerce platform."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class PaymentProvider(ABC):
    """Abstract interface for the payment provider."""

    @abstractmethod
    async def create_payment_intent(
        self,
        params: Dict[str, Any],
        idempotency_key: str,
    ) -> Dict[str, Any]:
        """
        Create a payment intent.

        Args:
            params: Provider request parameters
            idempotency_key: Key reused across retries of the same request

        Returns:
            Dict with at least id, client_secret, status, amount, currency,
            payment_method_types
        """

    @abstractmethod
    async def create_payment_method(
        self,
        params: Dict[str, Any],
        idempotency_key: str,
    ) -> Dict[str, Any]:
        """Create a payment method (used for manually entered bank accounts)."""

    @abstractmethod
    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify a webhook signature and parse the event.

        Raises:
            WebhookSignatureError: Signature invalid or outside tolerance
            WebhookPayloadError: Body is not a valid event
        """


class CommercePlatform(ABC):
    """Abstract interface for the commerce platform's order APIs."""

    @abstractmethod
    async def create_draft_order(self, draft_order: Dict[str, Any]) -> Dict[str, Any]:
        """Create a draft order and return it."""

    @abstractmethod
    async def find_draft_order(self, payment_intent_id: str) -> Optional[Dict[str, Any]]:
        """Open draft order created for ``payment_intent_id``, or None."""

    @abstractmethod
    async def update_draft_order(self, draft_order_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Update fields (tags, note, ...) of a draft order."""

    @abstractmethod
    async def complete_draft_order(self, draft_order_id: str, payment_pending: bool = False) -> Dict[str, Any]:
        """Turn a draft order into an order."""

    @abstractmethod
    async def cancel_draft_order(
        self,
        draft_order_id: str,
        tags: List[str],
        note: str,
    ) -> Dict[str, Any]:
        """Mark a draft order as cancelled so it is never fulfilled."""

    @abstractmethod
    async def create_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        """Create a paid order and return it."""

    async def close(self) -> None:
        """Release connections."""
