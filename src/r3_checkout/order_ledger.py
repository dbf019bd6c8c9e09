"""
Idempotency ledger for webhook-driven orders.

One record per payment intent, stored in the shared key-value store so
duplicate deliveries are caught across processes and restarts. A record is
first claimed atomically in the ``creating`` state; the claimant then fills
in the order id, or releases the claim if order creation failed.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Callable, Optional

from .models import OrderRecord, OrderStatus
from .resilience import KV, ResilienceWrapper
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

LEDGER_KEY_PREFIX = "webhook:order:"
DEFAULT_LEDGER_TTL_SECONDS = 90 * 24 * 3600


def ledger_key(payment_intent_id: str) -> str:
    return f"{LEDGER_KEY_PREFIX}{payment_intent_id}"


class OrderLedger:
    """Payment-intent-id keyed record of downstream orders."""

    def __init__(
        self,
        store: KeyValueStore,
        resilience: ResilienceWrapper,
        ttl_seconds: int = DEFAULT_LEDGER_TTL_SECONDS,
        lock_timeout_seconds: int = 120,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._resilience = resilience
        self._ttl = ttl_seconds
        self._lock_timeout = lock_timeout_seconds
        self._clock = clock

    async def get(self, payment_intent_id: str) -> Optional[OrderRecord]:
        data = await self._resilience.call(KV, self._store.get_json, ledger_key(payment_intent_id))
        if not data:
            return None
        return OrderRecord.from_dict(data)

    async def claim(self, record: OrderRecord) -> bool:
        """Atomically reserve the payment intent. False if already claimed.

        A claim stuck in ``creating`` past the lock timeout (a crashed
        worker) is taken over.
        """
        now = self._clock()
        record.created_at = record.created_at or now
        record.updated_at = now
        key = ledger_key(record.payment_intent_id)

        claimed = await self._resilience.call(
            KV, self._store.set_if_absent, key, json.dumps(record.to_dict()), self._ttl
        )
        if claimed:
            return True

        existing = await self.get(record.payment_intent_id)
        if existing is not None and self.is_stale(existing):
            logger.warning(
                "Taking over stale order claim",
                extra={"payment_intent_id": record.payment_intent_id},
            )
            await self.save(record)
            return True
        return False

    def is_stale(self, record: OrderRecord) -> bool:
        """A ``creating`` record older than the lock timeout was abandoned by its claimant."""
        return (
            record.status == OrderStatus.CREATING
            and self._clock() - record.updated_at > self._lock_timeout
        )

    async def save(self, record: OrderRecord) -> None:
        record.updated_at = self._clock()
        await self._resilience.call(
            KV, self._store.set_json, ledger_key(record.payment_intent_id), record.to_dict(), self._ttl
        )

    async def release(self, payment_intent_id: str) -> None:
        await self._resilience.call(KV, self._store.delete, ledger_key(payment_intent_id))
