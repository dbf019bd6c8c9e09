"""ACH payment monitoring counters kept in the key-value store."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .storage import KeyValueStore

logger = logging.getLogger(__name__)

PENDING_SET_KEY = "ach:pending"
METRICS_TTL_SECONDS = 90 * 24 * 3600


def metrics_key(kind: str, day: str) -> str:
    return f"ach:metrics:{kind}:{day}"


class AchMetrics:
    """Daily started/completed/failed counters for ACH payments.

    Recording is best effort: store errors are logged and swallowed, since
    monitoring must never change the outcome of a payment or webhook.
    """

    def __init__(self, store: KeyValueStore, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock

    def _today(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).strftime("%Y-%m-%d")

    async def _record(self, kind: str, amount: Optional[int], failure_code: Optional[str] = None) -> None:
        key = metrics_key(kind, self._today())
        await self._store.hincrby(key, "count", 1)
        if amount:
            await self._store.hincrby(key, "total_amount", int(amount))
        if failure_code:
            await self._store.hincrby(key, f"code:{failure_code}", 1)
        await self._store.expire(key, METRICS_TTL_SECONDS)

    async def track_started(self, payment_intent_id: str, amount: Optional[int]) -> None:
        try:
            await self._record("started", amount)
            await self._store.sadd(PENDING_SET_KEY, payment_intent_id)
        except Exception:
            logger.warning("Failed to record ACH start", extra={"payment_intent_id": payment_intent_id}, exc_info=True)

    async def track_completed(self, payment_intent_id: str, amount: Optional[int]) -> None:
        try:
            await self._record("completed", amount)
            await self._store.srem(PENDING_SET_KEY, payment_intent_id)
        except Exception:
            logger.warning("Failed to record ACH completion", extra={"payment_intent_id": payment_intent_id}, exc_info=True)

    async def track_failed(
        self,
        payment_intent_id: str,
        amount: Optional[int],
        failure_code: Optional[str],
    ) -> None:
        try:
            await self._record("failed", amount, failure_code or "unknown")
            await self._store.srem(PENDING_SET_KEY, payment_intent_id)
        except Exception:
            logger.warning("Failed to record ACH failure", extra={"payment_intent_id": payment_intent_id}, exc_info=True)

    async def pending_payments(self) -> set[str]:
        return await self._store.smembers(PENDING_SET_KEY)

    async def get_daily_metrics(self, day: Optional[str] = None) -> Dict[str, Any]:
        day = day or self._today()
        started = await self._store.hgetall(metrics_key("started", day))
        completed = await self._store.hgetall(metrics_key("completed", day))
        failed = await self._store.hgetall(metrics_key("failed", day))

        completed_count = int(completed.get("count", 0))
        failed_count = int(failed.get("count", 0))
        terminal = completed_count + failed_count
        success_rate = round(completed_count / terminal * 100, 1) if terminal else None

        return {
            "date": day,
            "started": {
                "count": int(started.get("count", 0)),
                "total_amount": int(started.get("total_amount", 0)),
            },
            "completed": {
                "count": completed_count,
                "total_amount": int(completed.get("total_amount", 0)),
            },
            "failed": {
                "count": failed_count,
                "total_amount": int(failed.get("total_amount", 0)),
                "failure_codes": {
                    k.split(":", 1)[1]: int(v) for k, v in failed.items() if k.startswith("code:")
                },
            },
            "success_rate": success_rate,
        }
