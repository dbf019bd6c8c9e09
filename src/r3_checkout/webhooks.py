"""
Stripe webhook reconciliation.

Turns authenticated payment events into commerce-platform orders:

- card ``payment_intent.succeeded``: a paid order in production live mode,
  a review draft for production test-mode payments, a draft elsewhere
- ACH processing: a draft order tagged ``ACH_PENDING``
- ACH success: the draft is retagged ``ACH_COMPLETED`` and completed
- ACH failure: the draft is retagged ``ACH_FAILED`` and cancelled

Each payment intent owns one record in the order ledger. Creation claims
the record atomically, so redelivered or racing events produce one order.
A draft created by a claimant that then failed to record it is found again
by payment intent once the claim goes stale.
Events tagged for another environment are dropped before any mutation.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from .ach_metrics import AchMetrics
from .connectors.base import CommercePlatform, PaymentProvider
from .environment import Environment, parse_environment_tag
from .exceptions import (
    CheckoutException,
    DuplicateEventError,
    EnvironmentMismatchError,
    WebhookSignatureError,
)
from .logging_config import LogContext
from .models import (
    TAG_ACH_COMPLETED,
    TAG_ACH_FAILED,
    TAG_ACH_PAYMENT,
    TAG_ACH_PENDING,
    TAG_MANUAL_REVIEW,
    TAG_TEST_ORDER,
    OrderKind,
    OrderRecord,
    OrderStatus,
    PaymentRail,
    WebhookAck,
)
from .order_ledger import OrderLedger
from .orders import (
    ACH_COMPLETED_NOTE,
    OrderContext,
    ach_failed_note,
    ach_pending_note,
    build_draft_order,
    build_order,
    build_tags,
    extract_order_context,
    is_ach_object,
    payment_note,
    replace_tag,
    review_note,
)
from .resilience import SHOPIFY, ResilienceWrapper

logger = logging.getLogger(__name__)

PAYMENT_INTENT_CREATED = "payment_intent.created"
PAYMENT_INTENT_PROCESSING = "payment_intent.processing"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
CHARGE_SUCCEEDED = "charge.succeeded"
CHARGE_FAILED = "charge.failed"

HANDLED_EVENTS = frozenset({
    PAYMENT_INTENT_CREATED,
    PAYMENT_INTENT_PROCESSING,
    PAYMENT_INTENT_SUCCEEDED,
    PAYMENT_INTENT_FAILED,
    CHARGE_SUCCEEDED,
    CHARGE_FAILED,
})

# Ack actions
IGNORED = "ignored"
ENVIRONMENT_MISMATCH = "environment_mismatch"
MISSING_METADATA = "missing_metadata"
DUPLICATE = "duplicate"
DRAFT_CREATED = "draft_created"
ORDER_CREATED = "order_created"
REVIEW_DRAFT_CREATED = "review_draft_created"
ACH_COMPLETED = "ach_completed"
ACH_FAILED = "ach_failed"
ERROR = "error"

Outcome = Tuple[str, Optional[str]]


def payment_intent_id_for(event_type: str, obj: Dict[str, Any]) -> Optional[str]:
    """Ledger key: the intent id, or the intent a charge belongs to."""
    if event_type.startswith("charge."):
        value = obj.get("payment_intent")
        if isinstance(value, dict):
            value = value.get("id")
        return value or None
    return obj.get("id") or None


def failure_details(obj: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    last_error = obj.get("last_payment_error") or {}
    code = obj.get("failure_code") or last_error.get("code")
    message = obj.get("failure_message") or last_error.get("message")
    return code, message


class WebhookReconciler:
    """Reconciles payment events against the commerce platform."""

    def __init__(
        self,
        provider: PaymentProvider,
        commerce: CommercePlatform,
        ledger: OrderLedger,
        environment: Environment,
        resilience: ResilienceWrapper,
        metrics: Optional[AchMetrics] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._provider = provider
        self._commerce = commerce
        self._ledger = ledger
        self._environment = environment
        self._resilience = resilience
        self._metrics = metrics
        self._clock = clock

    async def handle_webhook_event(self, payload: bytes, signature: Optional[str]) -> WebhookAck:
        """
        Authenticate and reconcile one webhook delivery.

        Raises:
            WebhookSignatureError: Missing, invalid or stale signature
            WebhookPayloadError: Body is not an event object
        """
        if not signature:
            raise WebhookSignatureError("Missing signature")
        event = self._provider.construct_event(payload, signature)
        return await self.reconcile(event)

    async def reconcile(self, event: Dict[str, Any]) -> WebhookAck:
        """Apply an authenticated event. Business failures become an ``error`` ack."""
        event_type = event.get("type") or ""
        obj = (event.get("data") or {}).get("object") or {}
        payment_intent_id = payment_intent_id_for(event_type, obj)
        ack = WebhookAck(event_type=event_type, payment_intent_id=payment_intent_id)

        if event_type not in HANDLED_EVENTS or not payment_intent_id:
            logger.debug("Ignoring webhook event %s", event_type)
            return ack

        with LogContext(payment_intent_id=payment_intent_id):
            livemode = bool(event.get("livemode", obj.get("livemode", False)))
            try:
                self._check_environment((obj.get("metadata") or {}).get("environment"))
                ack.action, ack.order_id = await self._dispatch(
                    event_type, obj, payment_intent_id, livemode
                )
            except EnvironmentMismatchError as exc:
                logger.info("Skipping %s: %s", event_type, exc.message)
                ack.action = ENVIRONMENT_MISMATCH
            except DuplicateEventError as exc:
                logger.info("Duplicate %s ignored", event_type)
                ack.action = DUPLICATE
                ack.order_id = exc.order_id
            except CheckoutException as exc:
                logger.error(
                    "Webhook reconciliation failed for %s: %s",
                    event_type,
                    exc.message,
                    extra={"error_code": exc.error_code},
                )
                ack.action = ERROR
        return ack

    def _check_environment(self, tag: Optional[str]) -> None:
        if parse_environment_tag(tag) != self._environment:
            raise EnvironmentMismatchError(self._environment.value, tag)

    async def _dispatch(
        self,
        event_type: str,
        obj: Dict[str, Any],
        payment_intent_id: str,
        livemode: bool,
    ) -> Outcome:
        if is_ach_object(obj):
            if event_type in (PAYMENT_INTENT_PROCESSING, PAYMENT_INTENT_CREATED):
                return await self._create_ach_draft(obj, payment_intent_id)
            if event_type in (CHARGE_SUCCEEDED, PAYMENT_INTENT_SUCCEEDED):
                return await self._complete_ach(obj, payment_intent_id)
            if event_type in (CHARGE_FAILED, PAYMENT_INTENT_FAILED):
                return await self._fail_ach(obj, payment_intent_id)
            return IGNORED, None

        if event_type == PAYMENT_INTENT_SUCCEEDED:
            return await self._create_card_order(obj, payment_intent_id, livemode)
        if event_type == PAYMENT_INTENT_FAILED:
            code, message = failure_details(obj)
            logger.warning("Card payment failed: %s", code or "unknown", extra={"failure_message": message})
        return IGNORED, None

    async def _create(
        self,
        ctx: OrderContext,
        record: OrderRecord,
        payload: Dict[str, Any],
        final_status: OrderStatus,
    ) -> Optional[str]:
        """Claim the ledger, create the downstream order, record its id.

        Returns None if another delivery already holds the claim.
        """
        if not await self._ledger.claim(record):
            return None

        try:
            if record.order_kind == OrderKind.ORDER:
                created = await self._resilience.call(SHOPIFY, self._commerce.create_order, payload)
            else:
                created = await self._resilience.call(SHOPIFY, self._commerce.create_draft_order, payload)
        except CheckoutException:
            # free the claim so a replayed event can retry
            await self._ledger.release(ctx.payment_intent_id)
            raise

        record.order_id = str(created.get("id", ""))
        record.status = final_status
        try:
            await self._ledger.save(record)
        except CheckoutException:
            # the claim stays in creating; _current_record recovers it once stale
            logger.error(
                "Created %s %s but could not record it in the ledger",
                record.order_kind.value,
                record.order_id,
            )
            raise
        logger.info(
            "Created %s %s",
            record.order_kind.value,
            record.order_id,
            extra={"rail": record.rail.value, "tags": record.tags},
        )
        return record.order_id

    async def _current_record(self, payment_intent_id: str) -> Optional[OrderRecord]:
        """Ledger record for the intent, repairing a draft claim its creator abandoned.

        A claimant that created the draft but failed to record it leaves the
        record in ``creating``. Once that claim is stale the draft is looked
        up by payment intent: a match is recorded, no match frees the claim
        so the current event can create the draft itself.
        """
        record = await self._ledger.get(payment_intent_id)
        if record is None or record.order_kind != OrderKind.DRAFT or not self._ledger.is_stale(record):
            return record

        draft = await self._resilience.call(SHOPIFY, self._commerce.find_draft_order, payment_intent_id)
        if draft is None:
            logger.warning("Releasing abandoned order claim; no draft order exists")
            await self._ledger.release(payment_intent_id)
            return None

        record.order_id = str(draft.get("id", ""))
        record.status = OrderStatus.REVIEW if TAG_MANUAL_REVIEW in record.tags else OrderStatus.PENDING
        await self._ledger.save(record)
        logger.warning("Recovered draft order %s from an abandoned claim", record.order_id)
        return record

    def _new_record(self, payment_intent_id: str, kind: OrderKind, rail: PaymentRail, tags: list) -> OrderRecord:
        return OrderRecord(
            payment_intent_id=payment_intent_id,
            order_kind=kind,
            status=OrderStatus.CREATING,
            rail=rail,
            environment=self._environment.value,
            tags=tags,
        )

    async def _create_card_order(self, obj: Dict[str, Any], payment_intent_id: str, livemode: bool) -> Outcome:
        if await self._current_record(payment_intent_id) is not None:
            raise DuplicateEventError(payment_intent_id)
        ctx = extract_order_context(obj, payment_intent_id)
        if ctx is None:
            logger.warning("Payment intent is missing customer email or items; no order created")
            return MISSING_METADATA, None

        if self._environment.is_production and livemode:
            tags = build_tags(payment_intent_id)
            record = self._new_record(payment_intent_id, OrderKind.ORDER, PaymentRail.CARD, tags)
            payload = build_order(ctx, tags, payment_note(payment_intent_id, self._environment.value))
            action, status = ORDER_CREATED, OrderStatus.COMPLETED
        elif self._environment.is_production:
            logger.warning("Test-mode payment received in production; creating review draft")
            tags = build_tags(payment_intent_id, TAG_MANUAL_REVIEW)
            record = self._new_record(payment_intent_id, OrderKind.DRAFT, PaymentRail.CARD, tags)
            payload = build_draft_order(ctx, tags, review_note(payment_intent_id))
            action, status = REVIEW_DRAFT_CREATED, OrderStatus.REVIEW
        else:
            tags = build_tags(payment_intent_id, TAG_TEST_ORDER, self._environment.suffix)
            record = self._new_record(payment_intent_id, OrderKind.DRAFT, PaymentRail.CARD, tags)
            payload = build_draft_order(ctx, tags, payment_note(payment_intent_id, self._environment.value))
            action, status = DRAFT_CREATED, OrderStatus.PENDING

        order_id = await self._create(ctx, record, payload, status)
        if order_id is None:
            raise DuplicateEventError(payment_intent_id)
        return action, order_id

    async def _create_ach_draft(self, obj: Dict[str, Any], payment_intent_id: str) -> Outcome:
        if await self._current_record(payment_intent_id) is not None:
            raise DuplicateEventError(payment_intent_id)
        ctx = extract_order_context(obj, payment_intent_id)
        if ctx is None:
            logger.warning("ACH payment intent is missing customer email or items; no draft created")
            return MISSING_METADATA, None

        tags = build_tags(payment_intent_id, TAG_ACH_PAYMENT, TAG_ACH_PENDING)
        if not self._environment.is_production:
            tags.append(TAG_TEST_ORDER)
        record = self._new_record(payment_intent_id, OrderKind.DRAFT, PaymentRail.ACH, tags)
        payload = build_draft_order(ctx, tags, ach_pending_note(payment_intent_id))

        order_id = await self._create(ctx, record, payload, OrderStatus.PENDING)
        if order_id is None:
            raise DuplicateEventError(payment_intent_id)
        return DRAFT_CREATED, order_id

    async def _complete_ach(self, obj: Dict[str, Any], payment_intent_id: str) -> Outcome:
        record = await self._current_record(payment_intent_id)
        if record is None:
            # the processing event was missed: create the draft, then complete it
            action, _ = await self._create_ach_draft(obj, payment_intent_id)
            if action != DRAFT_CREATED:
                return action, None
            record = await self._ledger.get(payment_intent_id)
            if record is None:
                return ERROR, None

        if record.status in (OrderStatus.COMPLETED, OrderStatus.CANCELLED):
            raise DuplicateEventError(payment_intent_id, record.order_id)
        if record.status == OrderStatus.CREATING or not record.order_id:
            logger.warning("ACH draft is still being created; completion skipped")
            return ERROR, None

        tags = replace_tag(record.tags, TAG_ACH_PENDING, TAG_ACH_COMPLETED)
        await self._resilience.call(
            SHOPIFY,
            self._commerce.update_draft_order,
            record.order_id,
            {"tags": ",".join(tags), "note": ACH_COMPLETED_NOTE},
        )
        await self._resilience.call(
            SHOPIFY, self._commerce.complete_draft_order, record.order_id, False
        )

        record.status = OrderStatus.COMPLETED
        record.tags = tags
        await self._ledger.save(record)
        logger.info("ACH payment completed; draft order %s completed", record.order_id)

        if self._metrics is not None:
            await self._metrics.track_completed(payment_intent_id, obj.get("amount"))
        return ACH_COMPLETED, record.order_id

    async def _fail_ach(self, obj: Dict[str, Any], payment_intent_id: str) -> Outcome:
        failure_code, failure_message = failure_details(obj)
        record = await self._current_record(payment_intent_id)

        if record is None:
            # nothing to cancel; remember the outcome so later events are duplicates
            record = self._new_record(payment_intent_id, OrderKind.DRAFT, PaymentRail.ACH, [])
            record.status = OrderStatus.CANCELLED
            record.failure_code = failure_code
            record.failure_message = failure_message
            if not await self._ledger.claim(record):
                raise DuplicateEventError(payment_intent_id)
            logger.warning("ACH payment failed before a draft order existed: %s", failure_code)
            if self._metrics is not None:
                await self._metrics.track_failed(payment_intent_id, obj.get("amount"), failure_code)
            return ACH_FAILED, None

        if record.status == OrderStatus.CANCELLED:
            raise DuplicateEventError(payment_intent_id, record.order_id)
        if record.status == OrderStatus.COMPLETED:
            logger.error(
                "ACH failure received after draft order %s was completed; manual review required",
                record.order_id,
                extra={"failure_code": failure_code},
            )
            return ERROR, record.order_id
        if record.status == OrderStatus.CREATING or not record.order_id:
            logger.warning("ACH draft is still being created; cancellation skipped")
            return ERROR, None

        tags = [t for t in record.tags if t != TAG_ACH_PENDING]
        if TAG_ACH_FAILED not in tags:
            tags.append(TAG_ACH_FAILED)
        await self._resilience.call(
            SHOPIFY,
            self._commerce.cancel_draft_order,
            record.order_id,
            tags,
            ach_failed_note(payment_intent_id, failure_code, failure_message),
        )

        record.status = OrderStatus.CANCELLED
        record.tags = tags
        record.failure_code = failure_code
        record.failure_message = failure_message
        await self._ledger.save(record)
        logger.warning(
            "ACH payment failed (%s); draft order %s cancelled",
            failure_code or "unknown",
            record.order_id,
        )

        if self._metrics is not None:
            await self._metrics.track_failed(payment_intent_id, obj.get("amount"), failure_code)
        return ACH_FAILED, record.order_id
