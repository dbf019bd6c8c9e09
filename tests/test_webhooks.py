"""
Tests for webhook reconciliation.

Tests cover:
- Signature gate
- Environment isolation
- Idempotent order creation
- Card order modes per environment
- ACH draft lifecycle (pending -> completed / failed)
"""
from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from r3_checkout.environment import Environment
from r3_checkout.exceptions import CommercePlatformError, WebhookSignatureError
from r3_checkout.models import OrderKind, OrderRecord, OrderStatus, PaymentRail
from r3_checkout.webhooks import (
    ACH_COMPLETED,
    ACH_FAILED,
    DRAFT_CREATED,
    DUPLICATE,
    ENVIRONMENT_MISMATCH,
    ERROR,
    IGNORED,
    MISSING_METADATA,
    ORDER_CREATED,
    REVIEW_DRAFT_CREATED,
    WebhookReconciler,
    failure_details,
    payment_intent_id_for,
)

VALID_SIGNATURE = "t=1,v1=valid"


@pytest.fixture
def production_reconciler(provider, commerce, ledger, resilience, metrics, clock):
    return WebhookReconciler(
        provider, commerce, ledger, Environment.PRODUCTION, resilience, metrics=metrics, clock=clock
    )


class TestHelpers:
    def test_payment_intent_id_for_intent(self):
        assert payment_intent_id_for("payment_intent.succeeded", {"id": "pi_1"}) == "pi_1"

    def test_payment_intent_id_for_charge(self):
        assert payment_intent_id_for("charge.failed", {"id": "ch_1", "payment_intent": "pi_1"}) == "pi_1"
        assert payment_intent_id_for("charge.failed", {"id": "ch_1", "payment_intent": {"id": "pi_2"}}) == "pi_2"
        assert payment_intent_id_for("charge.failed", {"id": "ch_1"}) is None

    def test_failure_details(self):
        assert failure_details({"failure_code": "R01", "failure_message": "NSF"}) == ("R01", "NSF")
        assert failure_details({"last_payment_error": {"code": "card_declined", "message": "no"}}) == (
            "card_declined",
            "no",
        )


class TestSignatureGate:
    """Unauthenticated deliveries never reach reconciliation."""

    async def test_missing_signature(self, reconciler, commerce):
        with pytest.raises(WebhookSignatureError):
            await reconciler.handle_webhook_event(b"{}", None)
        assert commerce.mutation_count == 0

    async def test_invalid_signature(self, reconciler, commerce, make_event, card_intent):
        payload = json.dumps(make_event("payment_intent.succeeded", card_intent())).encode()
        with pytest.raises(WebhookSignatureError):
            await reconciler.handle_webhook_event(payload, "t=1,v1=forged")
        assert commerce.mutation_count == 0

    async def test_valid_signature_reconciles(self, reconciler, make_event, card_intent):
        payload = json.dumps(make_event("payment_intent.succeeded", card_intent())).encode()
        ack = await reconciler.handle_webhook_event(payload, VALID_SIGNATURE)
        assert ack.received
        assert ack.action == DRAFT_CREATED


class TestEnvironmentIsolation:
    """Events tagged for another environment cause no mutations."""

    @pytest.mark.parametrize("tag", ["production", "staging", "qa", None])
    async def test_foreign_events_dropped(self, reconciler, commerce, ledger, make_event, card_intent, tag):
        ack = await reconciler.reconcile(make_event("payment_intent.succeeded", card_intent(environment=tag)))

        assert ack.received
        assert ack.action == ENVIRONMENT_MISMATCH
        assert commerce.mutation_count == 0
        assert await ledger.get("pi_card_1") is None

    async def test_untagged_event_belongs_to_production(self, production_reconciler, commerce, make_event, card_intent):
        ack = await production_reconciler.reconcile(
            make_event("payment_intent.succeeded", card_intent(environment=None), livemode=True)
        )
        assert ack.action == ORDER_CREATED
        assert len(commerce.orders) == 1

    async def test_ach_events_dropped(self, reconciler, commerce, make_event, ach_intent, ach_charge):
        await reconciler.reconcile(make_event("payment_intent.processing", ach_intent(environment="production")))
        await reconciler.reconcile(make_event("charge.failed", ach_charge(environment="production")))
        assert commerce.mutation_count == 0


class TestCardOrders:
    """Tests for card payment_intent.succeeded handling."""

    async def test_development_creates_test_draft(self, reconciler, commerce, ledger, make_event, card_intent):
        ack = await reconciler.reconcile(make_event("payment_intent.succeeded", card_intent()))

        assert ack.action == DRAFT_CREATED
        draft = commerce.draft_orders[ack.order_id]
        assert commerce.tags_of(ack.order_id) == ["stripe", "pi_card_1", "TEST_ORDER", "DEV"]
        assert draft["email"] == "buyer@example.com"
        assert draft["line_items"] == [{"variant_id": 4401, "quantity": 2}]
        assert draft["shipping_line"]["price"] == "10.00"
        assert draft["tax_lines"] == [{"title": "Sales Tax", "price": "8.00"}]
        assert draft["shipping_address"]["zip"] == "94105"
        record = await ledger.get("pi_card_1")
        assert record.order_id == ack.order_id
        assert record.status == OrderStatus.PENDING

    async def test_production_live_creates_paid_order(self, production_reconciler, commerce, make_event, card_intent):
        ack = await production_reconciler.reconcile(
            make_event("payment_intent.succeeded", card_intent(environment="production"), livemode=True)
        )

        assert ack.action == ORDER_CREATED
        order = commerce.orders[ack.order_id]
        assert order["financial_status"] == "paid"
        assert order["currency"] == "USD"
        assert order["transactions"][0]["authorization"] == "pi_card_1"
        assert order["transactions"][0]["amount"] == "118.00"
        assert commerce.draft_orders == {}

    async def test_production_test_mode_creates_review_draft(
        self, production_reconciler, commerce, ledger, make_event, card_intent
    ):
        """A test-mode payment must never produce a real paid order in production."""
        ack = await production_reconciler.reconcile(
            make_event("payment_intent.succeeded", card_intent(environment="production"), livemode=False)
        )

        assert ack.action == REVIEW_DRAFT_CREATED
        assert "MANUAL_REVIEW" in commerce.tags_of(ack.order_id)
        assert commerce.orders == {}
        assert (await ledger.get("pi_card_1")).status == OrderStatus.REVIEW

    async def test_duplicate_delivery_creates_one_order(self, reconciler, commerce, make_event, card_intent):
        event = make_event("payment_intent.succeeded", card_intent())

        first = await reconciler.reconcile(event)
        second = await reconciler.reconcile(event)

        assert first.action == DRAFT_CREATED
        assert second.received
        assert second.action == DUPLICATE
        assert len(commerce.draft_orders) == 1

    async def test_concurrent_deliveries_create_one_order(self, reconciler, commerce, make_event, card_intent):
        event = make_event("payment_intent.succeeded", card_intent())

        acks = await asyncio.gather(*(reconciler.reconcile(event) for _ in range(5)))

        assert sorted(a.action for a in acks) == [DRAFT_CREATED] + [DUPLICATE] * 4
        assert len(commerce.draft_orders) == 1

    async def test_missing_metadata(self, reconciler, commerce, ledger, make_event, card_intent):
        intent = card_intent(customer_email="")
        ack = await reconciler.reconcile(make_event("payment_intent.succeeded", intent))

        assert ack.action == MISSING_METADATA
        assert commerce.mutation_count == 0
        assert await ledger.get("pi_card_1") is None

    async def test_commerce_failure_releases_claim(self, reconciler, commerce, ledger, make_event, card_intent):
        """A failed creation must leave the event replayable."""
        event = make_event("payment_intent.succeeded", card_intent())
        commerce.fail_with = CommercePlatformError("Unprocessable draft", status_code=422)

        ack = await reconciler.reconcile(event)
        assert ack.action == ERROR
        assert await ledger.get("pi_card_1") is None

        commerce.fail_with = None
        ack = await reconciler.reconcile(event)
        assert ack.action == DRAFT_CREATED
        assert len(commerce.draft_orders) == 1

    async def test_card_failure_is_logged_only(self, reconciler, commerce, make_event, card_intent):
        intent = card_intent()
        intent["last_payment_error"] = {"code": "card_declined", "message": "Declined"}

        ack = await reconciler.reconcile(make_event("payment_intent.payment_failed", intent))

        assert ack.action == IGNORED
        assert commerce.mutation_count == 0

    async def test_client_tags_cannot_start_ach_lifecycle(self, reconciler, commerce, make_event, card_intent):
        ack = await reconciler.reconcile(
            make_event("payment_intent.processing", card_intent(tags="ACH_PAYMENT,ACH_PENDING"))
        )

        assert ack.action == IGNORED
        assert commerce.mutation_count == 0

    async def test_unhandled_event_type(self, reconciler, commerce, make_event):
        ack = await reconciler.reconcile(make_event("customer.created", {"id": "cus_1"}))
        assert ack.received
        assert ack.action == IGNORED
        assert commerce.mutation_count == 0


class TestAchLifecycle:
    """Tests for the ACH draft order lifecycle."""

    async def test_processing_creates_pending_draft(self, reconciler, commerce, metrics, make_event, ach_intent):
        ack = await reconciler.reconcile(make_event("payment_intent.processing", ach_intent()))

        assert ack.action == DRAFT_CREATED
        tags = commerce.tags_of(ack.order_id)
        assert "ACH_PAYMENT" in tags
        assert "ACH_PENDING" in tags
        assert "TEST_ORDER" in tags
        assert "DO NOT fulfill" in commerce.draft_orders[ack.order_id]["note"]

    async def test_success_completes_draft(self, reconciler, commerce, ledger, metrics, make_event, ach_intent, ach_charge):
        created = await reconciler.reconcile(make_event("payment_intent.processing", ach_intent()))
        ack = await reconciler.reconcile(make_event("charge.succeeded", ach_charge()))

        assert ack.action == ACH_COMPLETED
        assert ack.order_id == created.order_id
        tags = commerce.tags_of(created.order_id)
        assert "ACH_COMPLETED" in tags
        assert "ACH_PENDING" not in tags
        assert commerce.completed == [created.order_id]
        assert len(commerce.draft_orders) == 1
        assert (await ledger.get("pi_ach_1")).status == OrderStatus.COMPLETED
        assert (await metrics.get_daily_metrics())["completed"]["count"] == 1

    async def test_failure_cancels_draft(self, reconciler, commerce, ledger, make_event, ach_intent, ach_charge):
        """Scenario: a failed ACH charge cancels its pending draft."""
        created = await reconciler.reconcile(make_event("payment_intent.processing", ach_intent()))
        ack = await reconciler.reconcile(
            make_event(
                "charge.failed",
                ach_charge(failure_code="insufficient_funds", failure_message="Insufficient funds"),
            )
        )

        assert ack.received
        assert ack.action == ACH_FAILED
        draft_id, tags, note = commerce.cancelled[0]
        assert draft_id == created.order_id
        assert "ACH_FAILED" in tags
        assert "ACH_PENDING" not in tags
        assert "insufficient_funds" in note
        assert commerce.completed == []
        assert commerce.orders == {}
        assert len(commerce.draft_orders) == 1

        record = await ledger.get("pi_ach_1")
        assert record.status == OrderStatus.CANCELLED
        assert record.failure_code == "insufficient_funds"

    async def test_redelivered_success_is_duplicate(self, reconciler, commerce, make_event, ach_intent, ach_charge):
        await reconciler.reconcile(make_event("payment_intent.processing", ach_intent()))
        await reconciler.reconcile(make_event("charge.succeeded", ach_charge()))
        ack = await reconciler.reconcile(make_event("payment_intent.succeeded", ach_intent()))

        assert ack.action == DUPLICATE
        assert len(commerce.completed) == 1

    async def test_redelivered_processing_is_duplicate(self, reconciler, commerce, make_event, ach_intent):
        event = make_event("payment_intent.processing", ach_intent())
        await reconciler.reconcile(event)
        ack = await reconciler.reconcile(event)

        assert ack.action == DUPLICATE
        assert len(commerce.draft_orders) == 1

    async def test_failure_after_cancel_is_duplicate(self, reconciler, commerce, make_event, ach_intent, ach_charge):
        await reconciler.reconcile(make_event("payment_intent.processing", ach_intent()))
        await reconciler.reconcile(make_event("charge.failed", ach_charge(failure_code="R01")))
        ack = await reconciler.reconcile(make_event("payment_intent.payment_failed", ach_intent()))

        assert ack.action == DUPLICATE
        assert len(commerce.cancelled) == 1

    async def test_failure_after_completion_needs_review(self, reconciler, commerce, make_event, ach_intent, ach_charge):
        await reconciler.reconcile(make_event("payment_intent.processing", ach_intent()))
        await reconciler.reconcile(make_event("charge.succeeded", ach_charge()))
        ack = await reconciler.reconcile(make_event("charge.failed", ach_charge(failure_code="R10")))

        assert ack.action == ERROR
        assert commerce.cancelled == []

    async def test_success_without_processing_event(self, reconciler, commerce, make_event, ach_intent):
        """A missed processing event is recovered: draft created then completed."""
        ack = await reconciler.reconcile(make_event("payment_intent.succeeded", ach_intent()))

        assert ack.action == ACH_COMPLETED
        assert len(commerce.draft_orders) == 1
        assert commerce.completed == [ack.order_id]

    async def test_failure_without_draft(self, reconciler, commerce, ledger, metrics, make_event, ach_intent, ach_charge):
        ack = await reconciler.reconcile(make_event("charge.failed", ach_charge(failure_code="R01")))

        assert ack.action == ACH_FAILED
        assert ack.order_id is None
        assert commerce.mutation_count == 0
        assert (await ledger.get("pi_ach_1")).status == OrderStatus.CANCELLED

        late = await reconciler.reconcile(make_event("payment_intent.processing", ach_intent()))
        assert late.action == DUPLICATE
        assert commerce.mutation_count == 0

    async def test_metrics_follow_lifecycle(self, reconciler, metrics, make_event, ach_intent, ach_charge):
        await metrics.track_started("pi_ach_1", 11800)
        await reconciler.reconcile(make_event("payment_intent.processing", ach_intent()))
        await reconciler.reconcile(make_event("charge.failed", ach_charge(failure_code="R01")))

        daily = await metrics.get_daily_metrics()
        assert daily["failed"]["count"] == 1
        assert daily["failed"]["failure_codes"] == {"R01": 1}
        assert await metrics.pending_payments() == set()


class TestAbandonedClaims:
    """A draft created but never recorded in the ledger is not stranded."""

    async def test_completion_recovers_unrecorded_draft(
        self, reconciler, commerce, ledger, store, clock, make_event, ach_intent, ach_charge
    ):
        working_set_json = store.set_json
        store.set_json = AsyncMock(side_effect=ConnectionError("store down"))
        first = await reconciler.reconcile(make_event("payment_intent.processing", ach_intent()))
        store.set_json = working_set_json

        assert first.action == ERROR
        assert len(commerce.draft_orders) == 1
        assert (await ledger.get("pi_ach_1")).status == OrderStatus.CREATING

        clock.advance(3600)
        ack = await reconciler.reconcile(make_event("charge.succeeded", ach_charge()))

        draft_id = next(iter(commerce.draft_orders))
        assert ack.action == ACH_COMPLETED
        assert ack.order_id == draft_id
        assert commerce.completed == [draft_id]
        assert len(commerce.draft_orders) == 1
        assert "ACH_COMPLETED" in commerce.tags_of(draft_id)
        assert (await ledger.get("pi_ach_1")).status == OrderStatus.COMPLETED

    async def test_failure_recovers_unrecorded_draft(
        self, reconciler, commerce, ledger, store, clock, make_event, ach_intent, ach_charge
    ):
        working_set_json = store.set_json
        store.set_json = AsyncMock(side_effect=ConnectionError("store down"))
        await reconciler.reconcile(make_event("payment_intent.processing", ach_intent()))
        store.set_json = working_set_json

        clock.advance(3600)
        ack = await reconciler.reconcile(make_event("charge.failed", ach_charge(failure_code="R01")))

        draft_id = next(iter(commerce.draft_orders))
        assert ack.action == ACH_FAILED
        assert commerce.cancelled[0][0] == draft_id
        assert (await ledger.get("pi_ach_1")).status == OrderStatus.CANCELLED

    async def test_redelivered_processing_finds_draft(
        self, reconciler, commerce, store, clock, make_event, ach_intent
    ):
        working_set_json = store.set_json
        store.set_json = AsyncMock(side_effect=ConnectionError("store down"))
        await reconciler.reconcile(make_event("payment_intent.processing", ach_intent()))
        store.set_json = working_set_json

        clock.advance(3600)
        ack = await reconciler.reconcile(make_event("payment_intent.processing", ach_intent()))

        assert ack.action == DUPLICATE
        assert len(commerce.draft_orders) == 1

    async def test_claim_without_draft_is_released(self, reconciler, commerce, ledger, clock, make_event, ach_intent):
        await ledger.claim(
            OrderRecord(
                payment_intent_id="pi_ach_1",
                order_kind=OrderKind.DRAFT,
                status=OrderStatus.CREATING,
                rail=PaymentRail.ACH,
                environment="development",
            )
        )
        clock.advance(3600)

        ack = await reconciler.reconcile(make_event("payment_intent.succeeded", ach_intent()))

        assert ack.action == ACH_COMPLETED
        assert len(commerce.draft_orders) == 1
        assert commerce.completed == [ack.order_id]

    async def test_fresh_claim_left_alone(self, reconciler, commerce, ledger, make_event, ach_charge):
        await ledger.claim(
            OrderRecord(
                payment_intent_id="pi_ach_1",
                order_kind=OrderKind.DRAFT,
                status=OrderStatus.CREATING,
                rail=PaymentRail.ACH,
                environment="development",
            )
        )

        ack = await reconciler.reconcile(make_event("charge.succeeded", ach_charge()))

        assert ack.action == ERROR
        assert commerce.mutation_count == 0
