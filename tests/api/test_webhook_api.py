"""API tests for the Stripe webhook receiver, signed end to end."""
from __future__ import annotations

import hashlib
import hmac
import json
import time

import pytest

from r3_checkout.connectors import StripeConnector
from r3_checkout.models import OrderStatus

WEBHOOK_PATH = "/api/stripe/webhook"
WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def provider():
    return StripeConnector(api_key="sk_test_123", webhook_secret=WEBHOOK_SECRET)


def signed(event, secret=WEBHOOK_SECRET, timestamp=None):
    payload = json.dumps(event)
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return payload, {"Stripe-Signature": f"t={timestamp},v1={digest}", "Content-Type": "application/json"}


class TestSignature:
    async def test_missing_signature(self, client, commerce, make_event, card_intent):
        response = await client.post(
            WEBHOOK_PATH,
            content=json.dumps(make_event("payment_intent.succeeded", card_intent())),
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_SIGNATURE"
        assert commerce.mutation_count == 0

    async def test_wrong_secret(self, client, commerce, make_event, card_intent):
        payload, headers = signed(make_event("payment_intent.succeeded", card_intent()), secret="whsec_other")
        response = await client.post(WEBHOOK_PATH, content=payload, headers=headers)

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_SIGNATURE"
        assert commerce.mutation_count == 0

    async def test_stale_timestamp(self, client, commerce, make_event, card_intent):
        payload, headers = signed(
            make_event("payment_intent.succeeded", card_intent()),
            timestamp=int(time.time()) - 3600,
        )
        response = await client.post(WEBHOOK_PATH, content=payload, headers=headers)

        assert response.status_code == 400
        assert commerce.mutation_count == 0

    async def test_tampered_body(self, client, commerce, make_event, card_intent):
        payload, headers = signed(make_event("payment_intent.succeeded", card_intent()))
        response = await client.post(WEBHOOK_PATH, content=payload.replace("11800", "1"), headers=headers)

        assert response.status_code == 400
        assert commerce.mutation_count == 0

    async def test_not_an_event(self, client):
        payload, headers = signed({"hello": "world"})
        response = await client.post(WEBHOOK_PATH, content=payload, headers=headers)

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_PAYLOAD"


class TestDelivery:
    async def test_card_success_creates_test_draft(self, client, commerce, make_event, card_intent):
        payload, headers = signed(make_event("payment_intent.succeeded", card_intent()))
        response = await client.post(WEBHOOK_PATH, content=payload, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "action": "draft_created"}
        assert len(commerce.draft_orders) == 1
        assert commerce.orders == {}

    async def test_redelivery_acknowledged_once(self, client, commerce, make_event, card_intent):
        payload, headers = signed(make_event("payment_intent.succeeded", card_intent()))

        first = await client.post(WEBHOOK_PATH, content=payload, headers=headers)
        second = await client.post(WEBHOOK_PATH, content=payload, headers=headers)

        assert first.json()["action"] == "draft_created"
        assert second.status_code == 200
        assert second.json()["action"] == "duplicate"
        assert len(commerce.draft_orders) == 1

    async def test_other_environment_acknowledged(self, client, commerce, make_event, card_intent):
        payload, headers = signed(make_event("payment_intent.succeeded", card_intent(environment="production")))
        response = await client.post(WEBHOOK_PATH, content=payload, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "action": "environment_mismatch"}
        assert commerce.mutation_count == 0

    async def test_unhandled_event_acknowledged(self, client, commerce, make_event):
        payload, headers = signed(make_event("customer.created", {"id": "cus_1"}))
        response = await client.post(WEBHOOK_PATH, content=payload, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "action": "ignored"}

    async def test_not_rate_limited(self, client, make_event):
        payload, headers = signed(make_event("customer.created", {"id": "cus_1"}))
        response = await client.post(WEBHOOK_PATH, content=payload, headers=headers)
        assert "X-RateLimit-Limit" not in response.headers


class TestAchOverHttp:
    async def test_failed_bank_payment_cancels_draft(
        self, client, commerce, ledger, make_event, ach_intent, ach_charge
    ):
        """Scenario: processing then a failed charge leaves a cancelled draft."""
        payload, headers = signed(make_event("payment_intent.processing", ach_intent()))
        created = await client.post(WEBHOOK_PATH, content=payload, headers=headers)
        assert created.json()["action"] == "draft_created"
        draft_id = next(iter(commerce.draft_orders))

        payload, headers = signed(
            make_event(
                "charge.failed",
                ach_charge(failure_code="insufficient_funds", failure_message="Insufficient funds"),
            )
        )
        failed = await client.post(WEBHOOK_PATH, content=payload, headers=headers)

        assert failed.status_code == 200
        assert failed.json() == {"received": True, "action": "ach_failed"}
        tags = commerce.tags_of(draft_id)
        assert "ACH_FAILED" in tags
        assert "ACH_PENDING" not in tags
        assert commerce.completed == []
        assert commerce.orders == {}
        assert (await ledger.get("pi_ach_1")).status == OrderStatus.CANCELLED

    async def test_successful_bank_payment_completes_draft(
        self, client, commerce, make_event, ach_intent, ach_charge
    ):
        for event in (
            make_event("payment_intent.processing", ach_intent()),
            make_event("charge.succeeded", ach_charge()),
        ):
            payload, headers = signed(event)
            response = await client.post(WEBHOOK_PATH, content=payload, headers=headers)
            assert response.status_code == 200

        assert response.json()["action"] == "ach_completed"
        assert len(commerce.completed) == 1
