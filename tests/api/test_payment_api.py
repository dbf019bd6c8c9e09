"""API tests for payment intent creation."""
from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from r3_checkout.api.main import create_app
from r3_checkout.config import CheckoutSettings
from r3_checkout.sessions import session_key

INTENT_PATH = "/api/stripe/create-payment-intent"


class TestCreatePaymentIntent:
    """POST /api/stripe/create-payment-intent"""

    async def test_card_intent(self, client, open_session, provider):
        _, headers = await open_session()
        response = await client.post(
            INTENT_PATH,
            json={"amount": 11800, "customerEmail": "buyer@example.com"},
            headers=headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["clientSecret"] == "pi_test_1_secret_abc"
        assert body["paymentIntentId"] == "pi_test_1"
        assert body["status"] == "requires_payment_method"
        assert provider.intent_calls[0][0]["payment_method_types"] == ["card"]

    async def test_ach_intent_recorded_on_session(self, client, open_session, provider, services):
        """Scenario: a bank payment intent is created and tied to the session."""
        session_body, headers = await open_session()
        response = await client.post(
            INTENT_PATH,
            json={"amount": 11800, "paymentMethodTypes": ["us_bank_account"]},
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json()["clientSecret"]
        params = provider.intent_calls[0][0]
        assert params["metadata"]["payment_rail"] == "ach"
        assert params["metadata"]["environment"] == "development"

        stored = await services.store.get_json(session_key(session_body["sessionToken"]))
        assert stored["payment_intents"] == ["pi_test_1"]

    async def test_manual_bank_account(self, client, open_session, provider):
        _, headers = await open_session()
        response = await client.post(
            INTENT_PATH,
            json={
                "amount": 11800,
                "paymentMethodTypes": ["us_bank_account"],
                "bankAccount": {
                    "routingNumber": "110000000",
                    "accountNumber": "000123456789",
                    "accountHolderName": "Dana Reyes",
                },
            },
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "processing"
        assert len(provider.payment_method_calls) == 1

    @pytest.mark.parametrize("csrf", [None, "not-the-token"])
    async def test_csrf_required(self, client, open_session, provider, csrf):
        _, headers = await open_session()
        request_headers = {"Authorization": headers["Authorization"]}
        if csrf is not None:
            request_headers["x-csrf-token"] = csrf

        response = await client.post(INTENT_PATH, json={"amount": 11800}, headers=request_headers)

        assert response.status_code == 403
        assert response.json()["code"] == "INVALID_CSRF"
        assert provider.intent_calls == []

    async def test_session_required(self, client, provider):
        client.cookies.clear()
        response = await client.post(INTENT_PATH, json={"amount": 11800})

        assert response.status_code == 401
        assert provider.intent_calls == []

    @pytest.mark.parametrize("amount", [0, -100, 1000000, "118.00"])
    async def test_invalid_amount(self, client, open_session, provider, amount):
        _, headers = await open_session()
        response = await client.post(INTENT_PATH, json={"amount": amount}, headers=headers)

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_AMOUNT"
        assert provider.intent_calls == []

    async def test_provider_unavailable(self, client, open_session, provider):
        _, headers = await open_session()
        provider.fail_with = ConnectionError("stripe unreachable")

        response = await client.post(INTENT_PATH, json={"amount": 11800}, headers=headers)

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "30"
        body = response.json()
        assert body["code"] == "PROVIDER_UNAVAILABLE"
        assert body["retryAfter"] == 30
        # one idempotency key across every attempt
        assert len(provider.intent_calls) == 3
        assert len({key for _, key in provider.intent_calls}) == 1


class TestPaymentRateLimit:
    """The payment path has its own, stricter limit."""

    @pytest.fixture
    def settings(self):
        return CheckoutSettings(
            deploy_branch="dev",
            stripe_secret_key="sk_test_123",
            stripe_webhook_secret="whsec_test_secret",
            log_json=False,
            payment_rate_limit_per_minute=2,
        )

    async def test_third_attempt_limited(self, client, open_session, provider):
        _, headers = await open_session()

        for _ in range(2):
            response = await client.post(INTENT_PATH, json={"amount": 11800}, headers=headers)
            assert response.status_code == 200

        response = await client.post(INTENT_PATH, json={"amount": 11800}, headers=headers)
        assert response.status_code == 429
        assert response.json() == {"error": "Too many requests", "code": "RATE_LIMIT_EXCEEDED"}
        assert int(response.headers["Retry-After"]) >= 1
        assert len(provider.intent_calls) == 2

    async def test_other_paths_unaffected(self, client, open_session):
        _, headers = await open_session()
        for _ in range(3):
            await client.post(INTENT_PATH, json={"amount": 11800}, headers=headers)

        response = await client.get("/api/checkout/csrf", headers={"Authorization": headers["Authorization"]})
        assert response.status_code == 200


class TestGlobalRateLimit:
    async def test_health_never_limited(self, services):
        settings = CheckoutSettings(
            deploy_branch="dev",
            stripe_secret_key="sk_test_123",
            stripe_webhook_secret="whsec_test_secret",
            log_json=False,
            rate_limit_per_minute=1,
        )
        app = create_app(settings=settings, services=services)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
            for _ in range(3):
                assert (await client.get("/health")).status_code == 200
