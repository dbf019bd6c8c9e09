"""
Shared fixtures for the checkout test suite.

Everything external is faked at the connector seam: the payment provider and
the commerce platform are in-memory doubles, the key-value store is the
in-memory backend, and retries never sleep.
"""
from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from httpx import ASGITransport, AsyncClient

from r3_checkout.ach_metrics import AchMetrics
from r3_checkout.api.main import CheckoutServices, create_app
from r3_checkout.config import CheckoutSettings
from r3_checkout.connectors.base import CommercePlatform, PaymentProvider
from r3_checkout.environment import Environment
from r3_checkout.exceptions import WebhookPayloadError, WebhookSignatureError
from r3_checkout.models import ClientContext
from r3_checkout.order_ledger import OrderLedger
from r3_checkout.orders import is_draft_for_payment_intent
from r3_checkout.orchestrator import PaymentIntentOrchestrator
from r3_checkout.rates import FlatRateShippingCalculator, ShippingService, StateTaxCalculator
from r3_checkout.resilience import ResilienceWrapper
from r3_checkout.sessions import SessionManager
from r3_checkout.storage import InMemoryKeyValueStore
from r3_checkout.webhooks import WebhookReconciler

VALID_SIGNATURE = "t=1,v1=valid"
STOREFRONT_ORIGIN = "https://rthree.io"
BROWSER_USER_AGENT = "Mozilla/5.0 (checkout-tests)"


class ManualClock:
    """Deterministic clock; advance it explicitly."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(_delay: float) -> None:
    return None


class FakePaymentProvider(PaymentProvider):
    """Records every call; ``fail_with`` makes the next calls raise."""

    def __init__(self):
        self.intent_calls: List[tuple[Dict[str, Any], str]] = []
        self.payment_method_calls: List[tuple[Dict[str, Any], str]] = []
        self.fail_with: Optional[BaseException] = None
        self._counter = 0

    async def create_payment_intent(self, params: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        self.intent_calls.append((params, idempotency_key))
        if self.fail_with is not None:
            raise self.fail_with
        self._counter += 1
        intent_id = f"pi_test_{self._counter}"
        return {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret_abc",
            "status": "processing" if params.get("confirm") else "requires_payment_method",
            "amount": params["amount"],
            "currency": params["currency"],
            "payment_method_types": params.get("payment_method_types", ["card"]),
            "livemode": False,
            "next_action": None,
        }

    async def create_payment_method(self, params: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        self.payment_method_calls.append((params, idempotency_key))
        if self.fail_with is not None:
            raise self.fail_with
        return {"id": "pm_test_bank", "type": "us_bank_account"}

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        if signature != VALID_SIGNATURE:
            raise WebhookSignatureError("Invalid signature")
        try:
            return json.loads(payload)
        except ValueError as exc:
            raise WebhookPayloadError("Invalid payload") from exc


class FakeCommercePlatform(CommercePlatform):
    """In-memory draft orders and orders keyed by string id."""

    def __init__(self):
        self.draft_orders: Dict[str, Dict[str, Any]] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.updates: List[tuple[str, Dict[str, Any]]] = []
        self.completed: List[str] = []
        self.cancelled: List[tuple[str, List[str], str]] = []
        self.fail_with: Optional[BaseException] = None
        self._next_id = 1000

    @property
    def mutation_count(self) -> int:
        return (
            len(self.draft_orders)
            + len(self.orders)
            + len(self.updates)
            + len(self.completed)
            + len(self.cancelled)
        )

    def tags_of(self, draft_order_id: str) -> List[str]:
        return self.draft_orders[draft_order_id]["tags"].split(",")

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    async def create_draft_order(self, draft_order: Dict[str, Any]) -> Dict[str, Any]:
        if self.fail_with is not None:
            raise self.fail_with
        draft_id = self._new_id()
        self.draft_orders[str(draft_id)] = {**draft_order, "id": draft_id, "status": "open"}
        return self.draft_orders[str(draft_id)]

    async def find_draft_order(self, payment_intent_id: str) -> Optional[Dict[str, Any]]:
        for draft in self.draft_orders.values():
            if draft["status"] == "open" and is_draft_for_payment_intent(draft, payment_intent_id):
                return draft
        return None

    async def update_draft_order(self, draft_order_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        if self.fail_with is not None:
            raise self.fail_with
        self.updates.append((draft_order_id, changes))
        self.draft_orders[draft_order_id].update(changes)
        return self.draft_orders[draft_order_id]

    async def complete_draft_order(self, draft_order_id: str, payment_pending: bool = False) -> Dict[str, Any]:
        if self.fail_with is not None:
            raise self.fail_with
        self.completed.append(draft_order_id)
        self.draft_orders[draft_order_id]["status"] = "completed"
        return self.draft_orders[draft_order_id]

    async def cancel_draft_order(self, draft_order_id: str, tags: List[str], note: str) -> Dict[str, Any]:
        if self.fail_with is not None:
            raise self.fail_with
        self.cancelled.append((draft_order_id, tags, note))
        self.draft_orders[draft_order_id].update({"tags": ",".join(tags), "note": note, "status": "cancelled"})
        return self.draft_orders[draft_order_id]

    async def create_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        if self.fail_with is not None:
            raise self.fail_with
        order_id = self._new_id()
        self.orders[str(order_id)] = {**order, "id": order_id}
        return self.orders[str(order_id)]


# =============================================================================
# Core fixtures
# =============================================================================

@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(clock):
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def resilience(clock):
    return ResilienceWrapper(sleep=no_sleep, clock=clock)


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest.fixture
def commerce():
    return FakeCommercePlatform()


@pytest.fixture
def environment():
    return Environment.DEVELOPMENT


@pytest.fixture
def client_ctx():
    return ClientContext(user_agent=BROWSER_USER_AGENT, ip_address="203.0.113.7", accept_language="en-US")


@pytest.fixture
def metrics(store, clock):
    return AchMetrics(store, clock=clock)


@pytest.fixture
def sessions(store, resilience, environment, clock):
    return SessionManager(store, resilience, environment, ttl_seconds=1800, clock=clock)


@pytest.fixture
def ledger(store, resilience, clock):
    return OrderLedger(store, resilience, clock=clock)


@pytest.fixture
def orchestrator(provider, sessions, resilience, environment, metrics, clock):
    return PaymentIntentOrchestrator(
        provider, sessions, resilience, environment, metrics=metrics, clock=clock
    )


@pytest.fixture
def reconciler(provider, commerce, ledger, environment, resilience, metrics, clock):
    return WebhookReconciler(
        provider, commerce, ledger, environment, resilience, metrics=metrics, clock=clock
    )


@pytest.fixture
def services(store, resilience, sessions, orchestrator, reconciler, provider, commerce):
    flat_rate = FlatRateShippingCalculator(1000)
    return CheckoutServices(
        store=store,
        resilience=resilience,
        sessions=sessions,
        orchestrator=orchestrator,
        reconciler=reconciler,
        shipping=ShippingService(flat_rate, resilience, fallback=flat_rate),
        tax=StateTaxCalculator({"CA": Decimal("0.0725")}),
        provider=provider,
        commerce=commerce,
    )


@pytest.fixture
def settings():
    return CheckoutSettings(
        deploy_branch="dev",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test_secret",
        log_json=False,
    )


@pytest.fixture
def app(settings, services):
    return create_app(settings=settings, services=services)


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://testserver",
        headers={"Origin": STOREFRONT_ORIGIN, "User-Agent": BROWSER_USER_AGENT},
    ) as client:
        yield client


@pytest.fixture
def open_session(client):
    """Create a checkout session and return (session body, auth headers)."""

    async def _open(cart_token: str = "abc", cart_total: int = 10000):
        response = await client.post(
            "/api/checkout/session",
            json={"cartToken": cart_token, "cartTotal": cart_total},
        )
        assert response.status_code == 201, response.text
        body = response.json()
        headers = {
            "Authorization": f"Bearer {body['sessionToken']}",
            "x-csrf-token": body["csrfToken"],
        }
        return body, headers

    return _open


# =============================================================================
# Event builders
# =============================================================================

ITEMS = [
    {"variant_id": "gid://shopify/ProductVariant/4401", "quantity": 2, "price": 5000, "title": "Trauma Kit"},
]
ADDRESS = {
    "first_name": "Dana",
    "last_name": "Reyes",
    "address1": "1 Market St",
    "city": "San Francisco",
    "province_code": "CA",
    "zip": "94105",
    "country_code": "US",
}


def _metadata(environment: Optional[str], rail: str, **extra: Any) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "customer_email": "buyer@example.com",
        "customer_first_name": "Dana",
        "customer_last_name": "Reyes",
        "items": json.dumps(ITEMS),
        "shipping_address": json.dumps(ADDRESS),
        "shipping_price": "1000",
        "tax_amount": "800",
        "payment_rail": rail,
    }
    if environment is not None:
        metadata["environment"] = environment
    metadata.update(extra)
    return metadata


@pytest.fixture
def make_event():
    def _make(event_type: str, obj: Dict[str, Any], livemode: bool = False) -> Dict[str, Any]:
        return {
            "id": f"evt_{event_type.replace('.', '_')}",
            "type": event_type,
            "livemode": livemode,
            "data": {"object": obj},
        }

    return _make


@pytest.fixture
def card_intent():
    def _make(
        payment_intent_id: str = "pi_card_1",
        environment: Optional[str] = "development",
        **metadata: Any,
    ) -> Dict[str, Any]:
        return {
            "id": payment_intent_id,
            "object": "payment_intent",
            "amount": 11800,
            "currency": "usd",
            "payment_method_types": ["card"],
            "livemode": False,
            "metadata": _metadata(environment, "card", **metadata),
        }

    return _make


@pytest.fixture
def ach_intent():
    def _make(
        payment_intent_id: str = "pi_ach_1",
        environment: Optional[str] = "development",
        **metadata: Any,
    ) -> Dict[str, Any]:
        return {
            "id": payment_intent_id,
            "object": "payment_intent",
            "amount": 11800,
            "currency": "usd",
            "payment_method_types": ["us_bank_account"],
            "livemode": False,
            "metadata": _metadata(environment, "ach", **metadata),
        }

    return _make


@pytest.fixture
def ach_charge():
    def _make(
        payment_intent_id: str = "pi_ach_1",
        environment: Optional[str] = "development",
        failure_code: Optional[str] = None,
        failure_message: Optional[str] = None,
    ) -> Dict[str, Any]:
        return {
            "id": f"ch_{payment_intent_id}",
            "object": "charge",
            "payment_intent": payment_intent_id,
            "amount": 11800,
            "currency": "usd",
            "payment_method_details": {"type": "us_bank_account"},
            "failure_code": failure_code,
            "failure_message": failure_message,
            "metadata": _metadata(environment, "ach"),
        }

    return _make
