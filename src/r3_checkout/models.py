"""Checkout data models."""
from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional, List, Dict


DEFAULT_SESSION_TTL_SECONDS = 30 * 60
MAX_PAYMENT_AMOUNT = 999999  # minor units, $9,999.99

# Draft order tags
TAG_ACH_PAYMENT = "ACH_PAYMENT"
TAG_ACH_PENDING = "ACH_PENDING"
TAG_ACH_COMPLETED = "ACH_COMPLETED"
TAG_ACH_FAILED = "ACH_FAILED"
TAG_MANUAL_REVIEW = "MANUAL_REVIEW"
TAG_TEST_ORDER = "TEST_ORDER"


class PaymentMethodType(str, Enum):
    """Payment rails accepted for payment intents."""
    CARD = "card"
    US_BANK_ACCOUNT = "us_bank_account"


class PaymentRail(str, Enum):
    CARD = "card"
    ACH = "ach"


class OrderKind(str, Enum):
    DRAFT = "draft"
    ORDER = "order"


class OrderStatus(str, Enum):
    """Lifecycle of a downstream order as tracked by the ledger."""
    CREATING = "creating"
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REVIEW = "review"


@dataclass
class ClientContext:
    """What the current request tells us about the browser behind it."""
    user_agent: str = ""
    ip_address: str = ""
    accept_language: str = ""

    @property
    def fingerprint(self) -> str:
        raw = f"{self.user_agent}|{self.accept_language}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class CheckoutSession:
    """Server-side record of one checkout attempt."""
    session_id: str
    csrf_token: str
    cart_token: str
    domain: str
    created_at: float
    last_activity: float
    expires_at: float
    fingerprint: str = ""
    user_agent: str = ""
    ip_address: str = ""
    cart_total: Optional[int] = None
    payment_intents: List[str] = field(default_factory=list)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckoutSession":
        return cls(
            session_id=data["session_id"],
            csrf_token=data.get("csrf_token", ""),
            cart_token=data["cart_token"],
            domain=data.get("domain", ""),
            created_at=float(data["created_at"]),
            last_activity=float(data.get("last_activity", data["created_at"])),
            expires_at=float(data["expires_at"]),
            fingerprint=data.get("fingerprint", ""),
            user_agent=data.get("user_agent", ""),
            ip_address=data.get("ip_address", ""),
            cart_total=data.get("cart_total"),
            payment_intents=list(data.get("payment_intents") or []),
        )


@dataclass
class SessionGrant:
    """Credentials handed to the client on session creation."""
    session_id: str
    csrf_token: str
    expires_at: float
    expires_in: int


@dataclass
class SessionLookup:
    """Outcome of a session lookup.

    ``error`` is the caller-visible message and is identical for every
    failure; ``reason`` and ``suspicious`` are for telemetry only.
    """
    valid: bool
    session: Optional[CheckoutSession] = None
    error: Optional[str] = None
    suspicious: bool = False
    reason: Optional[str] = None


@dataclass
class BankAccountDetails:
    """Manually entered US bank account."""
    routing_number: str
    account_number: str
    account_holder_name: str
    account_holder_type: str = "individual"
    account_type: str = "checking"


@dataclass
class PaymentIntentRequest:
    """Client request for a new payment intent."""
    amount: Any
    currency: str = "usd"
    payment_method_types: Optional[List[str]] = None
    customer_email: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    bank_account: Optional[BankAccountDetails] = None


@dataclass
class PaymentIntentResult:
    """What the client needs to confirm a payment intent."""
    payment_intent_id: str
    client_secret: str
    status: str
    amount: int
    currency: str
    payment_method_types: List[str] = field(default_factory=list)
    next_action: Optional[Dict[str, Any]] = None


@dataclass
class OrderRecord:
    """Idempotency ledger entry: one per payment intent."""
    payment_intent_id: str
    order_kind: OrderKind
    status: OrderStatus
    rail: PaymentRail
    environment: str
    order_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["order_kind"] = self.order_kind.value
        data["status"] = self.status.value
        data["rail"] = self.rail.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderRecord":
        return cls(
            payment_intent_id=data["payment_intent_id"],
            order_kind=OrderKind(data["order_kind"]),
            status=OrderStatus(data["status"]),
            rail=PaymentRail(data["rail"]),
            environment=data.get("environment", ""),
            order_id=data.get("order_id"),
            tags=list(data.get("tags") or []),
            failure_code=data.get("failure_code"),
            failure_message=data.get("failure_message"),
            created_at=float(data.get("created_at") or 0.0),
            updated_at=float(data.get("updated_at") or 0.0),
        )


@dataclass
class WebhookAck:
    """Acknowledgement returned for an authenticated webhook event."""
    received: bool = True
    action: str = "ignored"
    event_type: Optional[str] = None
    payment_intent_id: Optional[str] = None
    order_id: Optional[str] = None
