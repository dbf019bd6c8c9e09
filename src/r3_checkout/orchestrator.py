"""
Payment intent orchestration for card and ACH rails.

The orchestrator validates the request in full before any provider call,
stamps checkout metadata on the intent, and routes it to one of three
flows:

- card: a plain card payment intent
- ACH bank connection: a ``us_bank_account`` intent the client completes
  with Financial Connections
- ACH manual entry: the server creates the bank payment method from a
  validated routing/account pair and confirms the intent immediately

Every provider call goes through the resilience wrapper under the
``stripe`` dependency. One idempotency key is generated per operation and
reused across retries, so a retried request can never create a second
intent.
"""
from __future__ import annotations

import json
import logging
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .ach_metrics import AchMetrics
from .environment import Environment
from .exceptions import CheckoutException, InvalidAmountError, InvalidInputError
from .logging_config import log_payment, mask_token
from .models import (
    BankAccountDetails,
    CheckoutSession,
    ClientContext,
    MAX_PAYMENT_AMOUNT,
    PaymentIntentRequest,
    PaymentIntentResult,
    PaymentMethodType,
    PaymentRail,
)
from .resilience import STRIPE, ResilienceWrapper
from .security import (
    MAX_METADATA_VALUE_LENGTH,
    is_valid_email,
    mask_account_number,
    sanitize_text,
    validate_account_number,
    validate_routing_number,
)
from .sessions import SessionManager
from .connectors.base import PaymentProvider

logger = logging.getLogger(__name__)

MAX_METADATA_KEYS = 50
# keys the orchestrator stamps itself; client values never override them
RESERVED_METADATA_KEYS = ("sessionId", "cartToken", "domain", "environment", "timestamp")
ACCOUNT_HOLDER_TYPES = ("individual", "company")
ACCOUNT_TYPES = ("checking", "savings")
_CURRENCY = re.compile(r"^[a-z]{3}$")


def generate_idempotency_key() -> str:
    return f"checkout-{uuid.uuid4()}"


def validate_amount(amount: Any, maximum: int = MAX_PAYMENT_AMOUNT) -> int:
    """Return the amount in minor units or raise InvalidAmountError."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(amount, maximum)
    if amount <= 0 or amount > maximum:
        raise InvalidAmountError(amount, maximum)
    return amount


def normalize_currency(currency: Optional[str]) -> str:
    value = (currency or "usd").strip().lower()
    if not _CURRENCY.match(value):
        raise InvalidInputError("Invalid currency", field="currency")
    return value


def normalize_payment_method_types(types: Optional[List[str]]) -> List[str]:
    if not types:
        return [PaymentMethodType.CARD.value]
    if not isinstance(types, list):
        raise InvalidInputError("Invalid payment method types", field="payment_method_types")
    allowed = {t.value for t in PaymentMethodType}
    result: List[str] = []
    for value in types:
        if value not in allowed:
            raise InvalidInputError(
                "Unsupported payment method type",
                field="payment_method_types",
                details={"allowed": sorted(allowed)},
            )
        if value not in result:
            result.append(value)
    return result


def sanitize_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Provider metadata is flat strings: encode, strip markup, cap keys and length."""
    if not metadata:
        return {}
    if not isinstance(metadata, dict):
        raise InvalidInputError("Invalid metadata", field="metadata")

    cleaned: Dict[str, str] = {}
    for key, value in metadata.items():
        if len(cleaned) >= MAX_METADATA_KEYS:
            break
        if value is None or key in RESERVED_METADATA_KEYS:
            continue
        safe_key = sanitize_text(key, max_length=40)
        if not safe_key:
            continue
        if isinstance(value, str):
            text = sanitize_text(value, max_length=None)
        elif isinstance(value, (dict, list)):
            # structured values (items, shipping address) keep their JSON shape
            text = json.dumps(value, separators=(",", ":"))
        else:
            text = sanitize_text(json.dumps(value), max_length=None)
        # truncated JSON would charge the customer for an order that cannot be built
        if len(text) > MAX_METADATA_VALUE_LENGTH:
            raise InvalidInputError("Metadata value too long", field=f"metadata.{safe_key}")
        cleaned[safe_key] = text
    return cleaned


def validate_bank_account(bank_account: BankAccountDetails) -> None:
    if not validate_routing_number(bank_account.routing_number):
        raise InvalidInputError("Invalid routing number", field="routing_number")
    if not validate_account_number(bank_account.account_number):
        raise InvalidInputError("Invalid account number", field="account_number")
    if not (bank_account.account_holder_name or "").strip():
        raise InvalidInputError("Account holder name is required", field="account_holder_name")
    if bank_account.account_holder_type not in ACCOUNT_HOLDER_TYPES:
        raise InvalidInputError("Invalid account holder type", field="account_holder_type")
    if bank_account.account_type not in ACCOUNT_TYPES:
        raise InvalidInputError("Invalid account type", field="account_type")


class PaymentIntentOrchestrator:
    """Creates payment intents on behalf of a validated checkout session."""

    def __init__(
        self,
        provider: PaymentProvider,
        sessions: SessionManager,
        resilience: ResilienceWrapper,
        environment: Environment,
        max_amount: int = MAX_PAYMENT_AMOUNT,
        metrics: Optional[AchMetrics] = None,
        ach_verification_method: str = "automatic",
        clock: Callable[[], float] = time.time,
    ):
        self._provider = provider
        self._sessions = sessions
        self._resilience = resilience
        self._environment = environment
        self._max_amount = max_amount
        self._metrics = metrics
        self._verification_method = ach_verification_method
        self._clock = clock

    async def create_payment_intent(
        self,
        session: CheckoutSession,
        request: PaymentIntentRequest,
        client: ClientContext,
    ) -> PaymentIntentResult:
        """
        Create a payment intent for the session's cart.

        Args:
            session: Session already validated by the caller
            request: Client request
            client: Request context, used for the ACH mandate

        Returns:
            PaymentIntentResult with the client secret

        Raises:
            InvalidAmountError: Amount not a positive integer within the ceiling
            InvalidInputError: Any other client-correctable problem
            ProviderRejectedError: The provider refused the request
            ProviderUnavailableError: The provider is unreachable or its breaker is open
        """
        amount = validate_amount(request.amount, self._max_amount)
        currency = normalize_currency(request.currency)
        method_types = normalize_payment_method_types(request.payment_method_types)

        customer_email = None
        if request.customer_email:
            if not is_valid_email(request.customer_email):
                raise InvalidInputError("Invalid email address", field="customer_email")
            customer_email = sanitize_text(request.customer_email, max_length=254)

        is_ach = PaymentMethodType.US_BANK_ACCOUNT.value in method_types
        if request.bank_account is not None:
            if not is_ach:
                raise InvalidInputError(
                    "Bank account details require us_bank_account",
                    field="payment_method_types",
                )
            validate_bank_account(request.bank_account)

        metadata = self._stamp_metadata(session, request.metadata)
        # the order is built from the metadata email, so it gets the same check
        if customer_email:
            metadata["customer_email"] = customer_email
        elif "customer_email" in metadata and not is_valid_email(metadata["customer_email"]):
            raise InvalidInputError("Invalid email address", field="customer_email")
        rail = PaymentRail.ACH if is_ach else PaymentRail.CARD
        metadata["payment_rail"] = rail.value

        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
        }
        if customer_email:
            params["receipt_email"] = customer_email

        idempotency_key = generate_idempotency_key()

        if request.bank_account is not None:
            intent = await self._create_manual_ach(params, request.bank_account, customer_email, client, idempotency_key)
        elif is_ach:
            params["payment_method_types"] = [PaymentMethodType.US_BANK_ACCOUNT.value]
            params["payment_method_options"] = {
                "us_bank_account": {
                    "financial_connections": {"permissions": ["payment_method"]},
                    "verification_method": self._verification_method,
                }
            }
            intent = await self._resilience.call(
                STRIPE, self._provider.create_payment_intent, params, idempotency_key
            )
        else:
            params["payment_method_types"] = method_types
            intent = await self._resilience.call(
                STRIPE, self._provider.create_payment_intent, params, idempotency_key
            )

        log_payment(
            logger,
            "info",
            "Payment intent created",
            payment_intent_id=intent["id"],
            amount=amount,
            rail=rail.value,
            session_ref=mask_token(session.session_id),
            environment=self._environment.value,
        )

        await self._attach_to_session(session, intent["id"])
        if rail == PaymentRail.ACH and self._metrics is not None:
            await self._metrics.track_started(intent["id"], amount)

        return PaymentIntentResult(
            payment_intent_id=intent["id"],
            client_secret=intent.get("client_secret") or "",
            status=intent.get("status") or "",
            amount=amount,
            currency=currency,
            payment_method_types=intent.get("payment_method_types") or params.get("payment_method_types", []),
            next_action=intent.get("next_action"),
        )

    def _stamp_metadata(self, session: CheckoutSession, metadata: Optional[Dict[str, Any]]) -> Dict[str, str]:
        stamped = sanitize_metadata(metadata)
        stamped.update({
            "sessionId": session.session_id,
            "cartToken": session.cart_token,
            "domain": session.domain,
            "environment": self._environment.value,
            "timestamp": datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
        })
        return stamped

    async def _create_manual_ach(
        self,
        params: Dict[str, Any],
        bank_account: BankAccountDetails,
        customer_email: Optional[str],
        client: ClientContext,
        idempotency_key: str,
    ) -> Dict[str, Any]:
        billing_details: Dict[str, Any] = {"name": sanitize_text(bank_account.account_holder_name, max_length=200)}
        if customer_email:
            billing_details["email"] = customer_email

        method_params = {
            "type": PaymentMethodType.US_BANK_ACCOUNT.value,
            "us_bank_account": {
                "routing_number": bank_account.routing_number,
                "account_number": bank_account.account_number,
                "account_holder_type": bank_account.account_holder_type,
                "account_type": bank_account.account_type,
            },
            "billing_details": billing_details,
        }
        payment_method = await self._resilience.call(
            STRIPE, self._provider.create_payment_method, method_params, f"{idempotency_key}-pm"
        )
        logger.info(
            "Bank payment method created for account %s",
            mask_account_number(bank_account.account_number),
        )

        params.update({
            "payment_method_types": [PaymentMethodType.US_BANK_ACCOUNT.value],
            "payment_method": payment_method["id"],
            "confirm": True,
            "mandate_data": {
                "customer_acceptance": {
                    "type": "online",
                    "online": {
                        "ip_address": client.ip_address,
                        "user_agent": client.user_agent,
                    },
                }
            },
        })
        return await self._resilience.call(
            STRIPE, self._provider.create_payment_intent, params, idempotency_key
        )

    async def _attach_to_session(self, session: CheckoutSession, payment_intent_id: str) -> None:
        # the provider intent already exists, so a failed write is logged and not raised
        try:
            await self._sessions.record_payment_intent(session.session_id, payment_intent_id)
            session.payment_intents.append(payment_intent_id)
        except CheckoutException as exc:
            logger.error(
                "Failed to record payment intent on session: %s",
                exc.error_code,
                extra={
                    "payment_intent_id": payment_intent_id,
                    "session_ref": mask_token(session.session_id),
                },
            )
