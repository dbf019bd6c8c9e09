"""Request and response bodies for the checkout API."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ..models import BankAccountDetails, PaymentIntentRequest


class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    cart_token: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("cartToken", "cart_token")
    )
    cart_total: Optional[int] = Field(
        default=None, ge=0, validation_alias=AliasChoices("cartTotal", "cart_total")
    )


class SessionResponse(BaseModel):
    success: bool = True
    sessionToken: str
    csrfToken: str
    expiresIn: int


class CsrfResponse(BaseModel):
    csrfToken: str


class BankAccountBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    routing_number: str = Field(validation_alias=AliasChoices("routingNumber", "routing_number"))
    account_number: str = Field(validation_alias=AliasChoices("accountNumber", "account_number"))
    account_holder_name: str = Field(
        default="", validation_alias=AliasChoices("accountHolderName", "account_holder_name")
    )
    account_holder_type: str = Field(
        default="individual", validation_alias=AliasChoices("accountHolderType", "account_holder_type")
    )
    account_type: str = Field(
        default="checking", validation_alias=AliasChoices("accountType", "account_type")
    )


class CreatePaymentIntentBody(BaseModel):
    """Payment intent request.

    ``amount`` is left untyped so that strings, floats and booleans reach the
    orchestrator's amount check instead of being coerced.
    """

    model_config = ConfigDict(extra="ignore")

    amount: Any = None
    currency: Optional[str] = "usd"
    payment_method_types: Optional[List[str]] = Field(
        default=None,
        validation_alias=AliasChoices("paymentMethodTypes", "payment_method_types"),
    )
    customer_email: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("customerEmail", "customer_email")
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)
    bank_account: Optional[BankAccountBody] = Field(
        default=None, validation_alias=AliasChoices("bankAccount", "bank_account")
    )

    def to_request(self) -> PaymentIntentRequest:
        bank = None
        if self.bank_account is not None:
            bank = BankAccountDetails(**self.bank_account.model_dump())
        return PaymentIntentRequest(
            amount=self.amount,
            currency=self.currency or "usd",
            payment_method_types=self.payment_method_types,
            customer_email=self.customer_email,
            metadata=self.metadata,
            bank_account=bank,
        )


class PaymentIntentResponse(BaseModel):
    clientSecret: str
    paymentIntentId: str
    status: str
    nextAction: Optional[Dict[str, Any]] = None
