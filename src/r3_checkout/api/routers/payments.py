"""Payment intent endpoint."""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import APIRouter, Depends, Request

from ...models import CheckoutSession
from ...orchestrator import PaymentIntentOrchestrator
from ..dependencies import client_context, require_csrf
from ..schemas import CreatePaymentIntentBody, PaymentIntentResponse

router = APIRouter(tags=["payments"])


@dataclass
class PaymentDependencies:
    orchestrator: PaymentIntentOrchestrator


def get_deps() -> PaymentDependencies:
    raise NotImplementedError("Dependency override required")


@router.post("/stripe/create-payment-intent", response_model=PaymentIntentResponse)
async def create_payment_intent(
    payload: CreatePaymentIntentBody,
    request: Request,
    session: CheckoutSession = Depends(require_csrf),
    deps: PaymentDependencies = Depends(get_deps),
):
    result = await deps.orchestrator.create_payment_intent(
        session,
        payload.to_request(),
        client_context(request),
    )
    return PaymentIntentResponse(
        clientSecret=result.client_secret,
        paymentIntentId=result.payment_intent_id,
        status=result.status,
        nextAction=result.next_action,
    )
