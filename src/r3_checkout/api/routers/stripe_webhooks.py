"""Stripe webhook receiver.

The raw body is read before any parsing: the signature covers the exact
bytes Stripe sent.
"""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import APIRouter, Depends, Request

from ...webhooks import WebhookReconciler

router = APIRouter(tags=["webhooks"])


@dataclass
class WebhookDependencies:
    reconciler: WebhookReconciler


def get_deps() -> WebhookDependencies:
    raise NotImplementedError("Dependency override required")


@router.post("/stripe/webhook")
async def stripe_webhook(request: Request, deps: WebhookDependencies = Depends(get_deps)):
    payload = await request.body()
    ack = await deps.reconciler.handle_webhook_event(payload, request.headers.get("Stripe-Signature"))
    return {"received": ack.received, "action": ack.action}
