"""Checkout session, CSRF, shipping and tax endpoints."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, Request, Response, status

from ...exceptions import InvalidInputError
from ...logging_config import mask_token
from ...models import CheckoutSession
from ...rates import ShippingService, TaxCalculator, parse_shipping_request, parse_tax_request
from ...sessions import SessionManager
from ..dependencies import (
    SESSION_COOKIE,
    client_context,
    require_allowed_domain,
    require_csrf,
    require_session,
)
from ..schemas import CreateSessionRequest, CsrfResponse, SessionResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["checkout"])


@dataclass
class CheckoutDependencies:
    sessions: SessionManager
    shipping: ShippingService
    tax: TaxCalculator
    secure_cookies: bool = True


def get_deps() -> CheckoutDependencies:
    raise NotImplementedError("Dependency override required")


def _set_session_cookie(response: Response, session_id: str, max_age: int, secure: bool) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session_id,
        max_age=max_age,
        httponly=True,
        secure=secure,
        samesite="none" if secure else "lax",
        path="/",
    )


@router.post("/checkout/session", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_checkout_session(
    payload: CreateSessionRequest,
    request: Request,
    response: Response,
    domain: str = Depends(require_allowed_domain),
    deps: CheckoutDependencies = Depends(get_deps),
):
    cart_token = (payload.cart_token or "").strip()
    if not cart_token:
        raise InvalidInputError("Missing cart token", field="cartToken")

    grant = await deps.sessions.create_session(
        cart_token=cart_token,
        domain=domain,
        client=client_context(request),
        cart_total=payload.cart_total,
    )
    _set_session_cookie(response, grant.session_id, grant.expires_in, deps.secure_cookies)
    return SessionResponse(
        sessionToken=grant.session_id,
        csrfToken=grant.csrf_token,
        expiresIn=grant.expires_in,
    )


@router.get("/checkout/csrf", response_model=CsrfResponse)
async def get_csrf_token(
    session: CheckoutSession = Depends(require_session),
    deps: CheckoutDependencies = Depends(get_deps),
):
    # sessions stored without a token get one issued on first request
    token = session.csrf_token or await deps.sessions.rotate_csrf(session.session_id)
    return CsrfResponse(csrfToken=token)


@router.post("/checkout/logout")
async def logout(
    response: Response,
    session: CheckoutSession = Depends(require_csrf),
    deps: CheckoutDependencies = Depends(get_deps),
):
    await deps.sessions.delete_session(session.session_id)
    response.delete_cookie(SESSION_COOKIE, path="/")
    logger.info("Checkout session ended", extra={"session_ref": mask_token(session.session_id)})
    return {"success": True}


@router.post("/calculate-shipping")
async def calculate_shipping(
    payload: Dict[str, Any] = Body(...),
    session: CheckoutSession = Depends(require_csrf),
    deps: CheckoutDependencies = Depends(get_deps),
):
    shipping_request = parse_shipping_request(payload)
    rates = await deps.shipping.quote(shipping_request)
    return {
        "shipping": rates[0].to_dict(),
        "rates": [rate.to_dict() for rate in rates],
    }


@router.post("/calculate-tax")
async def calculate_tax(
    payload: Dict[str, Any] = Body(...),
    session: CheckoutSession = Depends(require_csrf),
    deps: CheckoutDependencies = Depends(get_deps),
):
    subtotal, shipping, state = parse_tax_request(payload)
    return deps.tax.calculate(subtotal, shipping, state).to_dict()
