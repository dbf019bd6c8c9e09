"""Request guards shared by the checkout routers.

Guards run before any handler logic and raise typed exceptions; the
exception handlers turn those into responses.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from fastapi import Depends, Request

from ..csrf import CSRF_HEADER, requires_csrf
from ..environment import Environment
from ..exceptions import InvalidCSRFError, InvalidSessionError, SuspiciousSessionError, UnauthorizedDomainError
from ..logging_config import log_security_event, mask_token, session_ref_var
from ..models import CheckoutSession, ClientContext
from ..security import domain_from_headers, is_allowed_domain
from ..sessions import SessionManager

logger = logging.getLogger(__name__)

SESSION_COOKIE = "sessionId"


@dataclass
class GuardDependencies:
    sessions: SessionManager
    environment: Environment
    allowed_domains: List[str] = field(default_factory=list)


def get_guard_deps() -> GuardDependencies:
    raise NotImplementedError("Dependency override required")


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def client_context(request: Request) -> ClientContext:
    return ClientContext(
        user_agent=request.headers.get("User-Agent", ""),
        ip_address=client_ip(request),
        accept_language=request.headers.get("Accept-Language", ""),
    )


def session_id_from_request(request: Request) -> Optional[str]:
    """The session credential: the ``sessionId`` cookie, else a bearer token."""
    cookie = request.cookies.get(SESSION_COOKIE)
    if cookie:
        return cookie
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return None


def require_allowed_domain(
    request: Request,
    deps: GuardDependencies = Depends(get_guard_deps),
) -> str:
    domain = domain_from_headers(request.headers.get("Origin"), request.headers.get("Referer"))
    if not is_allowed_domain(
        domain,
        deps.allowed_domains,
        allow_localhost=not deps.environment.is_production,
    ):
        log_security_event(logger, "unauthorized_domain", domain=domain, ip_address=client_ip(request))
        raise UnauthorizedDomainError(domain)
    return domain or ""


async def require_session(
    request: Request,
    deps: GuardDependencies = Depends(get_guard_deps),
) -> CheckoutSession:
    session_id = session_id_from_request(request)
    lookup = await deps.sessions.get_session(session_id, client_context(request))
    if not lookup.valid:
        if lookup.suspicious:
            raise SuspiciousSessionError(lookup.error)
        raise InvalidSessionError(lookup.error)
    session_ref_var.set(mask_token(lookup.session.session_id))
    return lookup.session


async def require_csrf(
    request: Request,
    session: CheckoutSession = Depends(require_session),
    deps: GuardDependencies = Depends(get_guard_deps),
) -> CheckoutSession:
    """Session guard plus the anti-forgery header check for mutating methods."""
    if requires_csrf(request.method):
        if not deps.sessions.check_csrf(session, request.headers.get(CSRF_HEADER)):
            log_security_event(
                logger,
                "csrf_mismatch",
                session_ref=mask_token(session.session_id),
                path=request.url.path,
            )
            raise InvalidCSRFError()
    return session
