"""
Checkout session management.

Sessions live in the key-value store under ``session:{id}`` with a TTL equal
to their remaining lifetime. Expiry is absolute from creation: activity
updates ``last_activity`` but never extends ``expires_at``.

Concurrent mutations of one session are last-writer-wins. A single browser
tab drives a session, so no application-level locking is applied.
"""
from __future__ import annotations

import logging
import math
import secrets
import time
from typing import Callable, Optional

from .csrf import generate_csrf_token, validate_csrf_token
from .environment import Environment
from .exceptions import InvalidSessionError, ProviderUnavailableError, SessionExpiredError
from .logging_config import log_security_event, mask_token
from .models import (
    CheckoutSession,
    ClientContext,
    DEFAULT_SESSION_TTL_SECONDS,
    SessionGrant,
    SessionLookup,
)
from .resilience import KV, ResilienceWrapper
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"
INVALID_SESSION_MESSAGE = "Invalid or expired session"


def session_key(session_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{session_id}"


class SessionManager:
    """
    Creates, validates and mutates checkout sessions.

    All store traffic goes through the resilience wrapper under the ``kv``
    dependency. Reads have no fallback: an unreachable store yields an
    invalid lookup rather than a usable session.
    """

    def __init__(
        self,
        store: KeyValueStore,
        resilience: ResilienceWrapper,
        environment: Environment,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._resilience = resilience
        self._environment = environment
        self._ttl = ttl_seconds
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def _generate_session_id(self) -> str:
        return secrets.token_urlsafe(32)

    async def _read(self, session_id: str) -> Optional[CheckoutSession]:
        data = await self._resilience.call(KV, self._store.get_json, session_key(session_id))
        if not data:
            return None
        return CheckoutSession.from_dict(data)

    async def _write(self, session: CheckoutSession) -> None:
        ttl = max(1, math.ceil(session.expires_at - self._clock()))
        await self._resilience.call(
            KV, self._store.set_json, session_key(session.session_id), session.to_dict(), ttl
        )

    async def create_session(
        self,
        cart_token: str,
        domain: str,
        client: ClientContext,
        cart_total: Optional[int] = None,
    ) -> SessionGrant:
        """Issue a new session bound to a cart, a storefront domain and a client."""
        now = self._clock()
        session = CheckoutSession(
            session_id=self._generate_session_id(),
            csrf_token=generate_csrf_token(),
            cart_token=cart_token,
            domain=domain,
            created_at=now,
            last_activity=now,
            expires_at=now + self._ttl,
            fingerprint=client.fingerprint,
            user_agent=client.user_agent,
            ip_address=client.ip_address,
            cart_total=cart_total,
        )
        await self._write(session)

        logger.info(
            "Checkout session created",
            extra={
                "session_ref": mask_token(session.session_id),
                "domain": domain,
                "environment": self._environment.value,
            },
        )
        return SessionGrant(
            session_id=session.session_id,
            csrf_token=session.csrf_token,
            expires_at=session.expires_at,
            expires_in=self._ttl,
        )

    async def get_session(self, session_id: Optional[str], client: ClientContext) -> SessionLookup:
        """Look up a session and check it against the current request.

        Unknown, expired and hijack-suspected sessions share one caller-visible
        error; ``reason`` and ``suspicious`` are for telemetry.
        """
        if not session_id:
            return SessionLookup(valid=False, error=INVALID_SESSION_MESSAGE, reason="missing")

        try:
            session = await self._read(session_id)
        except ProviderUnavailableError:
            logger.error(
                "Session store unavailable during lookup",
                extra={"session_ref": mask_token(session_id)},
            )
            return SessionLookup(valid=False, error=INVALID_SESSION_MESSAGE, reason="store_unavailable")

        if session is None:
            return SessionLookup(valid=False, error=INVALID_SESSION_MESSAGE, reason="not_found")

        if session.is_expired(self._clock()):
            await self._discard_expired(session_id)
            return SessionLookup(valid=False, error=INVALID_SESSION_MESSAGE, reason="expired")

        if self._is_suspicious(session, client):
            log_security_event(
                logger,
                "suspicious_session",
                session_ref=mask_token(session_id),
                ip_address=client.ip_address,
                bound_ip_address=session.ip_address,
            )
            return SessionLookup(
                valid=False,
                error=INVALID_SESSION_MESSAGE,
                suspicious=True,
                reason="suspicious",
            )

        return SessionLookup(valid=True, session=session)

    def _is_suspicious(self, session: CheckoutSession, client: ClientContext) -> bool:
        if session.fingerprint and session.fingerprint != client.fingerprint:
            return True
        if session.user_agent and session.user_agent != client.user_agent:
            return True
        return False

    async def _discard_expired(self, session_id: str) -> None:
        try:
            await self.delete_session(session_id)
        except ProviderUnavailableError:
            # the store TTL evicts it eventually
            logger.debug("Could not delete expired session", extra={"session_ref": mask_token(session_id)})

    async def touch_session(
        self,
        session_id: str,
        mutator: Optional[Callable[[CheckoutSession], None]] = None,
    ) -> CheckoutSession:
        """Read-modify-write a session without extending its expiry.

        Raises:
            InvalidSessionError: If the session does not exist
            SessionExpiredError: If the session has expired
        """
        session = await self._read(session_id)
        if session is None:
            raise InvalidSessionError()
        now = self._clock()
        if session.is_expired(now):
            raise SessionExpiredError()

        if mutator is not None:
            mutator(session)
        session.last_activity = now
        await self._write(session)
        return session

    async def rotate_csrf(self, session_id: str) -> str:
        """Replace the session's CSRF token; the previous token stops validating."""
        new_token = generate_csrf_token()

        def _rotate(session: CheckoutSession) -> None:
            session.csrf_token = new_token

        await self.touch_session(session_id, _rotate)
        return new_token

    async def record_payment_intent(self, session_id: str, payment_intent_id: str) -> CheckoutSession:
        def _append(session: CheckoutSession) -> None:
            session.payment_intents.append(payment_intent_id)

        return await self.touch_session(session_id, _append)

    async def delete_session(self, session_id: str) -> None:
        """Remove a session. Missing sessions are not an error."""
        await self._resilience.call(KV, self._store.delete, session_key(session_id))

    def check_csrf(self, session: CheckoutSession, provided: Optional[str]) -> bool:
        return validate_csrf_token(session.csrf_token, provided)
