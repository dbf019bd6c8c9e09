"""Anti-forgery tokens bound to a checkout session."""
from __future__ import annotations

import hmac
import secrets
from typing import Optional

CSRF_HEADER = "x-csrf-token"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def generate_csrf_token() -> str:
    return secrets.token_urlsafe(32)


def validate_csrf_token(expected: Optional[str], provided: Optional[str]) -> bool:
    """Constant-time comparison; an empty value on either side never matches."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def requires_csrf(method: str) -> bool:
    return method.upper() not in SAFE_METHODS
