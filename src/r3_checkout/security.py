"""Input hygiene and request-origin checks."""
from __future__ import annotations

import html
import re
from typing import Any, Iterable, Optional
from urllib.parse import urlparse

EMAIL_PATTERN = re.compile(r"^[^\s@<>]+@[^\s@<>]+\.[^\s@<>]+$")
_SCRIPT_BLOCK = re.compile(r"<\s*(script|style)[^>]*>.*?<\s*/\s*\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]*>")
_JS_SCHEME = re.compile(r"javascript\s*:", re.IGNORECASE)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

# Stripe metadata values are limited to 500 characters
MAX_METADATA_VALUE_LENGTH = 500

# ABA checksum weights for digits 1..9
_ABA_WEIGHTS = (3, 7, 1, 3, 7, 1, 3, 7, 1)


def sanitize_text(value: Any, max_length: Optional[int] = MAX_METADATA_VALUE_LENGTH) -> str:
    """Strip markup and script content from free text. ``max_length=None`` keeps it whole."""
    text = html.unescape(str(value))
    text = _SCRIPT_BLOCK.sub("", text)
    text = _TAG.sub("", text)
    text = _JS_SCHEME.sub("", text)
    text = _CONTROL_CHARS.sub("", text)
    text = text.strip()
    return text if max_length is None else text[:max_length]


def is_valid_email(value: Optional[str]) -> bool:
    if not value or len(value) > 254:
        return False
    return EMAIL_PATTERN.match(value.strip()) is not None


def validate_routing_number(routing_number: Any) -> bool:
    """ABA routing number check: 9 digits, not all zero, weighted sum % 10 == 0."""
    if not isinstance(routing_number, str):
        return False
    if len(routing_number) != 9 or not routing_number.isascii() or not routing_number.isdigit():
        return False
    if routing_number == "000000000":
        return False
    total = sum(int(d) * w for d, w in zip(routing_number, _ABA_WEIGHTS))
    return total % 10 == 0


def validate_account_number(account_number: Any) -> bool:
    if not isinstance(account_number, str):
        return False
    return 4 <= len(account_number) <= 17 and account_number.isascii() and account_number.isdigit()


def domain_from_headers(origin: Optional[str], referer: Optional[str]) -> Optional[str]:
    """Storefront host (with port, if any) from Origin, falling back to Referer."""
    for candidate in (origin, referer):
        if not candidate or candidate == "null":
            continue
        parsed = urlparse(candidate)
        if parsed.netloc:
            return parsed.netloc.lower()
    return None


def is_allowed_domain(
    domain: Optional[str],
    allowed: Iterable[str],
    allow_localhost: bool = False,
) -> bool:
    if not domain:
        return False
    domain = domain.lower()
    if domain in {d.lower() for d in allowed}:
        return True
    if allow_localhost:
        host = domain.split(":", 1)[0]
        return host in ("localhost", "127.0.0.1")
    return False


def mask_account_number(account_number: str) -> str:
    return f"****{account_number[-4:]}" if account_number else ""
