"""Deployment environment resolution.

The active environment is derived from the deploy branch once at startup and
then passed explicitly to every component that needs it. Unknown or missing
branches resolve to production, which carries the strictest secret rules.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class Environment(str, Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"

    @property
    def suffix(self) -> str:
        """Suffix used for per-environment variables (e.g. STRIPE_SECRET_KEY_DEV)."""
        return _SUFFIXES[self]

    @property
    def is_production(self) -> bool:
        return self is Environment.PRODUCTION


_SUFFIXES = {
    Environment.DEVELOPMENT: "DEV",
    Environment.STAGING: "STAGE",
    Environment.PRODUCTION: "PROD",
}

BRANCH_ENVIRONMENTS: dict[str, Environment] = {
    "prod": Environment.PRODUCTION,
    "main": Environment.PRODUCTION,
    "r3-prod": Environment.PRODUCTION,
    "stage": Environment.STAGING,
    "r3-stage": Environment.STAGING,
    "dev": Environment.DEVELOPMENT,
    "r3-dev": Environment.DEVELOPMENT,
}

# Accepted spellings of the environment tag stamped into payment metadata
_TAG_ALIASES: dict[str, Environment] = {
    "development": Environment.DEVELOPMENT,
    "dev": Environment.DEVELOPMENT,
    "staging": Environment.STAGING,
    "stage": Environment.STAGING,
    "production": Environment.PRODUCTION,
    "prod": Environment.PRODUCTION,
}


def resolve_environment(branch: Optional[str]) -> Environment:
    """Map a deploy branch name to an environment.

    Total function: anything not in the branch table is production.
    """
    if not branch:
        return Environment.PRODUCTION
    return BRANCH_ENVIRONMENTS.get(branch.strip().lower(), Environment.PRODUCTION)


def parse_environment_tag(value: Optional[str]) -> Optional[Environment]:
    """Parse the environment tag carried in webhook metadata.

    Intents created before environments were tagged carry no value; those are
    treated as production. A present but unrecognised tag returns None so the
    caller can treat it as a mismatch.
    """
    if value is None or not str(value).strip():
        return Environment.PRODUCTION
    return _TAG_ALIASES.get(str(value).strip().lower())
