"""Configuration surface for the checkout service."""
from __future__ import annotations

import os
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .environment import Environment, resolve_environment
from .exceptions import ConfigurationError

DEFAULT_ALLOWED_DOMAINS = (
    "sqqpyb-yq.myshopify.com",
    "rthree.io",
    "www.rthree.io",
    "rapidriskreduction.com",
    "shop.rapidriskreduction.com",
    "r3-stage.myshopify.com",
    "localhost:9292",
)

# Settings that may be overridden per environment with a _DEV/_STAGE/_PROD suffix
ENVIRONMENT_SCOPED_SETTINGS = (
    "stripe_secret_key",
    "stripe_webhook_secret",
    "shopify_store_domain",
    "shopify_admin_access_token",
    "redis_url",
)

# Secrets without which a production deployment must refuse to start
REQUIRED_PRODUCTION_SECRETS = (
    "stripe_secret_key",
    "stripe_webhook_secret",
    "shopify_admin_access_token",
    "redis_url",
)


class CheckoutSettings(BaseSettings):
    """Main checkout configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    # Deploy branch; the environment is derived from it
    deploy_branch: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("VERCEL_GIT_COMMIT_REF", "DEPLOY_BRANCH", "deploy_branch"),
    )

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance: int = 300

    # Shopify Admin API
    shopify_store_domain: str = "sqqpyb-yq.myshopify.com"
    shopify_admin_access_token: str = ""
    shopify_api_version: str = "2024-01"

    # Key-value store; empty means in-process memory (development only)
    redis_url: str = ""

    # Sessions
    session_ttl_seconds: int = 1800
    allowed_domains: str = ",".join(DEFAULT_ALLOWED_DOMAINS)

    # Payments
    max_payment_amount: int = 999999
    ach_verification_method: str = "automatic"

    # Shipping / tax defaults
    flat_shipping_rate_cents: int = 1000
    free_shipping_threshold_cents: int = 0
    tax_rates: str = "CA:0.0725"
    default_tax_rate: Decimal = Decimal("0.06")

    # Rate limits
    rate_limit_per_minute: int = 100
    rate_limit_per_hour: int = 1000
    payment_rate_limit_per_minute: int = 10

    # Resilience
    stripe_failure_threshold: int = 5
    stripe_recovery_timeout: float = 30.0
    shopify_failure_threshold: int = 5
    shopify_recovery_timeout: float = 60.0
    kv_failure_threshold: int = 3
    kv_recovery_timeout: float = 15.0
    external_call_timeout: float = 10.0

    # Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Logging
    log_level: str = "INFO"
    log_json: Optional[bool] = None

    @field_validator("ach_verification_method")
    @classmethod
    def validate_verification_method(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("automatic", "instant"):
            raise ValueError("ach_verification_method must be 'automatic' or 'instant'")
        return v

    @field_validator("max_payment_amount", "session_ttl_seconds")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @model_validator(mode="after")
    def apply_environment_overrides(self) -> "CheckoutSettings":
        """Prefer NAME_<DEV|STAGE|PROD> over NAME for environment-scoped settings."""
        suffix = self.environment.suffix
        for name in ENVIRONMENT_SCOPED_SETTINGS:
            value = os.getenv(f"{name.upper()}_{suffix}")
            if value:
                setattr(self, name, value)
        return self

    @property
    def environment(self) -> Environment:
        return resolve_environment(self.deploy_branch)

    @property
    def allowed_domains_list(self) -> List[str]:
        return [d.strip().lower() for d in self.allowed_domains.split(",") if d.strip()]

    @property
    def tax_rate_table(self) -> dict[str, Decimal]:
        """Parse "CA:0.0725,NY:0.04" into a state -> rate mapping."""
        table: dict[str, Decimal] = {}
        for entry in self.tax_rates.split(","):
            if ":" not in entry:
                continue
            state, rate = entry.split(":", 1)
            try:
                table[state.strip().upper()] = Decimal(rate.strip())
            except InvalidOperation as exc:
                raise ConfigurationError(f"Invalid tax rate for {state.strip()!r}") from exc
        return table

    @property
    def json_logs(self) -> bool:
        if self.log_json is not None:
            return self.log_json
        return self.environment is not Environment.DEVELOPMENT

    def missing_secrets(self) -> List[str]:
        return [name for name in REQUIRED_PRODUCTION_SECRETS if not getattr(self, name)]

    def validate_secrets(self) -> None:
        """Refuse to run production without every required secret."""
        if not self.environment.is_production:
            return
        missing = self.missing_secrets()
        if missing:
            raise ConfigurationError(
                "Missing required production configuration: "
                + ", ".join(name.upper() for name in missing),
                details={"missing": missing},
            )


@lru_cache
def load_settings(env_file: str | None = None) -> CheckoutSettings:
    """Load CheckoutSettings once per process."""
    env_path = Path(env_file) if env_file else None
    return CheckoutSettings(_env_file=env_path)
