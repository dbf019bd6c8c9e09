"""API composition root."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..ach_metrics import AchMetrics
from ..config import CheckoutSettings, load_settings
from ..connectors import ShopifyAdminClient, StripeConnector
from ..connectors.base import CommercePlatform, PaymentProvider
from ..csrf import CSRF_HEADER
from ..logging_config import setup_logging
from ..order_ledger import OrderLedger
from ..orchestrator import PaymentIntentOrchestrator
from ..rates import FlatRateShippingCalculator, ShippingService, StateTaxCalculator
from ..resilience import ResilienceWrapper, policies_from_settings
from ..sessions import SessionManager
from ..storage import KeyValueStore, create_store
from ..webhooks import WebhookReconciler
from . import dependencies, health
from .middleware import (
    RateLimitConfig,
    RateLimitMiddleware,
    StructuredLoggingMiddleware,
    register_exception_handlers,
)
from .routers import checkout, payments, stripe_webhooks

logger = logging.getLogger("r3_checkout.api")

API_PREFIX = "/api"
PAYMENT_INTENT_PATH = f"{API_PREFIX}/stripe/create-payment-intent"


@dataclass
class CheckoutServices:
    """Everything the routers need, built once per app."""
    store: KeyValueStore
    resilience: ResilienceWrapper
    sessions: SessionManager
    orchestrator: PaymentIntentOrchestrator
    reconciler: WebhookReconciler
    shipping: ShippingService
    tax: StateTaxCalculator
    provider: PaymentProvider
    commerce: CommercePlatform


def build_services(settings: CheckoutSettings) -> CheckoutServices:
    environment = settings.environment
    store = create_store(settings.redis_url or None)
    resilience = ResilienceWrapper(policies=policies_from_settings(settings))
    metrics = AchMetrics(store)

    provider = StripeConnector(
        api_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        webhook_tolerance=settings.stripe_webhook_tolerance,
    )
    commerce = ShopifyAdminClient(
        store_domain=settings.shopify_store_domain,
        access_token=settings.shopify_admin_access_token,
        api_version=settings.shopify_api_version,
        timeout=settings.external_call_timeout,
    )

    sessions = SessionManager(store, resilience, environment, ttl_seconds=settings.session_ttl_seconds)
    flat_rate = FlatRateShippingCalculator(
        settings.flat_shipping_rate_cents, settings.free_shipping_threshold_cents
    )
    return CheckoutServices(
        store=store,
        resilience=resilience,
        sessions=sessions,
        orchestrator=PaymentIntentOrchestrator(
            provider,
            sessions,
            resilience,
            environment,
            max_amount=settings.max_payment_amount,
            metrics=metrics,
            ach_verification_method=settings.ach_verification_method,
        ),
        reconciler=WebhookReconciler(
            provider,
            commerce,
            OrderLedger(store, resilience),
            environment,
            resilience,
            metrics=metrics,
        ),
        shipping=ShippingService(flat_rate, resilience, fallback=flat_rate),
        tax=StateTaxCalculator(settings.tax_rate_table, settings.default_tax_rate),
        provider=provider,
        commerce=commerce,
    )


def create_app(
    settings: Optional[CheckoutSettings] = None,
    services: Optional[CheckoutServices] = None,
) -> FastAPI:
    settings = settings or load_settings()
    environment = settings.environment
    settings.validate_secrets()

    setup_logging(level=settings.log_level, json_format=settings.json_logs)
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting checkout API", extra={"environment": environment.value})
        missing = settings.missing_secrets()
        if missing:
            logger.warning("Running without: %s", ", ".join(missing))
        yield
        logger.info("Shutting down checkout API")
        await services.commerce.close()
        await services.store.close()

    app = FastAPI(
        title="R3 Checkout API",
        version=__version__,
        docs_url=None if environment.is_production else "/docs",
        lifespan=lifespan,
    )

    register_exception_handlers(app, environment)

    app.add_middleware(
        RateLimitMiddleware,
        config=RateLimitConfig(
            requests_per_minute=settings.rate_limit_per_minute,
            requests_per_hour=settings.rate_limit_per_hour,
        ),
        path_limits={
            PAYMENT_INTENT_PATH: RateLimitConfig(
                requests_per_minute=settings.payment_rate_limit_per_minute,
                requests_per_hour=settings.payment_rate_limit_per_minute * 60,
                burst_size=0,
            ),
        },
        exclude_paths=["/health", f"{API_PREFIX}/stripe/webhook"],
        redis_url=settings.redis_url or None,
        production=environment.is_production,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[f"https://{d}" for d in settings.allowed_domains_list]
        + ([] if environment.is_production else ["http://localhost:9292"]),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID", CSRF_HEADER],
    )
    # outermost: every response carries the correlation id
    app.add_middleware(StructuredLoggingMiddleware, exclude_paths=["/health"])

    app.dependency_overrides[dependencies.get_guard_deps] = lambda: dependencies.GuardDependencies(
        sessions=services.sessions,
        environment=environment,
        allowed_domains=settings.allowed_domains_list,
    )

    app.dependency_overrides[checkout.get_deps] = lambda: checkout.CheckoutDependencies(
        sessions=services.sessions,
        shipping=services.shipping,
        tax=services.tax,
        secure_cookies=environment.is_production,
    )
    app.include_router(checkout.router, prefix=API_PREFIX)

    app.dependency_overrides[payments.get_deps] = lambda: payments.PaymentDependencies(
        orchestrator=services.orchestrator,
    )
    app.include_router(payments.router, prefix=API_PREFIX)

    app.dependency_overrides[stripe_webhooks.get_deps] = lambda: stripe_webhooks.WebhookDependencies(
        reconciler=services.reconciler,
    )
    app.include_router(stripe_webhooks.router, prefix=API_PREFIX)

    app.dependency_overrides[health.get_deps] = lambda: health.HealthDependencies(
        store=services.store,
        resilience=services.resilience,
        environment=environment,
        version=__version__,
    )
    app.include_router(health.router)

    app.state.services = services
    return app


if __name__ == "__main__":
    import uvicorn

    _settings = load_settings()
    uvicorn.run(
        "r3_checkout.api.main:create_app",
        factory=True,
        host=_settings.api_host,
        port=_settings.api_port,
    )
