"""Circuit breaker + bounded retry + fallback around external calls.

Every call to the payment provider, the commerce platform and the key-value
store goes through ResilienceWrapper.call(). The wrapper never changes the
business error taxonomy: non-transient errors propagate as raised, and only
exhausted or short-circuited calls turn into a fallback value or
ProviderUnavailableError.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx
import redis.exceptions
import stripe

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerError,
    CircuitBreakerRegistry,
)
from .exceptions import CheckoutException, ProviderUnavailableError
from .retry import RetryConfig, RetryExhausted, retry_async

logger = logging.getLogger(__name__)

STRIPE = "stripe"
SHOPIFY = "shopify"
KV = "kv"

Fallback = Callable[[BaseException], Union[Any, Awaitable[Any]]]


def is_transient(exc: BaseException) -> bool:
    """Timeouts, connection failures, 5xx and 429 are worth another attempt."""
    if isinstance(exc, CheckoutException):
        return False
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code >= 500 or code == 429
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError)):
        return True
    if isinstance(exc, stripe.SignatureVerificationError):
        return False
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return True
    if isinstance(exc, stripe.APIError):
        return exc.http_status is None or exc.http_status >= 500
    if isinstance(exc, stripe.StripeError):
        return exc.http_status is not None and exc.http_status >= 500
    return False


@dataclass
class DependencyPolicy:
    """Breaker, retry and timeout settings for one dependency."""
    breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeout: float = 10.0
    retry_after: int = 30


def _policy(
    failure_threshold: int,
    recovery_timeout: float,
    max_retries: int,
    timeout: float,
    base_delay: float = 0.2,
) -> DependencyPolicy:
    return DependencyPolicy(
        breaker=CircuitBreakerConfig(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            failure_predicate=is_transient,
        ),
        retry=RetryConfig(
            max_retries=max_retries,
            base_delay=base_delay,
            non_retryable_exceptions=(CircuitBreakerError,),
            retry_condition=is_transient,
        ),
        timeout=timeout,
        retry_after=max(1, math.ceil(recovery_timeout)),
    )


def default_policies() -> Dict[str, DependencyPolicy]:
    return {
        STRIPE: _policy(5, 30.0, max_retries=2, timeout=10.0),
        SHOPIFY: _policy(5, 60.0, max_retries=2, timeout=10.0),
        KV: _policy(3, 15.0, max_retries=1, timeout=2.0, base_delay=0.05),
    }


def policies_from_settings(settings: Any) -> Dict[str, DependencyPolicy]:
    """Build dependency policies from CheckoutSettings."""
    return {
        STRIPE: _policy(
            settings.stripe_failure_threshold,
            settings.stripe_recovery_timeout,
            max_retries=2,
            timeout=settings.external_call_timeout,
        ),
        SHOPIFY: _policy(
            settings.shopify_failure_threshold,
            settings.shopify_recovery_timeout,
            max_retries=2,
            timeout=settings.external_call_timeout,
        ),
        KV: _policy(
            settings.kv_failure_threshold,
            settings.kv_recovery_timeout,
            max_retries=1,
            timeout=2.0,
            base_delay=0.05,
        ),
    }


class ResilienceWrapper:
    """Per-dependency breaker, retry and fallback.

    Breaker state lives in the registry owned by this instance, so separate
    wrappers (one per app, one per test) never share counters.
    """

    def __init__(
        self,
        policies: Optional[Dict[str, DependencyPolicy]] = None,
        registry: Optional[CircuitBreakerRegistry] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._policies = default_policies()
        if policies:
            self._policies.update(policies)
        self._registry = registry or CircuitBreakerRegistry(clock=clock)
        self._sleep = sleep
        for name in self._policies:
            self.breaker(name)

    @property
    def registry(self) -> CircuitBreakerRegistry:
        return self._registry

    def policy(self, dependency: str) -> DependencyPolicy:
        if dependency not in self._policies:
            self._policies[dependency] = DependencyPolicy(
                breaker=CircuitBreakerConfig(failure_predicate=is_transient),
                retry=RetryConfig(
                    non_retryable_exceptions=(CircuitBreakerError,),
                    retry_condition=is_transient,
                ),
            )
        return self._policies[dependency]

    def breaker(self, dependency: str) -> CircuitBreaker:
        return self._registry.get_or_create(dependency, self.policy(dependency).breaker)

    async def call(
        self,
        dependency: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        fallback: Optional[Fallback] = None,
        **kwargs: Any,
    ) -> Any:
        """Run ``func`` under the dependency's breaker, timeout and retry budget."""
        policy = self.policy(dependency)
        breaker = self.breaker(dependency)

        async def attempt() -> Any:
            async with breaker:
                return await asyncio.wait_for(func(*args, **kwargs), timeout=policy.timeout)

        attempt.__name__ = f"{dependency}:{getattr(func, '__name__', 'call')}"

        try:
            return await retry_async(attempt, config=policy.retry, sleep=self._sleep)
        except CircuitBreakerError as exc:
            return await self._give_up(dependency, exc, fallback)
        except RetryExhausted as exc:
            return await self._give_up(dependency, exc.original_exception, fallback)

    async def _give_up(
        self,
        dependency: str,
        error: BaseException,
        fallback: Optional[Fallback],
    ) -> Any:
        breaker = self.breaker(dependency)
        if fallback is not None:
            logger.warning(
                "Dependency %s unavailable (%s), using fallback",
                dependency,
                type(error).__name__,
                extra={"dependency": dependency, "circuit_state": breaker.state.value},
            )
            result = fallback(error)
            if inspect.isawaitable(result):
                result = await result
            return result

        if breaker.is_open:
            retry_after = max(1, math.ceil(breaker.remaining_cooldown()))
        else:
            retry_after = self.policy(dependency).retry_after
        logger.error(
            "Dependency %s unavailable: %s",
            dependency,
            type(error).__name__,
            extra={"dependency": dependency, "circuit_state": breaker.state.value},
        )
        raise ProviderUnavailableError(dependency, retry_after=retry_after) from error

    def states(self) -> Dict[str, Dict[str, Any]]:
        return self._registry.get_all_states()
