"""
Circuit breaker for calls to external dependencies.

Stops calling a failing dependency for a cooldown period so one slow or down
service cannot exhaust request capacity. State is process-local; every
instance protects itself and its own connection pools.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Blocking calls
    HALF_OPEN = "half_open"  # Single trial call in flight


@dataclass
class CircuitBreakerConfig:
    """Configuration for a circuit breaker."""
    # Consecutive counted failures before opening the circuit
    failure_threshold: int = 5

    # Time to wait before allowing a trial call (seconds)
    recovery_timeout: float = 30.0

    # Decides whether an exception counts against the circuit; None counts all
    failure_predicate: Optional[Callable[[BaseException], bool]] = None

    def should_count_as_failure(self, error: BaseException) -> bool:
        if self.failure_predicate is None:
            return True
        return self.failure_predicate(error)


@dataclass
class CircuitStats:
    """Statistics for a circuit breaker."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    state_changes: int = 0
    consecutive_failures: int = 0


class CircuitBreakerError(Exception):
    """Raised when the circuit refuses a call."""

    def __init__(self, service_name: str, recovery_time: float):
        self.service_name = service_name
        self.recovery_time = recovery_time
        super().__init__(
            f"Circuit breaker open for {service_name}. "
            f"Recovery in {recovery_time:.1f}s"
        )


class CircuitBreaker:
    """
    Circuit breaker for one dependency.

    Usage:
        breaker = CircuitBreaker("stripe")

        async with breaker:
            await make_external_call()

        # or
        result = await breaker.call(make_external_call, arg)
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._name = name
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._opened_at: float = 0.0
        self._trial_in_flight = False
        self._stats = CircuitStats()
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def stats(self) -> CircuitStats:
        return self._stats

    def remaining_cooldown(self) -> float:
        if self._state != CircuitState.OPEN:
            return 0.0
        elapsed = self._clock() - self._opened_at
        return max(0.0, self._config.recovery_timeout - elapsed)

    async def __aenter__(self):
        await self._before_call()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            await self._on_success()
        elif isinstance(exc_val, Exception) and self._config.should_count_as_failure(exc_val):
            await self._on_failure(exc_val)
        else:
            # the dependency answered; the error is the caller's concern
            await self._on_success()
        return False

    async def _before_call(self) -> None:
        async with self._lock:
            self._stats.total_calls += 1

            if self._state == CircuitState.CLOSED:
                return

            if self._state == CircuitState.OPEN:
                remaining = self.remaining_cooldown()
                if remaining > 0:
                    self._stats.rejected_calls += 1
                    raise CircuitBreakerError(self._name, remaining)
                self._transition_to(CircuitState.HALF_OPEN)
                logger.info("Circuit breaker %s transitioning to half-open", self._name)

            # HALF_OPEN admits exactly one trial call
            if self._trial_in_flight:
                self._stats.rejected_calls += 1
                raise CircuitBreakerError(self._name, self._config.recovery_timeout)
            self._trial_in_flight = True

    async def _on_success(self) -> None:
        async with self._lock:
            self._stats.successful_calls += 1
            self._stats.last_success_time = self._clock()
            self._stats.consecutive_failures = 0

            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._transition_to(CircuitState.CLOSED)
                logger.info("Circuit breaker %s closed after recovery", self._name)

    async def _on_failure(self, error: Exception) -> None:
        async with self._lock:
            now = self._clock()
            self._stats.failed_calls += 1
            self._stats.last_failure_time = now
            self._stats.consecutive_failures += 1

            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._transition_to(CircuitState.OPEN)
                logger.warning(
                    "Circuit breaker %s reopened after failed trial call: %s",
                    self._name,
                    type(error).__name__,
                )
            elif (
                self._state == CircuitState.CLOSED
                and self._stats.consecutive_failures >= self._config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)
                logger.warning(
                    "Circuit breaker %s opened after %d consecutive failures",
                    self._name,
                    self._stats.consecutive_failures,
                )

    def _transition_to(self, new_state: CircuitState) -> None:
        self._state = new_state
        self._stats.state_changes += 1
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state == CircuitState.CLOSED:
            self._stats.consecutive_failures = 0

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute a coroutine function under circuit breaker protection."""
        async with self:
            return await func(*args, **kwargs)

    async def reset(self) -> None:
        """Manually reset the circuit breaker to closed state."""
        async with self._lock:
            self._trial_in_flight = False
            self._transition_to(CircuitState.CLOSED)
            logger.info("Circuit breaker %s manually reset", self._name)

    def get_state_info(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {
            "name": self._name,
            "state": self._state.value,
            "stats": {
                "total_calls": self._stats.total_calls,
                "successful_calls": self._stats.successful_calls,
                "failed_calls": self._stats.failed_calls,
                "rejected_calls": self._stats.rejected_calls,
                "consecutive_failures": self._stats.consecutive_failures,
            },
            "config": {
                "failure_threshold": self._config.failure_threshold,
                "recovery_timeout": self._config.recovery_timeout,
            },
        }
        if self._state == CircuitState.OPEN:
            info["recovery_remaining_seconds"] = round(self.remaining_cooldown(), 2)
        return info


class CircuitBreakerRegistry:
    """
    Holds one circuit breaker per dependency.

    Owned by the application (or a test), never a module global, so
    independent instances do not share counters.
    """

    def __init__(
        self,
        default_config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._default_config = default_config or CircuitBreakerConfig()
        self._clock = clock

    def get_or_create(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
    ) -> CircuitBreaker:
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(
                name, config or self._default_config, clock=self._clock
            )
        return self._breakers[name]

    def get(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: breaker.get_state_info()
            for name, breaker in self._breakers.items()
        }

    async def reset_all(self) -> None:
        for breaker in self._breakers.values():
            await breaker.reset()
