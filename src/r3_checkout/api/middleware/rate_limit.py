"""Rate limiting middleware for the checkout API."""
from __future__ import annotations

import inspect
import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Optional

import redis.asyncio as redis
from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from ...exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Rate limit configuration."""
    requests_per_minute: int = 100
    requests_per_hour: int = 1000
    burst_size: int = 20  # Allow short bursts


@dataclass
class RateLimitState:
    """Track rate limit state for a client."""
    minute_count: int = 0
    hour_count: int = 0
    minute_reset: float = 0
    hour_reset: float = 0
    tokens: float = 0
    last_update: float = 0


def client_key(request: Request, scope: str = "global") -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else "unknown"
    return f"{scope}:ip:{ip}"


class RedisRateLimiter:
    """Redis-backed sliding window limiter, shared across instances."""

    def __init__(self, config: RateLimitConfig, redis_url: str, prefix: str = "rl"):
        self.config = config
        self._redis_url = redis_url
        self._prefix = prefix
        self._redis: Optional[redis.Redis] = None

    def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def check_rate_limit(self, request: Request, scope: str = "global") -> tuple[bool, dict]:
        now = time.time()
        key = f"{self._prefix}:{client_key(request, scope)}"
        minute_key = f"{key}:minute"
        hour_key = f"{key}:hour"

        pipe = self._get_redis().pipeline()
        pipe.zremrangebyscore(minute_key, 0, now - 60)
        pipe.zcard(minute_key)
        pipe.zadd(minute_key, {str(now): now})
        pipe.expire(minute_key, 120)
        pipe.zremrangebyscore(hour_key, 0, now - 3600)
        pipe.zcard(hour_key)
        pipe.zadd(hour_key, {str(now): now})
        pipe.expire(hour_key, 7200)
        results = await pipe.execute()
        minute_count = results[1]
        hour_count = results[5]

        headers = {
            "X-RateLimit-Limit": str(self.config.requests_per_minute),
            "X-RateLimit-Remaining": str(max(0, self.config.requests_per_minute - minute_count - 1)),
            "X-RateLimit-Reset": str(int(now + 60)),
        }
        if minute_count >= self.config.requests_per_minute:
            headers["Retry-After"] = "60"
            return False, headers
        if hour_count >= self.config.requests_per_hour:
            headers["Retry-After"] = "3600"
            return False, headers
        return True, headers


class InMemoryRateLimiter:
    """Single-instance limiter: fixed minute/hour windows plus a burst bucket."""

    def __init__(self, config: RateLimitConfig, clock: Callable[[], float] = time.time):
        self.config = config
        self._clock = clock
        self._states: dict[str, RateLimitState] = defaultdict(RateLimitState)

    def check_rate_limit(self, request: Request, scope: str = "global") -> tuple[bool, dict]:
        """
        Check if request is within rate limits.

        Returns:
            Tuple of (allowed, headers) where headers contain rate limit info.
        """
        now = self._clock()
        state = self._states[client_key(request, scope)]

        if now >= state.minute_reset:
            state.minute_count = 0
            state.minute_reset = now + 60
        if now >= state.hour_reset:
            state.hour_count = 0
            state.hour_reset = now + 3600

        time_passed = now - state.last_update if state.last_update else 0
        state.tokens = min(
            self.config.burst_size,
            state.tokens + time_passed * (self.config.requests_per_minute / 60),
        )
        state.last_update = now

        headers = {
            "X-RateLimit-Limit": str(self.config.requests_per_minute),
            "X-RateLimit-Remaining": str(max(0, self.config.requests_per_minute - state.minute_count)),
            "X-RateLimit-Reset": str(int(state.minute_reset)),
        }

        if state.minute_count >= self.config.requests_per_minute and state.tokens < 1:
            headers["Retry-After"] = str(max(1, int(state.minute_reset - now)))
            return False, headers
        if state.hour_count >= self.config.requests_per_hour:
            headers["Retry-After"] = str(max(1, int(state.hour_reset - now)))
            return False, headers

        if state.minute_count >= self.config.requests_per_minute:
            state.tokens -= 1
        state.minute_count += 1
        state.hour_count += 1
        headers["X-RateLimit-Remaining"] = str(max(0, self.config.requests_per_minute - state.minute_count))
        return True, headers


def create_rate_limiter(
    config: RateLimitConfig,
    redis_url: Optional[str] = None,
    production: bool = False,
    prefix: str = "rl",
):
    """Redis limiter when a URL is configured; in-memory otherwise, except in production."""
    if redis_url:
        return RedisRateLimiter(config, redis_url, prefix=prefix)
    if production:
        raise ConfigurationError("Redis is required for production rate limiting. Set REDIS_URL.")
    return InMemoryRateLimiter(config)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-client rate limiting with stricter limits on selected paths."""

    def __init__(
        self,
        app,
        config: Optional[RateLimitConfig] = None,
        path_limits: Optional[dict[str, RateLimitConfig]] = None,
        exclude_paths: Optional[list[str]] = None,
        redis_url: Optional[str] = None,
        production: bool = False,
    ):
        super().__init__(app)
        self.limiter = create_rate_limiter(config or RateLimitConfig(), redis_url, production)
        self.path_limiters = {
            path: create_rate_limiter(cfg, redis_url, production, prefix="rl:path")
            for path, cfg in (path_limits or {}).items()
        }
        self.exclude_paths = exclude_paths or ["/health"]

    async def _check(self, limiter, request: Request, scope: str) -> tuple[bool, dict]:
        result = limiter.check_rate_limit(request, scope)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in self.exclude_paths or request.method == "OPTIONS":
            return await call_next(request)

        allowed, headers = await self._check(self.limiter, request, "global")
        if allowed and path in self.path_limiters:
            allowed, headers = await self._check(self.path_limiters[path], request, path)

        if not allowed:
            logger.warning("Rate limit exceeded", extra={"path": path})
            return Response(
                content=json.dumps({"error": "Too many requests", "code": "RATE_LIMIT_EXCEEDED"}),
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                headers=headers,
                media_type="application/json",
            )

        response = await call_next(request)
        for key, value in headers.items():
            response.headers[key] = value
        return response
