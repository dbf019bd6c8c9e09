"""Middleware for the checkout API."""
from .exceptions import register_exception_handlers
from .logging import StructuredLoggingMiddleware
from .rate_limit import InMemoryRateLimiter, RateLimitConfig, RateLimitMiddleware, RedisRateLimiter

__all__ = [
    "InMemoryRateLimiter",
    "RateLimitConfig",
    "RateLimitMiddleware",
    "RedisRateLimiter",
    "StructuredLoggingMiddleware",
    "register_exception_handlers",
]
