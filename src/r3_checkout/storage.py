"""Key-value store backends (Redis, with an in-memory backend for development).

Backend errors are not swallowed here: callers wrap store calls in the
resilience layer, which decides whether to retry, trip the breaker or fail.
"""
from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Set

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Abstract key-value store interface."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get a value."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set a value with optional TTL in seconds."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set a value only if the key does not exist. Returns True if written."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key. Deleting a missing key is not an error."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if key exists."""

    @abstractmethod
    async def expire(self, key: str, ttl: int) -> bool:
        """Set TTL on existing key."""

    @abstractmethod
    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        """Increment a hash field."""

    @abstractmethod
    async def hgetall(self, key: str) -> Dict[str, str]:
        """Return all fields of a hash."""

    @abstractmethod
    async def sadd(self, key: str, member: str) -> int:
        """Add a member to a set."""

    @abstractmethod
    async def srem(self, key: str, member: str) -> int:
        """Remove a member from a set."""

    @abstractmethod
    async def smembers(self, key: str) -> Set[str]:
        """Return all members of a set."""

    @abstractmethod
    async def ping(self) -> bool:
        """Round-trip connectivity check."""

    async def close(self) -> None:
        """Release connections."""

    async def get_json(self, key: str) -> Optional[Any]:
        value = await self.get(key)
        if value is None:
            return None
        return json.loads(value)

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return await self.set(key, json.dumps(value, default=str), ttl)


class InMemoryKeyValueStore(KeyValueStore):
    """In-memory store for development and tests. Single process only."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._values: Dict[str, tuple[Any, Optional[float]]] = {}  # key -> (value, expires_at)

    def _live(self, key: str) -> Optional[Any]:
        if key not in self._values:
            return None
        value, expires_at = self._values[key]
        if expires_at is not None and self._clock() >= expires_at:
            del self._values[key]
            return None
        return value

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        return self._clock() + ttl if ttl else None

    async def get(self, key: str) -> Optional[str]:
        value = self._live(key)
        return value if isinstance(value, str) else None

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        self._values[key] = (value, self._expiry(ttl))
        return True

    async def set_if_absent(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        if self._live(key) is not None:
            return False
        self._values[key] = (value, self._expiry(ttl))
        return True

    async def delete(self, key: str) -> bool:
        return self._values.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def expire(self, key: str, ttl: int) -> bool:
        value = self._live(key)
        if value is None:
            return False
        self._values[key] = (value, self._expiry(ttl))
        return True

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        current = self._live(key)
        if not isinstance(current, dict):
            current = {}
            self._values[key] = (current, None)
        current[field] = str(int(current.get(field, 0)) + amount)
        return int(current[field])

    async def hgetall(self, key: str) -> Dict[str, str]:
        value = self._live(key)
        return dict(value) if isinstance(value, dict) else {}

    async def sadd(self, key: str, member: str) -> int:
        current = self._live(key)
        if not isinstance(current, set):
            current = set()
            self._values[key] = (current, None)
        if member in current:
            return 0
        current.add(member)
        return 1

    async def srem(self, key: str, member: str) -> int:
        current = self._live(key)
        if isinstance(current, set) and member in current:
            current.discard(member)
            return 1
        return 0

    async def smembers(self, key: str) -> Set[str]:
        value = self._live(key)
        return set(value) if isinstance(value, set) else set()

    async def ping(self) -> bool:
        return True


class RedisKeyValueStore(KeyValueStore):
    """Redis / Upstash backend."""

    def __init__(self, url: str):
        self._url = url
        self._client: Optional[redis.Redis] = None

    def _get_client(self) -> redis.Redis:
        """Lazy initialization of the Redis client."""
        if self._client is None:
            self._client = redis.from_url(self._url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Optional[str]:
        return await self._get_client().get(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        client = self._get_client()
        if ttl:
            await client.setex(key, ttl, value)
        else:
            await client.set(key, value)
        return True

    async def set_if_absent(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        result = await self._get_client().set(key, value, ex=ttl or None, nx=True)
        return bool(result)

    async def delete(self, key: str) -> bool:
        return await self._get_client().delete(key) > 0

    async def exists(self, key: str) -> bool:
        return await self._get_client().exists(key) > 0

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._get_client().expire(key, ttl))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return int(await self._get_client().hincrby(key, field, amount))

    async def hgetall(self, key: str) -> Dict[str, str]:
        return await self._get_client().hgetall(key)

    async def sadd(self, key: str, member: str) -> int:
        return int(await self._get_client().sadd(key, member))

    async def srem(self, key: str, member: str) -> int:
        return int(await self._get_client().srem(key, member))

    async def smembers(self, key: str) -> Set[str]:
        return set(await self._get_client().smembers(key))

    async def ping(self) -> bool:
        return bool(await self._get_client().ping())

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_store(redis_url: Optional[str] = None, clock: Callable[[], float] = time.time) -> KeyValueStore:
    """Pick the store backend from configuration."""
    if redis_url:
        logger.info("Using Redis key-value store")
        return RedisKeyValueStore(redis_url)
    logger.info("Using in-memory key-value store (no Redis URL provided)")
    return InMemoryKeyValueStore(clock=clock)
