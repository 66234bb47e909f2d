"""Processed-message tracking for at-least-once delivery.

The router records ``(handler, event_id)`` after a handler succeeds and
skips that handler when the same event id is delivered again.  Handlers
that own a natural idempotency key (a student group per student, a user
per teacher) also guard themselves; this store covers the generic case.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


@runtime_checkable
class IIdempotencyStore(Protocol):
    async def is_processed(self, handler: str, event_id: str) -> bool: ...

    async def mark_processed(self, handler: str, event_id: str) -> None: ...


class InMemoryIdempotencyStore:
    def __init__(self) -> None:
        self._seen: set[tuple[str, str]] = set()

    async def is_processed(self, handler: str, event_id: str) -> bool:
        return (handler, event_id) in self._seen

    async def mark_processed(self, handler: str, event_id: str) -> None:
        self._seen.add((handler, event_id))

    def __len__(self) -> int:
        return len(self._seen)


def _processed_key(prefix: str, group: str, handler: str, event_id: str) -> str:
    return f"{prefix}{group}:{handler}:{event_id}"


class RedisIdempotencyStore:
    """Processed markers as Redis keys with a TTL (``SET NX EX``).

    Args:
        redis_url: Redis connection URL.
        group: Consumer group the markers belong to.
        prefix: Key namespace prefix.
        ttl_seconds: How long a marker outlives the message.  Must exceed
            the longest redelivery window.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        group: str,
        prefix: str = "emis:processed:",
        ttl_seconds: int = 7 * 24 * 3600,
        client: aioredis.Redis | None = None,
    ) -> None:
        self._url = redis_url
        self._group = group
        self._prefix = prefix
        self._ttl = ttl_seconds
        self._redis: aioredis.Redis | None = client

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = aioredis.from_url(self._url, decode_responses=True)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            raise RuntimeError("RedisIdempotencyStore not connected. Call connect() first.")
        return self._redis

    async def is_processed(self, handler: str, event_id: str) -> bool:
        key = _processed_key(self._prefix, self._group, handler, event_id)
        return bool(await self.redis.exists(key))

    async def mark_processed(self, handler: str, event_id: str) -> None:
        key = _processed_key(self._prefix, self._group, handler, event_id)
        await self.redis.set(key, "1", nx=True, ex=self._ttl)
