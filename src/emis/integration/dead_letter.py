"""Dead-letter side channel.

A message is dead-lettered when it cannot be decoded, when a handler
fails with a non-retryable error, or when it runs out of attempts.  The
consumer writes a :class:`DeadLetter` record here *before* acknowledging
the message, so a message is never acked without leaving a trace for
manual inspection.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Protocol, runtime_checkable

import redis.asyncio as aioredis

from emis.bus.broker import BrokerMessage
from emis.core.enums import DeadLetterReason
from emis.core.ids import utc_now

logger = logging.getLogger(__name__)


@dataclass
class DeadLetter:
    """Record of a message pulled out of the normal flow."""

    topic: str
    partition: int
    offset: str
    group: str
    key: str
    raw_value: str
    reason: DeadLetterReason
    error: str
    attempts: int
    event_type: str | None = None
    event_id: str | None = None
    tenant_id: str | None = None
    handler: str | None = None
    dead_lettered_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_message(
        cls,
        message: BrokerMessage,
        group: str,
        *,
        reason: DeadLetterReason,
        error: str,
        attempts: int,
        event_type: str | None = None,
        event_id: str | None = None,
        tenant_id: str | None = None,
        handler: str | None = None,
    ) -> DeadLetter:
        return cls(
            topic=message.topic,
            partition=message.partition,
            offset=message.offset,
            group=group,
            key=message.key,
            raw_value=message.value,
            reason=reason,
            error=error,
            attempts=attempts,
            event_type=event_type or message.headers.get("event-type"),
            event_id=event_id or message.headers.get("event-id"),
            tenant_id=tenant_id or message.headers.get("tenant-id"),
            handler=handler,
        )

    def to_fields(self) -> dict[str, str]:
        """Flat string map for stream storage."""
        data = asdict(self)
        data["reason"] = self.reason.value
        data["dead_lettered_at"] = self.dead_lettered_at.isoformat()
        return {k: "" if v is None else str(v) for k, v in data.items()}


@runtime_checkable
class IDeadLetterStore(Protocol):
    async def put(self, letter: DeadLetter) -> None:
        """Persist *letter*.  Must raise if the record was not stored."""
        ...

    async def recent(self, topic: str | None = None, limit: int = 100) -> list[DeadLetter]:
        ...


class InMemoryDeadLetterStore:
    """Dead letters kept in process memory (tests, single-process runs)."""

    def __init__(self) -> None:
        self._letters: list[DeadLetter] = []

    async def put(self, letter: DeadLetter) -> None:
        self._letters.append(letter)

    async def recent(self, topic: str | None = None, limit: int = 100) -> list[DeadLetter]:
        matching = [d for d in self._letters if topic is None or d.topic == topic]
        return matching[:limit]

    def clear(self) -> list[DeadLetter]:
        drained = self._letters[:]
        self._letters.clear()
        return drained

    def __len__(self) -> int:
        return len(self._letters)


class RedisDeadLetterStore:
    """Dead letters appended to a ``"{topic}.dlq"`` Redis stream."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        suffix: str = ".dlq",
        max_stream_length: int = 100_000,
        client: aioredis.Redis | None = None,
    ) -> None:
        self._redis_url = redis_url
        self._suffix = suffix
        self._max_len = max_stream_length
        self._redis: aioredis.Redis | None = client

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            raise RuntimeError("RedisDeadLetterStore not connected. Call connect() first.")
        return self._redis

    def stream_for(self, topic: str) -> str:
        return f"{topic}{self._suffix}"

    async def put(self, letter: DeadLetter) -> None:
        await self.redis.xadd(
            self.stream_for(letter.topic),
            letter.to_fields(),
            maxlen=self._max_len,
            approximate=True,
        )

    async def recent(self, topic: str | None = None, limit: int = 100) -> list[DeadLetter]:
        if topic is None:
            raise ValueError("RedisDeadLetterStore.recent requires a topic")
        entries = await self.redis.xrange(self.stream_for(topic), count=limit)
        return [_from_fields(fields) for _id, fields in entries]


def _from_fields(fields: dict[str, str]) -> DeadLetter:
    def _opt(name: str) -> str | None:
        return fields.get(name) or None

    return DeadLetter(
        topic=fields["topic"],
        partition=int(fields["partition"]),
        offset=fields["offset"],
        group=fields["group"],
        key=fields.get("key", ""),
        raw_value=fields.get("raw_value", ""),
        reason=DeadLetterReason(fields["reason"]),
        error=fields.get("error", ""),
        attempts=int(fields.get("attempts", "0")),
        event_type=_opt("event_type"),
        event_id=_opt("event_id"),
        tenant_id=_opt("tenant_id"),
        handler=_opt("handler"),
        dead_lettered_at=datetime.fromisoformat(fields["dead_lettered_at"]),
    )


def dumps(letter: DeadLetter) -> str:
    """JSON rendering for the CLI."""
    return json.dumps(letter.to_fields(), indent=2)
