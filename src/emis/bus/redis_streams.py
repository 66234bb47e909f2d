"""Redis Streams broker.

Each topic partition is its own stream, ``"{topic}:{partition}"``, and
each consuming service is a consumer group on those streams.  Every
partition worker reads as a fixed consumer name, so after a restart it
first re-reads its own pending (delivered but never acked) entries with
``XREADGROUP ... 0`` and only then asks for new ones with ``>``.  Entries
are acked with ``XACK`` strictly after the handlers succeed.

Without ``consumer_instance`` the name depends only on group and
partition, so run one process per consumer group.  Several processes in
one group each need a distinct instance id that stays the same across
restarts (a pod ordinal, say); otherwise they share one pending-entries
list and redeliver each other's in-flight messages.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

import redis.asyncio as aioredis

from .broker import BrokerMessage, DeliveryReceipt, partition_for

logger = logging.getLogger(__name__)


def stream_name(topic: str, partition: int) -> str:
    return f"{topic}:{partition}"


def consumer_name(group: str, partition: int, instance: str = "") -> str:
    name = f"{group}-p{partition}"
    return f"{name}-{instance}" if instance else name


class RedisStreamsBroker:
    """Production broker backed by Redis Streams consumer groups."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        default_partitions: int = 4,
        topic_partitions: Mapping[str, int] | None = None,
        max_stream_length: int = 100_000,
        client: aioredis.Redis | None = None,
        consumer_instance: str = "",
    ) -> None:
        self._redis_url = redis_url
        self._redis: aioredis.Redis | None = client
        self._default_partitions = default_partitions
        self._topic_partitions = dict(topic_partitions or {})
        self._max_len = max_stream_length
        self._groups: set[tuple[str, str]] = set()
        self._instance = consumer_instance

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect to Redis."""
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
            logger.info("Redis broker connected: %s", self._redis_url.split("@")[-1])

    async def stop(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        self._groups.clear()

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            raise RuntimeError("RedisStreamsBroker not started")
        return self._redis

    # ------------------------------------------------------------------
    # Produce
    # ------------------------------------------------------------------

    def partition_count(self, topic: str) -> int:
        return self._topic_partitions.get(topic, self._default_partitions)

    async def send(
        self,
        topic: str,
        key: str,
        value: str,
        headers: Mapping[str, str] | None = None,
    ) -> DeliveryReceipt:
        partition = partition_for(key, self.partition_count(topic))
        fields = {
            "key": key,
            "value": value,
            "headers": json.dumps(dict(headers or {})),
        }
        msg_id = await self.redis.xadd(
            stream_name(topic, partition), fields, maxlen=self._max_len, approximate=True,
        )
        return DeliveryReceipt(topic=topic, partition=partition, offset=str(msg_id))

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    async def fetch(
        self,
        topic: str,
        partition: int,
        group: str,
        *,
        max_messages: int = 10,
        block_ms: int = 0,
    ) -> list[BrokerMessage]:
        stream = stream_name(topic, partition)
        consumer = consumer_name(group, partition, self._instance)
        await self._ensure_group(stream, group)

        # Redeliveries first: entries this consumer read but never acked.
        entries = await self.redis.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={stream: "0"},
            count=max_messages,
        )
        pending = await self._to_messages(topic, partition, group, entries)
        if pending:
            return pending

        # BLOCK 0 means "forever" to Redis, so only pass a positive value.
        entries = await self.redis.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={stream: ">"},
            count=max_messages,
            block=block_ms if block_ms > 0 else None,
        )
        return await self._to_messages(topic, partition, group, entries)

    async def ack(self, group: str, message: BrokerMessage) -> None:
        await self.redis.xack(
            stream_name(message.topic, message.partition), group, message.offset,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _ensure_group(self, stream: str, group: str) -> None:
        """Create consumer group, ignoring BUSYGROUP if it already exists."""
        if (stream, group) in self._groups:
            return
        try:
            await self.redis.xgroup_create(stream, group, id="0", mkstream=True)
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._groups.add((stream, group))

    async def _to_messages(
        self,
        topic: str,
        partition: int,
        group: str,
        entries: Any,
    ) -> list[BrokerMessage]:
        messages: list[BrokerMessage] = []
        for _stream, records in entries or []:
            for msg_id, fields in records:
                if not fields:
                    # Pending entry whose body was trimmed by MAXLEN.
                    logger.warning(
                        "Acking trimmed entry %s on %s/%s", msg_id, topic, partition,
                    )
                    await self.redis.xack(stream_name(topic, partition), group, msg_id)
                    continue
                messages.append(
                    BrokerMessage(
                        topic=topic,
                        partition=partition,
                        offset=str(msg_id),
                        key=fields.get("key", ""),
                        value=fields.get("value", ""),
                        headers=_parse_headers(fields.get("headers")),
                    )
                )
        return messages


def _parse_headers(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed headers field: %r", raw)
        return {}
    return {str(k): str(v) for k, v in parsed.items()} if isinstance(parsed, dict) else {}
