"""In-memory partitioned broker for tests and single-process runs.

No external dependencies.  Each ``(topic, partition)`` is an append-only
list; each consumer group keeps a committed offset per partition.  Acking
a message commits up to and including it, so an unacknowledged head
message is redelivered on every fetch until it is acked.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Mapping

from .broker import BrokerMessage, DeliveryReceipt, partition_for

logger = logging.getLogger(__name__)


class MemoryBroker:
    """In-memory broker. Safe within a single asyncio event loop."""

    def __init__(
        self,
        default_partitions: int = 4,
        topic_partitions: Mapping[str, int] | None = None,
    ) -> None:
        self._default_partitions = default_partitions
        self._topic_partitions = dict(topic_partitions or {})
        self._logs: dict[tuple[str, int], list[BrokerMessage]] = defaultdict(list)
        # (group, topic, partition) → next offset to deliver
        self._committed: dict[tuple[str, str, int], int] = defaultdict(int)
        self._signals: dict[tuple[str, int], asyncio.Event] = {}
        self._available = True
        self._sends = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        # Wake any fetch blocked on an empty partition.
        for signal in self._signals.values():
            signal.set()

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
        if not self._available:
            raise ConnectionError("memory broker is unavailable")

        partition = partition_for(key, self.partition_count(topic))
        log = self._logs[(topic, partition)]
        message = BrokerMessage(
            topic=topic,
            partition=partition,
            offset=str(len(log)),
            key=key,
            value=value,
            headers=dict(headers or {}),
        )
        log.append(message)
        self._sends += 1
        self._signal(topic, partition).set()
        return DeliveryReceipt(topic=topic, partition=partition, offset=message.offset)

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
        start = self._committed[(group, topic, partition)]
        log = self._logs[(topic, partition)]

        if start >= len(log) and block_ms > 0:
            signal = self._signal(topic, partition)
            signal.clear()
            try:
                await asyncio.wait_for(signal.wait(), timeout=block_ms / 1000)
            except asyncio.TimeoutError:
                return []

        return log[start:start + max_messages]

    async def ack(self, group: str, message: BrokerMessage) -> None:
        key = (group, message.topic, message.partition)
        next_offset = int(message.offset) + 1
        if next_offset > self._committed[key]:
            self._committed[key] = next_offset

    # ------------------------------------------------------------------
    # Test / inspection helpers
    # ------------------------------------------------------------------

    def set_available(self, available: bool) -> None:
        """Simulate a broker outage: ``send`` raises while unavailable."""
        self._available = available

    def inject(
        self,
        topic: str,
        partition: int,
        value: str,
        *,
        key: str = "",
        headers: Mapping[str, str] | None = None,
    ) -> BrokerMessage:
        """Append a raw record to an explicit partition, bypassing the codec."""
        log = self._logs[(topic, partition)]
        message = BrokerMessage(
            topic=topic,
            partition=partition,
            offset=str(len(log)),
            key=key,
            value=value,
            headers=dict(headers or {}),
        )
        log.append(message)
        self._signal(topic, partition).set()
        return message

    def messages(self, topic: str, partition: int | None = None) -> list[BrokerMessage]:
        if partition is not None:
            return list(self._logs[(topic, partition)])
        return [
            m
            for (t, _p), log in sorted(self._logs.items())
            if t == topic
            for m in log
        ]

    def committed_offset(self, group: str, topic: str, partition: int) -> int:
        return self._committed[(group, topic, partition)]

    @property
    def sends(self) -> int:
        return self._sends

    def _signal(self, topic: str, partition: int) -> asyncio.Event:
        key = (topic, partition)
        signal = self._signals.get(key)
        if signal is None:
            signal = asyncio.Event()
            self._signals[key] = signal
        return signal
