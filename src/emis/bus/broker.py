"""Broker abstraction shared by the publisher and the consumer workers.

A topic is split into a fixed number of partitions.  A message is routed
to ``stable_bucket(key, partitions)``, so every message with the same key
lands on the same partition and is consumed in send order.

Consumption is per ``(topic, partition, group)``:

* :meth:`IBroker.fetch` returns the messages that group has not yet
  acknowledged on that partition, oldest first.  A message that was
  fetched but never acked is returned again on the next fetch, ahead of
  anything newer.
* :meth:`IBroker.ack` marks one message done for that group.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from emis.core.ids import stable_bucket


@dataclass(frozen=True)
class BrokerMessage:
    """One record as read from a topic partition."""

    topic: str
    partition: int
    offset: str
    key: str
    value: str
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DeliveryReceipt:
    topic: str
    partition: int
    offset: str


def partition_for(key: str, partitions: int) -> int:
    """Partition a message with *key* is written to."""
    return stable_bucket(key, partitions)


@runtime_checkable
class IBroker(Protocol):
    """Partitioned, consumer-group based message log."""

    async def start(self) -> None: ...
    async def stop(self) -> None: ...

    def partition_count(self, topic: str) -> int:
        """Number of partitions of *topic*."""
        ...

    async def send(
        self,
        topic: str,
        key: str,
        value: str,
        headers: Mapping[str, str] | None = None,
    ) -> DeliveryReceipt:
        """Append one message.  Exactly one network write."""
        ...

    async def fetch(
        self,
        topic: str,
        partition: int,
        group: str,
        *,
        max_messages: int = 10,
        block_ms: int = 0,
    ) -> list[BrokerMessage]:
        """Return unacknowledged messages for *group*, oldest first."""
        ...

    async def ack(self, group: str, message: BrokerMessage) -> None:
        """Acknowledge *message* for *group*."""
        ...
