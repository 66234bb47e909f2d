"""Partitioned message broker: protocol, in-memory and Redis Streams backends."""

from emis.bus.broker import BrokerMessage, DeliveryReceipt, IBroker, partition_for
from emis.bus.bus import create_broker
from emis.bus.memory_bus import MemoryBroker
from emis.bus.redis_streams import RedisStreamsBroker

__all__ = [
    "BrokerMessage",
    "DeliveryReceipt",
    "IBroker",
    "MemoryBroker",
    "RedisStreamsBroker",
    "create_broker",
    "partition_for",
]
