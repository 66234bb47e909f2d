"""Broker factory.

Creates the broker implementation selected in :class:`BrokerConfig`.
"""

from __future__ import annotations

from emis.core.config import BrokerConfig
from emis.core.enums import BrokerBackend

from .memory_bus import MemoryBroker
from .redis_streams import RedisStreamsBroker


def create_broker(config: BrokerConfig) -> MemoryBroker | RedisStreamsBroker:
    """Create a broker for the configured backend.

    - MEMORY: MemoryBroker (no external deps, deterministic)
    - REDIS: RedisStreamsBroker (persistent, shared between processes)
    """
    if config.backend == BrokerBackend.MEMORY:
        return MemoryBroker(
            default_partitions=config.partitions,
            topic_partitions=config.topic_partitions,
        )
    return RedisStreamsBroker(
        redis_url=config.redis_url,
        default_partitions=config.partitions,
        topic_partitions=config.topic_partitions,
        max_stream_length=config.max_stream_length,
        consumer_instance=config.consumer_instance,
    )
