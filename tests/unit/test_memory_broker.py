"""Tests for the in-memory partitioned broker."""

from __future__ import annotations

import asyncio

import pytest

from emis.bus.broker import IBroker, partition_for
from emis.bus.memory_bus import MemoryBroker

TOPIC = "emis.test"


class TestPartitioning:
    def test_partition_is_stable(self):
        assert partition_for("tenant-a", 8) == partition_for("tenant-a", 8)
        assert 0 <= partition_for("tenant-a", 8) < 8

    def test_keys_spread_over_partitions(self):
        used = {partition_for(f"tenant-{i}", 4) for i in range(64)}
        assert len(used) > 1

    def test_per_topic_partition_count(self):
        broker = MemoryBroker(default_partitions=4, topic_partitions={TOPIC: 1})
        assert broker.partition_count(TOPIC) == 1
        assert broker.partition_count("emis.other") == 4

    def test_satisfies_protocol(self):
        assert isinstance(MemoryBroker(), IBroker)


class TestConsume:
    @pytest.mark.asyncio
    async def test_unacked_head_is_redelivered(self):
        broker = MemoryBroker(default_partitions=1)
        await broker.send(TOPIC, "k", "first")
        await broker.send(TOPIC, "k", "second")

        batch = await broker.fetch(TOPIC, 0, "g")
        assert [m.value for m in batch] == ["first", "second"]

        again = await broker.fetch(TOPIC, 0, "g")
        assert [m.value for m in again] == ["first", "second"]

        await broker.ack("g", batch[0])
        after = await broker.fetch(TOPIC, 0, "g")
        assert [m.value for m in after] == ["second"]
        assert broker.committed_offset("g", TOPIC, 0) == 1

    @pytest.mark.asyncio
    async def test_groups_are_independent(self):
        broker = MemoryBroker(default_partitions=1)
        await broker.send(TOPIC, "k", "v")
        [message] = await broker.fetch(TOPIC, 0, "student")
        await broker.ack("student", message)

        assert await broker.fetch(TOPIC, 0, "student") == []
        assert len(await broker.fetch(TOPIC, 0, "chat")) == 1

    @pytest.mark.asyncio
    async def test_max_messages(self):
        broker = MemoryBroker(default_partitions=1)
        for i in range(5):
            await broker.send(TOPIC, "k", str(i))
        batch = await broker.fetch(TOPIC, 0, "g", max_messages=2)
        assert [m.value for m in batch] == ["0", "1"]

    @pytest.mark.asyncio
    async def test_stale_ack_does_not_rewind(self):
        broker = MemoryBroker(default_partitions=1)
        await broker.send(TOPIC, "k", "a")
        await broker.send(TOPIC, "k", "b")
        first, second = await broker.fetch(TOPIC, 0, "g")
        await broker.ack("g", second)
        await broker.ack("g", first)
        assert broker.committed_offset("g", TOPIC, 0) == 2

    @pytest.mark.asyncio
    async def test_blocking_fetch_wakes_on_send(self):
        broker = MemoryBroker(default_partitions=1)
        fetch = asyncio.create_task(broker.fetch(TOPIC, 0, "g", block_ms=2000))
        await asyncio.sleep(0)
        await broker.send(TOPIC, "k", "late")
        batch = await asyncio.wait_for(fetch, timeout=1)
        assert [m.value for m in batch] == ["late"]

    @pytest.mark.asyncio
    async def test_blocking_fetch_times_out_empty(self):
        broker = MemoryBroker(default_partitions=1)
        assert await broker.fetch(TOPIC, 0, "g", block_ms=10) == []

    @pytest.mark.asyncio
    async def test_stop_wakes_blocked_fetch(self):
        broker = MemoryBroker(default_partitions=1)
        fetch = asyncio.create_task(broker.fetch(TOPIC, 0, "g", block_ms=5000))
        await asyncio.sleep(0)
        await broker.stop()
        assert await asyncio.wait_for(fetch, timeout=1) == []


class TestHelpers:
    @pytest.mark.asyncio
    async def test_outage(self):
        broker = MemoryBroker()
        broker.set_available(False)
        with pytest.raises(ConnectionError):
            await broker.send(TOPIC, "k", "v")
        broker.set_available(True)
        await broker.send(TOPIC, "k", "v")
        assert broker.sends == 1

    def test_inject_targets_partition(self):
        broker = MemoryBroker(default_partitions=4)
        message = broker.inject(TOPIC, 3, "raw", key="k", headers={"event-type": "X"})
        assert message.partition == 3
        assert message.offset == "0"
        assert broker.messages(TOPIC, 3) == [message]
        assert broker.messages(TOPIC) == [message]
