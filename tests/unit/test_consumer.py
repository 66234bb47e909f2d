"""Tests for IntegrationEventConsumer and its partition workers."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from unittest.mock import AsyncMock

import pytest

from emis.bus.broker import partition_for
from emis.bus.memory_bus import MemoryBroker
from emis.core.config import ConsumerConfig
from emis.core.enums import DeadLetterReason, MessageState
from emis.core.errors import BusinessRuleViolation, RetryableHandlerError
from emis.integration import codec
from emis.integration.consumer import IntegrationEventConsumer
from emis.integration.dead_letter import InMemoryDeadLetterStore
from emis.integration.events import (
    StudentCreatedIntegrationEvent,
    StudentDeletedIntegrationEvent,
    TenantCreatedIntegrationEvent,
)
from emis.integration.publisher import IntegrationEventPublisher
from emis.integration.retry import ErrorPolicy
from emis.integration.router import SubscriptionTable
from emis.integration.schemas import TENANTS_TOPIC
from emis.tenancy.context import current_tenant_id

from conftest import make_student_created, make_tenant_created

GROUP = "emis-test-consumer-group"


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _table(handler, *, policy: ErrorPolicy | None = None, event_type=TenantCreatedIntegrationEvent) -> SubscriptionTable:
    table = SubscriptionTable(GROUP)
    table.subscribe(event_type, handler, policy=policy or ErrorPolicy(max_attempts=3), name="handler")
    return table


def _partition_of(broker, event) -> int:
    return partition_for(event.ordering_key(), broker.partition_count(TENANTS_TOPIC))


# ---------------------------------------------------------------------------
# Draining
# ---------------------------------------------------------------------------

class TestDrain:
    @pytest.mark.asyncio
    async def test_successful_messages_are_acked(self, broker, publisher, fast_consumer_config, tenant_id):
        handled: list[str] = []

        async def handler(event, cancel):
            handled.append(event.event_id)

        consumer = IntegrationEventConsumer(broker, _table(handler), config=fast_consumer_config)
        events = [make_tenant_created(tenant_id, tenant_name=f"S{i}") for i in range(3)]
        for event in events:
            await publisher.publish(event)

        assert await consumer.drain() == 3
        assert handled == [e.event_id for e in events]
        assert consumer.messages_processed == 3
        partition = _partition_of(broker, events[0])
        assert broker.committed_offset(GROUP, TENANTS_TOPIC, partition) == 3

    @pytest.mark.asyncio
    async def test_workers_cover_every_partition_of_subscribed_topics(self, broker, fast_consumer_config):
        async def handler(event, cancel):
            pass

        consumer = IntegrationEventConsumer(broker, _table(handler), config=fast_consumer_config)
        await consumer.drain()

        assert sorted(w.partition for w in consumer.workers) == list(range(4))
        assert {w.topic for w in consumer.workers} == {TENANTS_TOPIC}

    @pytest.mark.asyncio
    async def test_subscriptions_frozen_on_first_use(self, broker, fast_consumer_config):
        async def handler(event, cancel):
            pass

        table = _table(handler)
        consumer = IntegrationEventConsumer(broker, table, config=fast_consumer_config)
        await consumer.drain()
        assert table.frozen

    @pytest.mark.asyncio
    async def test_handler_sees_message_tenant(
        self, broker, publisher, fast_consumer_config, tenant_id, other_tenant_id,
    ):
        seen: list[tuple[str, str]] = []

        async def handler(event, cancel):
            seen.append((event.tenant_id, current_tenant_id()))

        consumer = IntegrationEventConsumer(broker, _table(handler), config=fast_consumer_config)
        await publisher.publish(make_tenant_created(tenant_id))
        await publisher.publish(make_tenant_created(other_tenant_id))
        await consumer.drain()

        assert len(seen) == 2
        assert all(a == b for a, b in seen)


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:
    @pytest.mark.asyncio
    async def test_poison_message_is_dead_lettered_then_acked(
        self, broker, publisher, fast_consumer_config, tenant_id,
    ):
        handled: list[str] = []

        async def handler(event, cancel):
            handled.append(event.tenant_name)

        consumer = IntegrationEventConsumer(broker, _table(handler), config=fast_consumer_config)
        good = make_tenant_created(tenant_id, tenant_name="after")
        partition = _partition_of(broker, good)
        broker.inject(TENANTS_TOPIC, partition, "{not json", key=tenant_id)
        await publisher.publish(good)

        await consumer.drain()

        assert handled == ["after"]
        [letter] = consumer.dead_letters
        assert letter.reason == DeadLetterReason.DESERIALIZATION
        assert letter.raw_value == "{not json"
        assert letter.group == GROUP
        assert len(consumer.dead_letter_store) == 1
        assert broker.committed_offset(GROUP, TENANTS_TOPIC, partition) == 2
        assert consumer.get_error_counts() == {f"{TENANTS_TOPIC}/{GROUP}": 1}

    @pytest.mark.asyncio
    async def test_non_retryable_failure_dead_letters_on_first_attempt(
        self, broker, publisher, fast_consumer_config, tenant_id,
    ):
        async def handler(event, cancel):
            raise BusinessRuleViolation("phone already registered")

        consumer = IntegrationEventConsumer(broker, _table(handler), config=fast_consumer_config)
        event = make_tenant_created(tenant_id)
        await publisher.publish(event)
        await consumer.drain()

        [letter] = consumer.dead_letters
        assert letter.reason == DeadLetterReason.NON_RETRYABLE
        assert letter.attempts == 1
        assert letter.event_id == event.event_id
        assert letter.tenant_id == tenant_id
        assert letter.event_type == "TenantCreatedIntegrationEvent"
        assert letter.handler == "handler"
        assert "phone already registered" in letter.error

    @pytest.mark.asyncio
    async def test_retry_blocks_partition_until_head_succeeds(
        self, broker, publisher, fast_consumer_config, tenant_id,
    ):
        handled: list[str] = []
        failures = {"remaining": 1}

        async def handler(event, cancel):
            if event.tenant_name == "first" and failures["remaining"]:
                failures["remaining"] -= 1
                raise RetryableHandlerError("database busy")
            handled.append(event.tenant_name)

        consumer = IntegrationEventConsumer(broker, _table(handler), config=fast_consumer_config)
        await publisher.publish(make_tenant_created(tenant_id, tenant_name="first"))
        await publisher.publish(make_tenant_created(tenant_id, tenant_name="second"))

        assert await consumer.drain() == 0
        assert handled == []
        worker = next(w for w in consumer.workers if w.head is not None)
        assert worker.head.state == MessageState.REDELIVERY_PENDING
        assert worker.head.attempts == 1

        assert await consumer.drain() == 2
        assert handled == ["first", "second"]
        assert consumer.dead_letters == []

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, broker, publisher, fast_consumer_config, tenant_id):
        calls: list[int] = []

        async def handler(event, cancel):
            calls.append(1)
            raise RetryableHandlerError("still busy")

        consumer = IntegrationEventConsumer(broker, _table(handler), config=fast_consumer_config)
        await publisher.publish(make_tenant_created(tenant_id))

        for _ in range(3):
            await consumer.drain()

        assert len(calls) == 3
        [letter] = consumer.dead_letters
        assert letter.reason == DeadLetterReason.RETRIES_EXHAUSTED
        assert letter.attempts == 3

    @pytest.mark.asyncio
    async def test_timeout_leaves_message_for_redelivery(self, broker, publisher, tenant_id):
        config = ConsumerConfig(handler_timeout_seconds=0.05, max_attempts=5, backoff_base_seconds=0.001)
        slow = {"on": True}

        async def handler(event, cancel):
            if slow["on"]:
                await asyncio.sleep(1)

        consumer = IntegrationEventConsumer(broker, _table(handler), config=config)
        event = make_tenant_created(tenant_id)
        await publisher.publish(event)

        await consumer.drain()
        partition = _partition_of(broker, event)
        assert broker.committed_offset(GROUP, TENANTS_TOPIC, partition) == 0

        slow["on"] = False
        await consumer.drain()
        assert broker.committed_offset(GROUP, TENANTS_TOPIC, partition) == 1

    @pytest.mark.asyncio
    async def test_failed_dead_letter_write_leaves_message_unacked(
        self, broker, publisher, fast_consumer_config, tenant_id,
    ):
        async def handler(event, cancel):
            raise BusinessRuleViolation("rejected")

        store = AsyncMock()
        store.put.side_effect = ConnectionError("dlq unreachable")
        consumer = IntegrationEventConsumer(
            broker, _table(handler), config=fast_consumer_config, dead_letters=store,
        )
        event = make_tenant_created(tenant_id)
        await publisher.publish(event)

        await consumer.drain()

        partition = _partition_of(broker, event)
        assert broker.committed_offset(GROUP, TENANTS_TOPIC, partition) == 0
        assert consumer.dead_letters == []

        store.put.side_effect = None
        await consumer.drain()
        assert broker.committed_offset(GROUP, TENANTS_TOPIC, partition) == 1
        assert len(consumer.dead_letters) == 1

    @pytest.mark.asyncio
    async def test_clear_dead_letters(self, broker, fast_consumer_config):
        async def handler(event, cancel):
            pass

        consumer = IntegrationEventConsumer(broker, _table(handler), config=fast_consumer_config)
        broker.inject(TENANTS_TOPIC, 0, "garbage")
        await consumer.drain()

        assert len(consumer.clear_dead_letters()) == 1
        assert consumer.dead_letters == []
        # The store keeps its own copy.
        assert isinstance(consumer.dead_letter_store, InMemoryDeadLetterStore)
        assert len(consumer.dead_letter_store) == 1

    @pytest.mark.asyncio
    async def test_blank_tenant_is_dead_lettered_and_skipped(
        self, broker, publisher, fast_consumer_config, tenant_id,
    ):
        handled: list[str] = []

        async def handler(event, cancel):
            handled.append(event.tenant_name)

        consumer = IntegrationEventConsumer(broker, _table(handler), config=fast_consumer_config)
        good = make_tenant_created(tenant_id, tenant_name="after")
        partition = _partition_of(broker, good)
        envelope = json.loads(codec.encode(make_tenant_created(tenant_id, tenant_name="blank")))
        envelope["tenantId"] = ""
        broker.inject(TENANTS_TOPIC, partition, json.dumps(envelope), key=tenant_id)
        await publisher.publish(good)

        assert await consumer.drain() == 2

        assert handled == ["after"]
        [letter] = consumer.dead_letters
        assert letter.reason == DeadLetterReason.DESERIALIZATION
        assert broker.committed_offset(GROUP, TENANTS_TOPIC, partition) == 2


class FlakyAckBroker(MemoryBroker):
    """Broker whose next ``ack`` calls fail with a connection error."""

    def __init__(self, failures: int = 1) -> None:
        super().__init__(default_partitions=4)
        self.ack_failures = failures

    async def ack(self, group, message) -> None:
        if self.ack_failures:
            self.ack_failures -= 1
            raise ConnectionError("ack timed out")
        await super().ack(group, message)


class TestAckFailures:
    @pytest.mark.asyncio
    async def test_failed_ack_is_redelivered_once_broker_recovers(self, fast_consumer_config, tenant_id):
        broker = FlakyAckBroker()
        publisher = IntegrationEventPublisher(broker)
        handled: list[str] = []

        async def handler(event, cancel):
            handled.append(event.tenant_name)

        consumer = IntegrationEventConsumer(broker, _table(handler), config=fast_consumer_config)
        event = make_tenant_created(tenant_id, tenant_name="first")
        partition = _partition_of(broker, event)
        await publisher.publish(event)
        await publisher.publish(make_tenant_created(tenant_id, tenant_name="second"))

        assert await consumer.drain() == 0
        assert broker.committed_offset(GROUP, TENANTS_TOPIC, partition) == 0
        worker = next(w for w in consumer.workers if w.head is not None)
        assert worker.head.state == MessageState.REDELIVERY_PENDING

        assert await consumer.drain() == 2
        assert broker.committed_offset(GROUP, TENANTS_TOPIC, partition) == 2
        # The handler already completed the first message and is not re-run.
        assert handled == ["first", "second"]
        assert consumer.get_error_counts() == {f"{TENANTS_TOPIC}/{GROUP}": 1}

    @pytest.mark.asyncio
    async def test_failed_ack_after_dead_letter_is_retried(self, fast_consumer_config, tenant_id):
        broker = FlakyAckBroker()
        publisher = IntegrationEventPublisher(broker)

        async def handler(event, cancel):
            raise BusinessRuleViolation("rejected")

        consumer = IntegrationEventConsumer(broker, _table(handler), config=fast_consumer_config)
        event = make_tenant_created(tenant_id)
        partition = _partition_of(broker, event)
        await publisher.publish(event)

        await consumer.drain()
        assert broker.committed_offset(GROUP, TENANTS_TOPIC, partition) == 0
        assert consumer.dead_letters == []

        await consumer.drain()
        assert broker.committed_offset(GROUP, TENANTS_TOPIC, partition) == 1
        [letter] = consumer.dead_letters
        assert letter.event_id == event.event_id
        assert letter.attempts == 2


# ---------------------------------------------------------------------------
# Running workers
# ---------------------------------------------------------------------------

class TestRunning:
    @pytest.mark.asyncio
    async def test_workers_process_live_messages(self, broker, publisher, fast_consumer_config, tenant_id):
        handled: list[str] = []

        async def handler(event, cancel):
            handled.append(event.event_id)

        consumer = IntegrationEventConsumer(
            broker, _table(handler), config=fast_consumer_config, block_ms=20,
        )
        await consumer.start()
        try:
            assert consumer.running
            event = make_tenant_created(tenant_id)
            await publisher.publish(event)
            await wait_until(lambda: consumer.messages_processed == 1)
        finally:
            await consumer.stop()

        assert handled == [event.event_id]
        assert not consumer.running

    @pytest.mark.asyncio
    async def test_running_worker_retries_with_backoff(self, broker, publisher, fast_consumer_config, tenant_id):
        attempts: list[int] = []

        async def handler(event, cancel):
            attempts.append(1)
            if len(attempts) < 3:
                raise RetryableHandlerError("busy")

        consumer = IntegrationEventConsumer(
            broker, _table(handler), config=fast_consumer_config, block_ms=20,
        )
        await consumer.start()
        try:
            await publisher.publish(make_tenant_created(tenant_id))
            await wait_until(lambda: consumer.messages_processed == 1)
        finally:
            await consumer.stop()

        assert len(attempts) == 3
        assert consumer.dead_letters == []


class TestShutdown:
    @pytest.mark.asyncio
    async def test_handler_finishing_in_grace_period_is_acked(
        self, broker, publisher, fast_consumer_config, tenant_id,
    ):
        started = asyncio.Event()

        async def handler(event, cancel):
            started.set()
            await cancel.wait()
            await asyncio.sleep(0.01)

        consumer = IntegrationEventConsumer(
            broker, _table(handler), config=fast_consumer_config, block_ms=20,
        )
        event = make_tenant_created(tenant_id)
        await consumer.start()
        await publisher.publish(event)
        await asyncio.wait_for(started.wait(), timeout=2)
        await consumer.stop()

        assert broker.committed_offset(GROUP, TENANTS_TOPIC, _partition_of(broker, event)) == 1

    @pytest.mark.asyncio
    async def test_handler_aborting_on_cancel_is_not_acked(
        self, broker, publisher, fast_consumer_config, tenant_id,
    ):
        started = asyncio.Event()

        async def handler(event, cancel):
            started.set()
            await cancel.wait()
            raise RetryableHandlerError("shutting down")

        consumer = IntegrationEventConsumer(
            broker, _table(handler), config=fast_consumer_config, block_ms=20,
        )
        event = make_tenant_created(tenant_id)
        await consumer.start()
        await publisher.publish(event)
        await asyncio.wait_for(started.wait(), timeout=2)
        await consumer.stop()

        assert broker.committed_offset(GROUP, TENANTS_TOPIC, _partition_of(broker, event)) == 0

    @pytest.mark.asyncio
    async def test_permanent_failure_during_shutdown_is_not_dead_lettered(
        self, broker, publisher, fast_consumer_config, tenant_id,
    ):
        started = asyncio.Event()

        async def handler(event, cancel):
            started.set()
            await cancel.wait()
            raise BusinessRuleViolation("raced with shutdown")

        consumer = IntegrationEventConsumer(
            broker, _table(handler), config=fast_consumer_config, block_ms=20,
        )
        event = make_tenant_created(tenant_id)
        await consumer.start()
        await publisher.publish(event)
        await asyncio.wait_for(started.wait(), timeout=2)
        await consumer.stop()

        assert consumer.dead_letters == []
        assert broker.committed_offset(GROUP, TENANTS_TOPIC, _partition_of(broker, event)) == 0

    @pytest.mark.asyncio
    async def test_stuck_handler_is_cancelled_after_grace(
        self, broker, publisher, fast_consumer_config, tenant_id,
    ):
        started = asyncio.Event()

        async def handler(event, cancel):
            started.set()
            await asyncio.sleep(30)

        consumer = IntegrationEventConsumer(
            broker,
            _table(handler),
            config=fast_consumer_config.model_copy(update={"handler_timeout_seconds": 60.0}),
            block_ms=20,
        )
        event = make_tenant_created(tenant_id)
        await consumer.start()
        await publisher.publish(event)
        await asyncio.wait_for(started.wait(), timeout=2)

        await asyncio.wait_for(consumer.stop(), timeout=5)

        assert not consumer.running
        assert broker.committed_offset(GROUP, TENANTS_TOPIC, _partition_of(broker, event)) == 0

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, broker, fast_consumer_config):
        async def handler(event, cancel):
            pass

        consumer = IntegrationEventConsumer(broker, _table(handler), config=fast_consumer_config)
        await consumer.stop()
        assert not consumer.running

    @pytest.mark.asyncio
    async def test_unsubscribed_type_on_topic_is_acked(
        self, broker, publisher, fast_consumer_config, tenant_id,
    ):
        handled: list[str] = []

        async def handler(event, cancel):
            handled.append(type(event).__name__)

        consumer = IntegrationEventConsumer(
            broker,
            _table(handler, event_type=StudentCreatedIntegrationEvent),
            config=fast_consumer_config,
        )
        deleted = StudentDeletedIntegrationEvent(tenant_id=tenant_id, student_id="s", student_name="An")
        await publisher.publish(deleted)
        await publisher.publish(make_student_created(tenant_id))

        assert await consumer.drain() == 2
        assert handled == ["StudentCreatedIntegrationEvent"]
        assert consumer.dead_letters == []
