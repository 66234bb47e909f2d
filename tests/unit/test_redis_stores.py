"""Tests for the dead-letter and idempotency stores."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from emis.bus.broker import BrokerMessage
from emis.core.enums import DeadLetterReason
from emis.integration.dead_letter import (
    DeadLetter,
    IDeadLetterStore,
    InMemoryDeadLetterStore,
    RedisDeadLetterStore,
    dumps,
)
from emis.integration.idempotency import (
    IIdempotencyStore,
    InMemoryIdempotencyStore,
    RedisIdempotencyStore,
)


def _message(topic: str = "emis.student", **headers) -> BrokerMessage:
    return BrokerMessage(
        topic=topic, partition=1, offset="3", key="tenant-1", value='{"broken"',
        headers=headers,
    )


def _letter(topic: str = "emis.student", **kwargs) -> DeadLetter:
    defaults = dict(reason=DeadLetterReason.DESERIALIZATION, error="bad json", attempts=1)
    defaults.update(kwargs)
    return DeadLetter.from_message(_message(topic), "emis-chat-consumer-group", **defaults)


# ---------------------------------------------------------------------------
# Dead letters
# ---------------------------------------------------------------------------

class TestDeadLetter:
    def test_from_message_falls_back_to_headers(self):
        letter = DeadLetter.from_message(
            _message(**{"event-type": "StudentCreatedIntegrationEvent", "event-id": "e-1", "tenant-id": "t-1"}),
            "g",
            reason=DeadLetterReason.NON_RETRYABLE,
            error="duplicate phone",
            attempts=2,
            handler="chat.create_student_group",
        )
        assert letter.event_type == "StudentCreatedIntegrationEvent"
        assert letter.event_id == "e-1"
        assert letter.tenant_id == "t-1"
        assert letter.raw_value == '{"broken"'
        assert letter.handler == "chat.create_student_group"

    def test_fields_are_flat_strings(self):
        fields = _letter().to_fields()
        assert fields["reason"] == "deserialization"
        assert fields["partition"] == "1"
        assert fields["event_id"] == ""
        assert all(isinstance(v, str) for v in fields.values())

    def test_dumps_is_json(self):
        assert json.loads(dumps(_letter()))["error"] == "bad json"


class TestInMemoryDeadLetterStore:
    @pytest.mark.asyncio
    async def test_put_recent_clear(self):
        store = InMemoryDeadLetterStore()
        await store.put(_letter("emis.student"))
        await store.put(_letter("emis.teacher"))
        await store.put(_letter("emis.student", error="second"))

        assert isinstance(store, IDeadLetterStore)
        assert len(store) == 3
        assert [d.error for d in await store.recent("emis.student")] == ["bad json", "second"]
        assert len(await store.recent(limit=1)) == 1
        assert len(store.clear()) == 3
        assert len(store) == 0


class TestRedisDeadLetterStore:
    @pytest.mark.asyncio
    async def test_put_appends_to_dlq_stream(self):
        client = AsyncMock()
        store = RedisDeadLetterStore(client=client, max_stream_length=1000)

        letter = _letter()
        await store.put(letter)

        args, kwargs = client.xadd.await_args
        assert args[0] == "emis.student.dlq"
        assert args[1] == letter.to_fields()
        assert kwargs == {"maxlen": 1000, "approximate": True}

    @pytest.mark.asyncio
    async def test_put_failure_propagates(self):
        client = AsyncMock()
        client.xadd.side_effect = ConnectionError("redis down")
        store = RedisDeadLetterStore(client=client)

        with pytest.raises(ConnectionError):
            await store.put(_letter())

    @pytest.mark.asyncio
    async def test_recent_parses_entries(self):
        letter = _letter(handler="h", event_id="e-9")
        client = AsyncMock()
        client.xrange.return_value = [("1-0", letter.to_fields())]
        store = RedisDeadLetterStore(client=client)

        [restored] = await store.recent("emis.student", limit=5)

        client.xrange.assert_awaited_once_with("emis.student.dlq", count=5)
        assert restored == letter

    @pytest.mark.asyncio
    async def test_recent_requires_topic(self):
        store = RedisDeadLetterStore(client=AsyncMock())
        with pytest.raises(ValueError):
            await store.recent()

    def test_custom_suffix(self):
        store = RedisDeadLetterStore(suffix="-dead", client=AsyncMock())
        assert store.stream_for("emis.chat.messages") == "emis.chat.messages-dead"

    def test_not_connected(self):
        with pytest.raises(RuntimeError):
            _ = RedisDeadLetterStore().redis


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------

class TestInMemoryIdempotencyStore:
    @pytest.mark.asyncio
    async def test_marks_per_handler(self):
        store = InMemoryIdempotencyStore()
        assert isinstance(store, IIdempotencyStore)
        assert not await store.is_processed("a", "e-1")
        await store.mark_processed("a", "e-1")
        assert await store.is_processed("a", "e-1")
        assert not await store.is_processed("b", "e-1")
        assert len(store) == 1


class TestRedisIdempotencyStore:
    @pytest.mark.asyncio
    async def test_key_layout_and_ttl(self):
        client = AsyncMock()
        client.exists.return_value = 0
        store = RedisIdempotencyStore(
            group="emis-chat-consumer-group", prefix="p:", ttl_seconds=60, client=client,
        )

        assert not await store.is_processed("chat.store_message", "e-1")
        await store.mark_processed("chat.store_message", "e-1")

        key = "p:emis-chat-consumer-group:chat.store_message:e-1"
        client.exists.assert_awaited_once_with(key)
        client.set.assert_awaited_once_with(key, "1", nx=True, ex=60)

    @pytest.mark.asyncio
    async def test_existing_marker(self):
        client = AsyncMock()
        client.exists.return_value = 1
        store = RedisIdempotencyStore(group="g", client=client)
        assert await store.is_processed("h", "e")

    @pytest.mark.asyncio
    async def test_close(self):
        client = AsyncMock()
        store = RedisIdempotencyStore(group="g", client=client)
        await store.close()
        client.aclose.assert_awaited_once()
