"""Transactional outbox rows.

The unit of work writes one :class:`OutboxMessage` per translated
integration event in the same transaction as the aggregate change.  The
relay later publishes pending rows in ``sequence`` order.

Ordering rule: a row is never handed to the relay while an earlier,
still-pending row with the same ``(topic, key)`` is waiting for its retry
time, so a backed-off message cannot be overtaken by a younger one.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Protocol, runtime_checkable

from emis.core.enums import OutboxStatus
from emis.core.ids import utc_now
from emis.integration import codec
from emis.integration.events import IntegrationEvent
from emis.integration.publisher import message_headers
from emis.integration.schemas import get_topic_for_event

logger = logging.getLogger(__name__)


@dataclass
class OutboxMessage:
    message_id: str
    topic: str
    key: str
    event_type: str
    tenant_id: str
    payload: str
    headers: dict[str, str] = field(default_factory=dict)
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    published_at: datetime | None = None
    sequence: int = 0

    @classmethod
    def from_event(cls, event: IntegrationEvent) -> OutboxMessage:
        """Encode *event* into a pending row."""
        return cls(
            message_id=event.event_id,
            topic=get_topic_for_event(event),
            key=event.ordering_key(),
            event_type=type(event).__name__,
            tenant_id=event.tenant_id,
            payload=codec.encode(event),
            headers=message_headers(event),
        )

    @property
    def ordering_slot(self) -> tuple[str, str]:
        return (self.topic, self.key)

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt_at is None or self.next_attempt_at <= now


def select_due(
    messages: Iterable[OutboxMessage],
    now: datetime,
    limit: int,
) -> list[OutboxMessage]:
    """Pick publishable rows from *messages* (already in sequence order)."""
    blocked: set[tuple[str, str]] = set()
    due: list[OutboxMessage] = []
    for message in messages:
        if message.status != OutboxStatus.PENDING:
            continue
        if message.ordering_slot in blocked:
            continue
        if not message.is_due(now):
            blocked.add(message.ordering_slot)
            continue
        due.append(message)
        if len(due) >= limit:
            break
    return due


@runtime_checkable
class IOutboxStore(Protocol):
    async def add_many(self, messages: Iterable[OutboxMessage]) -> None: ...

    async def fetch_due(self, limit: int, now: datetime) -> list[OutboxMessage]: ...

    async def mark_published(self, message_id: str, published_at: datetime) -> None: ...

    async def mark_retry(
        self, message_id: str, error: str, next_attempt_at: datetime,
    ) -> None: ...

    async def mark_failed(self, message_id: str, error: str) -> None: ...

    async def pending_count(self) -> int: ...


class InMemoryOutboxStore:
    """Outbox table held in process memory."""

    def __init__(self) -> None:
        self._rows: dict[str, OutboxMessage] = {}
        self._sequence = 0

    async def add_many(self, messages: Iterable[OutboxMessage]) -> None:
        for message in messages:
            if message.message_id in self._rows:
                continue
            self._sequence += 1
            self._rows[message.message_id] = replace(message, sequence=self._sequence)

    async def fetch_due(self, limit: int, now: datetime) -> list[OutboxMessage]:
        ordered = sorted(self._rows.values(), key=lambda m: m.sequence)
        return [replace(m) for m in select_due(ordered, now, limit)]

    async def mark_published(self, message_id: str, published_at: datetime) -> None:
        row = self._rows[message_id]
        row.status = OutboxStatus.PUBLISHED
        row.published_at = published_at
        row.last_error = None

    async def mark_retry(
        self, message_id: str, error: str, next_attempt_at: datetime,
    ) -> None:
        row = self._rows[message_id]
        row.attempts += 1
        row.last_error = error
        row.next_attempt_at = next_attempt_at

    async def mark_failed(self, message_id: str, error: str) -> None:
        row = self._rows[message_id]
        row.attempts += 1
        row.status = OutboxStatus.FAILED
        row.last_error = error

    async def pending_count(self) -> int:
        return sum(1 for m in self._rows.values() if m.status == OutboxStatus.PENDING)

    # -- Inspection ----------------------------------------------------

    def get(self, message_id: str) -> OutboxMessage | None:
        row = self._rows.get(message_id)
        return replace(row) if row else None

    def all(self) -> list[OutboxMessage]:
        return [replace(m) for m in sorted(self._rows.values(), key=lambda m: m.sequence)]

    def __len__(self) -> int:
        return len(self._rows)
