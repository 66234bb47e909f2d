"""PostgreSQL-backed outbox, dead-letter store and unit of work.

All three take an ``async_sessionmaker`` from
:func:`emis.storage.postgres.connection.create_session_factory`.

Conversion helpers translate between the runtime dataclasses
(:class:`OutboxMessage`, :class:`DeadLetter`) and ORM records.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from emis.core.enums import DeadLetterReason, OutboxStatus
from emis.domain.dispatcher import IDomainEventDispatcher
from emis.integration.dead_letter import DeadLetter
from emis.integration.translator import Translator
from emis.outbox.store import OutboxMessage, select_due
from emis.storage.unit_of_work import AbstractUnitOfWork

from .models import DeadLetterRecord, OutboxRecord

logger = logging.getLogger(__name__)

# Rows scanned per fetch_due call, as a multiple of the requested limit.
_SCAN_FACTOR = 10


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------

def _message_to_record(message: OutboxMessage) -> OutboxRecord:
    return OutboxRecord(
        message_id=message.message_id,
        topic=message.topic,
        key=message.key,
        event_type=message.event_type,
        tenant_id=message.tenant_id,
        payload=message.payload,
        headers=dict(message.headers),
        status=message.status.value,
        attempts=message.attempts,
        next_attempt_at=message.next_attempt_at,
        last_error=message.last_error,
        created_at=message.created_at,
        published_at=message.published_at,
    )


def _record_to_message(record: OutboxRecord) -> OutboxMessage:
    return OutboxMessage(
        message_id=record.message_id,
        topic=record.topic,
        key=record.key,
        event_type=record.event_type,
        tenant_id=record.tenant_id,
        payload=record.payload,
        headers=dict(record.headers or {}),
        status=OutboxStatus(record.status),
        attempts=record.attempts,
        next_attempt_at=record.next_attempt_at,
        last_error=record.last_error,
        created_at=record.created_at,
        published_at=record.published_at,
        sequence=record.sequence,
    )


def _letter_to_record(letter: DeadLetter) -> DeadLetterRecord:
    return DeadLetterRecord(
        topic=letter.topic,
        partition=letter.partition,
        offset=letter.offset,
        group=letter.group,
        key=letter.key,
        raw_value=letter.raw_value,
        reason=letter.reason.value,
        error=letter.error,
        attempts=letter.attempts,
        event_type=letter.event_type,
        event_id=letter.event_id,
        tenant_id=letter.tenant_id,
        handler=letter.handler,
        dead_lettered_at=letter.dead_lettered_at,
    )


def _record_to_letter(record: DeadLetterRecord) -> DeadLetter:
    return DeadLetter(
        topic=record.topic,
        partition=record.partition,
        offset=record.offset,
        group=record.group,
        key=record.key,
        raw_value=record.raw_value,
        reason=DeadLetterReason(record.reason),
        error=record.error,
        attempts=record.attempts,
        event_type=record.event_type,
        event_id=record.event_id,
        tenant_id=record.tenant_id,
        handler=record.handler,
        dead_lettered_at=record.dead_lettered_at,
    )


# ---------------------------------------------------------------------------
# SqlOutboxStore
# ---------------------------------------------------------------------------

class SqlOutboxStore:
    """Outbox rows in the ``outbox_messages`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    async def add_many(self, messages: Iterable[OutboxMessage]) -> None:
        async with self._sessions() as session:
            session.add_all([_message_to_record(m) for m in messages])
            await session.commit()

    async def fetch_due(self, limit: int, now: datetime) -> list[OutboxMessage]:
        stmt = (
            select(OutboxRecord)
            .where(OutboxRecord.status == OutboxStatus.PENDING.value)
            .order_by(OutboxRecord.sequence)
            .limit(limit * _SCAN_FACTOR)
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            rows = [_record_to_message(r) for r in result.scalars().all()]
        return select_due(rows, now, limit)

    async def mark_published(self, message_id: str, published_at: datetime) -> None:
        await self._update(
            message_id,
            status=OutboxStatus.PUBLISHED.value,
            published_at=published_at,
            last_error=None,
        )

    async def mark_retry(
        self, message_id: str, error: str, next_attempt_at: datetime,
    ) -> None:
        await self._update(
            message_id,
            attempts=OutboxRecord.attempts + 1,
            last_error=error,
            next_attempt_at=next_attempt_at,
        )

    async def mark_failed(self, message_id: str, error: str) -> None:
        await self._update(
            message_id,
            attempts=OutboxRecord.attempts + 1,
            status=OutboxStatus.FAILED.value,
            last_error=error,
        )

    async def pending_count(self) -> int:
        stmt = select(func.count()).select_from(OutboxRecord).where(
            OutboxRecord.status == OutboxStatus.PENDING.value
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def _update(self, message_id: str, **values: object) -> None:
        stmt = (
            update(OutboxRecord)
            .where(OutboxRecord.message_id == message_id)
            .values(**values)
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()


# ---------------------------------------------------------------------------
# SqlDeadLetterStore
# ---------------------------------------------------------------------------

class SqlDeadLetterStore:
    """Dead letters in the ``dead_letters`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    async def put(self, letter: DeadLetter) -> None:
        async with self._sessions() as session:
            session.add(_letter_to_record(letter))
            await session.commit()

    async def recent(self, topic: str | None = None, limit: int = 100) -> list[DeadLetter]:
        stmt = select(DeadLetterRecord).order_by(DeadLetterRecord.id.desc()).limit(limit)
        if topic is not None:
            stmt = stmt.where(DeadLetterRecord.topic == topic)
        async with self._sessions() as session:
            result = await session.execute(stmt)
            return [_record_to_letter(r) for r in result.scalars().all()]


# ---------------------------------------------------------------------------
# SqlAlchemyUnitOfWork
# ---------------------------------------------------------------------------

class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    """Unit of work bound to one :class:`AsyncSession`.

    Service repositories add their records to :attr:`session`; ``commit()``
    adds the outbox records to the same session and commits once.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        translator: Translator | None = None,
        dispatcher: IDomainEventDispatcher | None = None,
    ) -> None:
        super().__init__(translator=translator, dispatcher=dispatcher)
        self._sessions = session_factory
        self._session: AsyncSession | None = None

    @property
    def session(self) -> AsyncSession:
        if self._session is None:
            raise RuntimeError("SqlAlchemyUnitOfWork used outside 'async with'")
        return self._session

    async def _begin(self) -> None:
        self._session = self._sessions()

    async def _close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _write(self, outbox: Sequence[OutboxMessage]) -> None:
        self.session.add_all([_message_to_record(m) for m in outbox])
        await self.session.commit()

    async def rollback(self) -> None:
        if self._session is not None:
            await self._session.rollback()
        self._seen = []
