"""SQLAlchemy ORM models for the event choreography tables.

Tables:
    outbox_messages   Integration events staged in the producing transaction.
    dead_letters      Inbound messages pulled out of the consumer flow.

Aggregate tables belong to each service's own persistence layer and are
not declared here.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)

from emis.core.enums import OutboxStatus

JsonType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# OutboxRecord
# ---------------------------------------------------------------------------

class OutboxRecord(Base):
    """One integration event waiting to be (or already) published."""

    __tablename__ = "outbox_messages"

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    topic: Mapped[str] = mapped_column(String(128), nullable=False)
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    headers: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=OutboxStatus.PENDING.value,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_outbox_messages_status_sequence", "status", "sequence"),
        Index("ix_outbox_messages_tenant_id", "tenant_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<OutboxRecord seq={self.sequence} {self.event_type} "
            f"{self.message_id} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# DeadLetterRecord
# ---------------------------------------------------------------------------

class DeadLetterRecord(Base):
    """Inbound message set aside for manual inspection."""

    __tablename__ = "dead_letters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    topic: Mapped[str] = mapped_column(String(128), nullable=False)
    partition: Mapped[int] = mapped_column(Integer, nullable=False)
    offset: Mapped[str] = mapped_column(String(64), nullable=False)
    group: Mapped[str] = mapped_column("consumer_group", String(128), nullable=False)
    key: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    raw_value: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=False, default="")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    event_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    event_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    handler: Mapped[str | None] = mapped_column(String(256), nullable=True)
    dead_lettered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )

    __table_args__ = (
        Index("ix_dead_letters_topic", "topic"),
        Index("ix_dead_letters_tenant_id", "tenant_id"),
        Index("ix_dead_letters_event_id", "event_id"),
    )
