"""Chat domain events."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from emis.core.enums import ConversationType
from emis.domain.events import DomainEvent


@dataclass(frozen=True)
class Mention:
    user_id: str
    user_name: str
    start_index: int
    length: int


@dataclass(frozen=True)
class ConversationCreated(DomainEvent):
    conversation_type: ConversationType = ConversationType.ONE_TO_ONE
    name: str = ""


@dataclass(frozen=True)
class ConversationArchived(DomainEvent):
    name: str = ""


@dataclass(frozen=True)
class MessageSent(DomainEvent):
    message_id: str = ""
    sender_id: str = ""
    sender_name: str = ""
    content: str = ""
    sent_at: datetime | None = None
    reply_to_message_id: str | None = None
    mentions: tuple[Mention, ...] = ()
    recipient_user_ids: tuple[str, ...] = ()
