"""Chat aggregates: conversations and the messages stored in them."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from emis.core.enums import ConversationType, ParticipantRole
from emis.core.errors import BusinessRuleViolation
from emis.core.ids import new_id, utc_now
from emis.domain.aggregate import AggregateRoot

from .events import ConversationArchived, ConversationCreated, Mention, MessageSent

PREVIEW_LENGTH = 100


@dataclass(frozen=True)
class Participant:
    user_id: str
    display_name: str = ""
    role: ParticipantRole = ParticipantRole.MEMBER


@dataclass
class Conversation(AggregateRoot):
    conversation_type: ConversationType = ConversationType.ONE_TO_ONE
    name: str = ""
    # Set for student groups only.
    student_id: str | None = None
    participants: list[Participant] = field(default_factory=list)
    archived: bool = False
    last_message_id: str | None = None
    last_message_at: datetime | None = None
    last_message_preview: str = ""

    @classmethod
    def open(
        cls,
        tenant_id: str,
        conversation_type: ConversationType,
        name: str,
        participants: list[Participant],
        *,
        student_id: str | None = None,
    ) -> Conversation:
        if not participants:
            raise BusinessRuleViolation("A conversation needs at least one participant")
        conversation = cls(
            tenant_id=tenant_id,
            conversation_type=conversation_type,
            name=name,
            student_id=student_id,
            participants=list(participants),
        )
        conversation.record_event(
            ConversationCreated(
                aggregate_id=conversation.id,
                tenant_id=tenant_id,
                conversation_type=conversation_type,
                name=name,
            )
        )
        return conversation

    @classmethod
    def student_group(
        cls,
        tenant_id: str,
        student_id: str,
        student_name: str,
        parents: list[Participant],
    ) -> Conversation:
        if not parents:
            raise BusinessRuleViolation(
                f"Student {student_id} needs at least one parent for a group conversation"
            )
        return cls.open(
            tenant_id,
            ConversationType.STUDENT_GROUP,
            f"Group: {student_name}",
            parents,
            student_id=student_id,
        )

    @classmethod
    def announcement_channel(
        cls,
        tenant_id: str,
        tenant_name: str,
        admin_id: str,
    ) -> Conversation:
        return cls.open(
            tenant_id,
            ConversationType.ANNOUNCEMENT_CHANNEL,
            f"{tenant_name} Announcements",
            [Participant(admin_id, "School Admin", ParticipantRole.ADMIN)],
        )

    def participant(self, user_id: str) -> Participant | None:
        return next((p for p in self.participants if p.user_id == user_id), None)

    def add_participant(self, participant: Participant) -> None:
        if self.participant(participant.user_id) is None:
            self.participants.append(participant)
            self.touch()

    def archive(self) -> None:
        if self.archived:
            return
        self.archived = True
        self.touch()
        self.record_event(
            ConversationArchived(aggregate_id=self.id, tenant_id=self.tenant_id, name=self.name)
        )

    def post(
        self,
        sender_id: str,
        sender_name: str,
        content: str,
        *,
        reply_to_message_id: str | None = None,
        mentions: tuple[Mention, ...] = (),
    ) -> MessageSent:
        """Record a new message from *sender_id* and return its event."""
        if self.archived:
            raise BusinessRuleViolation(f"Conversation {self.id} is archived")
        sender = self.participant(sender_id)
        if sender is None:
            raise BusinessRuleViolation(f"{sender_id} is not a participant of {self.id}")
        if sender.role == ParticipantRole.READ_ONLY:
            raise BusinessRuleViolation(f"{sender_id} cannot post in {self.id}")
        if not (content or "").strip():
            raise BusinessRuleViolation("Message content cannot be empty")

        event = MessageSent(
            aggregate_id=self.id,
            tenant_id=self.tenant_id,
            message_id=new_id(),
            sender_id=sender_id,
            sender_name=sender_name,
            content=content,
            sent_at=utc_now(),
            reply_to_message_id=reply_to_message_id,
            mentions=mentions,
            recipient_user_ids=tuple(
                p.user_id for p in self.participants if p.user_id != sender_id
            ),
        )
        self.record_event(event)
        return event

    def apply_last_message(self, message_id: str, sent_at: datetime, content: str) -> bool:
        """Move the last-message pointer forward; older messages are ignored."""
        if self.last_message_at is not None and sent_at <= self.last_message_at:
            return False
        self.last_message_id = message_id
        self.last_message_at = sent_at
        self.last_message_preview = content[:PREVIEW_LENGTH]
        self.touch()
        return True


@dataclass
class ChatMessage(AggregateRoot):
    """A stored message; ``id`` is the message id from MessageSent."""

    conversation_id: str = ""
    sender_id: str = ""
    sender_name: str = ""
    content: str = ""
    sent_at: datetime = field(default_factory=utc_now)
    reply_to_message_id: str | None = None
    mentions: tuple[Mention, ...] = ()
