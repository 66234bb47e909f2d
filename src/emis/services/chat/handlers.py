"""Chat reactions to the tenant, student and chat topics.

* StudentCreated: open the student's parent group, once per student.
  A student without parents gets no group.
* StudentDeleted: archive that group.
* TenantCreated: open the school's announcement channel.
* MessageSent: store the message once per message id and move the
  conversation's last-message pointer if the message is newer.
"""

from __future__ import annotations

import asyncio
import logging

from emis.core.enums import ConversationType, ParticipantRole
from emis.integration.events import (
    MessageSentIntegrationEvent,
    StudentCreatedIntegrationEvent,
    StudentDeletedIntegrationEvent,
    TenantCreatedIntegrationEvent,
)
from emis.integration.retry import ErrorPolicy
from emis.integration.router import SubscriptionTable
from emis.storage.memory import UowFactory

from .events import Mention
from .model import ChatMessage, Conversation, Participant

logger = logging.getLogger(__name__)


class CreateStudentGroup:
    def __init__(self, uow_factory: UowFactory) -> None:
        self._uow_factory = uow_factory

    async def __call__(self, event: StudentCreatedIntegrationEvent, cancel: asyncio.Event) -> None:
        if not event.parents:
            logger.warning("Student %s has no parents; no group created", event.student_id)
            return
        async with self._uow_factory() as uow:
            conversations = uow.repository(Conversation)
            existing = await conversations.find_one(
                lambda c: c.conversation_type == ConversationType.STUDENT_GROUP
                and c.student_id == event.student_id
            )
            if existing is not None:
                logger.info("Student group for %s already exists", event.student_id)
                return
            group = Conversation.student_group(
                event.tenant_id,
                event.student_id,
                event.student_name,
                [
                    Participant(p.parent_id, p.parent_name, ParticipantRole.MEMBER)
                    for p in event.parents
                ],
            )
            await conversations.add(group)
            await uow.commit()
        logger.info("Created %r (%s)", group.name, group.id)


class ArchiveStudentGroup:
    def __init__(self, uow_factory: UowFactory) -> None:
        self._uow_factory = uow_factory

    async def __call__(self, event: StudentDeletedIntegrationEvent, cancel: asyncio.Event) -> None:
        async with self._uow_factory() as uow:
            group = await uow.repository(Conversation).find_one(
                lambda c: c.conversation_type == ConversationType.STUDENT_GROUP
                and c.student_id == event.student_id
            )
            if group is None:
                logger.info("No group to archive for student %s", event.student_id)
                return
            group.archive()
            await uow.commit()


class CreateAnnouncementChannel:
    def __init__(self, uow_factory: UowFactory) -> None:
        self._uow_factory = uow_factory

    async def __call__(self, event: TenantCreatedIntegrationEvent, cancel: asyncio.Event) -> None:
        async with self._uow_factory() as uow:
            conversations = uow.repository(Conversation)
            existing = await conversations.find_one(
                lambda c: c.conversation_type == ConversationType.ANNOUNCEMENT_CHANNEL
            )
            if existing is not None:
                return
            await conversations.add(
                Conversation.announcement_channel(
                    event.tenant_id, event.tenant_name, event.school_admin_id,
                )
            )
            await uow.commit()


class StoreMessage:
    def __init__(self, uow_factory: UowFactory) -> None:
        self._uow_factory = uow_factory

    async def __call__(self, event: MessageSentIntegrationEvent, cancel: asyncio.Event) -> None:
        async with self._uow_factory() as uow:
            messages = uow.repository(ChatMessage)
            if await messages.get(event.message_id) is not None:
                logger.debug("Message %s already stored", event.message_id)
                return
            await messages.add(
                ChatMessage(
                    id=event.message_id,
                    tenant_id=event.tenant_id,
                    conversation_id=event.conversation_id,
                    sender_id=event.sender_id,
                    sender_name=event.sender_name,
                    content=event.content,
                    sent_at=event.sent_at,
                    reply_to_message_id=event.reply_to_message_id,
                    mentions=tuple(
                        Mention(m.user_id, m.user_name, m.start_index, m.length)
                        for m in event.mentions
                    ),
                )
            )
            conversation = await uow.repository(Conversation).get(event.conversation_id)
            if conversation is not None:
                conversation.apply_last_message(event.message_id, event.sent_at, event.content)
            await uow.commit()


def subscribe(table: SubscriptionTable, uow_factory: UowFactory, *, max_attempts: int = 5) -> None:
    policy = ErrorPolicy(max_attempts=max_attempts)
    table.subscribe(
        StudentCreatedIntegrationEvent,
        CreateStudentGroup(uow_factory),
        policy=policy,
        name="chat.create_student_group",
    )
    table.subscribe(
        StudentDeletedIntegrationEvent,
        ArchiveStudentGroup(uow_factory),
        policy=policy,
        name="chat.archive_student_group",
    )
    table.subscribe(
        TenantCreatedIntegrationEvent,
        CreateAnnouncementChannel(uow_factory),
        policy=policy,
        name="chat.create_announcement_channel",
    )
    table.subscribe(
        MessageSentIntegrationEvent,
        StoreMessage(uow_factory),
        policy=policy,
        name="chat.store_message",
    )
