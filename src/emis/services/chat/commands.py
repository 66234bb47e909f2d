"""Chat commands."""

from __future__ import annotations

import logging

from emis.storage.memory import InMemoryUnitOfWork

from .events import Mention, MessageSent
from .model import ChatMessage, Conversation

logger = logging.getLogger(__name__)


async def send_message(
    uow: InMemoryUnitOfWork,
    conversation_id: str,
    *,
    sender_id: str,
    sender_name: str,
    content: str,
    reply_to_message_id: str | None = None,
    mentions: tuple[Mention, ...] = (),
) -> MessageSent:
    """Post a message; the commit publishes it keyed by conversation id."""
    async with uow:
        conversation = await uow.repository(Conversation).require(conversation_id)
        sent = conversation.post(
            sender_id,
            sender_name,
            content,
            reply_to_message_id=reply_to_message_id,
            mentions=mentions,
        )
        await uow.repository(ChatMessage).add(
            ChatMessage(
                id=sent.message_id,
                tenant_id=conversation.tenant_id,
                conversation_id=conversation.id,
                sender_id=sender_id,
                sender_name=sender_name,
                content=content,
                sent_at=sent.sent_at,
                reply_to_message_id=reply_to_message_id,
                mentions=mentions,
            )
        )
        conversation.apply_last_message(sent.message_id, sent.sent_at, content)
        await uow.commit()
    logger.debug("Message %s sent to %s", sent.message_id, conversation_id)
    return sent
