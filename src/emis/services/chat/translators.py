"""Chat domain events with an external contract."""

from __future__ import annotations

from emis.core.enums import ServiceName
from emis.core.errors import TranslationError
from emis.integration.events import MentionData, MessageSentIntegrationEvent
from emis.integration.translator import Translator

from .events import MessageSent

translator = Translator(ServiceName.CHAT.value)


@translator.register(MessageSent)
def message_sent(event: MessageSent) -> MessageSentIntegrationEvent:
    if event.sent_at is None:
        raise TranslationError(f"MessageSent {event.message_id} has no send time")
    return MessageSentIntegrationEvent(
        occurred_at=event.occurred_at,
        tenant_id=event.tenant_id,
        message_id=event.message_id,
        conversation_id=event.aggregate_id,
        sender_id=event.sender_id,
        sender_name=event.sender_name,
        content=event.content,
        sent_at=event.sent_at,
        reply_to_message_id=event.reply_to_message_id,
        mentions=tuple(
            MentionData(
                user_id=m.user_id,
                user_name=m.user_name,
                start_index=m.start_index,
                length=m.length,
            )
            for m in event.mentions
        ),
        recipient_user_ids=event.recipient_user_ids,
    )
