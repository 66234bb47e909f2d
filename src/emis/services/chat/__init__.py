"""Chat service: conversations, student groups, announcement channels."""

from .commands import send_message
from .handlers import subscribe
from .model import ChatMessage, Conversation, Participant
from .translators import translator

__all__ = [
    "ChatMessage",
    "Conversation",
    "Participant",
    "send_message",
    "subscribe",
    "translator",
]
