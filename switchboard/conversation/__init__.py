"""Conversation history: message model, context window and file store."""

from switchboard.conversation.models import (
    Conversation,
    ConversationSummary,
    MediaPart,
    Message,
    MessageKind,
    ModelText,
    ToolCallRequest,
    ToolCallResult,
    UserMedia,
    UserText,
)
from switchboard.conversation.store import ConversationStore
from switchboard.conversation.window import message_cost, truncate_for_budget

__all__ = [
    "Conversation",
    "ConversationStore",
    "ConversationSummary",
    "MediaPart",
    "Message",
    "MessageKind",
    "ModelText",
    "ToolCallRequest",
    "ToolCallResult",
    "UserMedia",
    "UserText",
    "message_cost",
    "truncate_for_budget",
]
