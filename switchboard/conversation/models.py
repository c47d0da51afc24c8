"""Conversation data model: tagged message variants and conversation records."""

import re
import uuid
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

PREVIEW_MAX_CHARS = 50
SLUG_MAX_WORDS = 5
SLUG_MAX_CHARS = 40
DEFAULT_SLUG = "conversation"

STOPWORDS = frozenset({
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being", "have", "has",
    "had", "do", "does", "did", "will", "would", "should", "could", "can", "may", "might",
    "must", "shall", "how", "what", "when", "where", "who", "why", "which", "this", "that",
    "these", "those", "i", "you", "he", "she", "it", "we", "they", "me", "him", "her",
    "us", "them", "my", "your", "his", "its", "our", "their",
})

_SLUG_WORD_RE = re.compile(r"[^a-z0-9-]")
_EDGE_PUNCT_RE = re.compile(r"^[^\w]+|[^\w]+$")


def utcnow() -> datetime:
    """Return current UTC time."""
    return datetime.now(UTC)


class MessageKind(str, Enum):
    """Role tag stored with each persisted message."""

    USER_TEXT = "user_text"
    USER_MEDIA = "user_media"
    MODEL_TEXT = "model_text"
    TOOL_CALL_REQUEST = "tool_call_request"
    TOOL_CALL_RESULT = "tool_call_result"


class _MessageBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)


class UserText(_MessageBase):
    """Plain text typed (or piped) by the user."""

    kind: Literal["user_text"] = "user_text"
    text: str


class MediaPart(BaseModel):
    """Inline binary attachment, base64 encoded."""

    model_config = ConfigDict(frozen=True)

    mime_type: str
    data: str
    filename: str = ""


class UserMedia(_MessageBase):
    """User message carrying one or more media parts plus an optional caption."""

    kind: Literal["user_media"] = "user_media"
    parts: list[MediaPart] = Field(default_factory=list)
    caption: str = ""


class ModelText(_MessageBase):
    """Text answer produced by the model."""

    kind: Literal["model_text"] = "model_text"
    text: str


class ToolCallRequest(_MessageBase):
    """A tool invocation requested by the model."""

    kind: Literal["tool_call_request"] = "tool_call_request"
    call_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolCallResult(_MessageBase):
    """Outcome of a tool invocation, referencing its request by `call_id`."""

    kind: Literal["tool_call_result"] = "tool_call_result"
    call_id: str
    tool_name: str = ""
    content: str = ""
    is_error: bool = False


Message = Annotated[
    Union[UserText, UserMedia, ModelText, ToolCallRequest, ToolCallResult],
    Field(discriminator="kind"),
]


def message_text(message: Message) -> str:
    """Best-effort plain-text view of a message."""
    if isinstance(message, (UserText, ModelText)):
        return message.text
    if isinstance(message, UserMedia):
        return message.caption
    if isinstance(message, ToolCallResult):
        return message.content
    return ""


def generate_slug(prompt: str) -> str:
    """Build a kebab-case slug from the first significant words of a prompt."""
    words: list[str] = []
    for raw_word in str(prompt or "").lower().split():
        cleaned = _EDGE_PUNCT_RE.sub("", raw_word)
        if not cleaned or cleaned in STOPWORDS:
            continue
        word = _SLUG_WORD_RE.sub("", raw_word)
        if word:
            words.append(word)
        if len(words) >= SLUG_MAX_WORDS:
            break

    if not words:
        return DEFAULT_SLUG
    slug = "-".join(words)[:SLUG_MAX_CHARS].strip("-")
    return slug or DEFAULT_SLUG


def generate_conversation_id(first_prompt: str) -> str:
    """Return `<slug>-<hash4>` for a new conversation."""
    hash4 = uuid.uuid4().hex[:4]
    return f"{generate_slug(first_prompt)}-{hash4}"


def id_hash(conversation_id: str) -> str:
    """Short hash suffix of a conversation id (`fix-login-bug-a1b2` -> `a1b2`)."""
    return conversation_id.rsplit("-", 1)[-1]


def format_age(delta: timedelta) -> str:
    """Compact age label: `3d`, `5h`, or minutes (at least `1m`)."""
    seconds = max(0, int(delta.total_seconds()))
    days, remainder = divmod(seconds, 86400)
    if days > 0:
        return f"{days}d"
    hours = remainder // 3600
    if hours > 0:
        return f"{hours}h"
    return f"{max(1, remainder // 60)}m"


def _preview(text: str) -> str:
    cleaned = re.sub(r"[\r\n\t]", " ", text).strip()
    if len(cleaned) > PREVIEW_MAX_CHARS:
        return cleaned[: PREVIEW_MAX_CHARS - 1] + "…"
    return cleaned


class Conversation(BaseModel):
    """A persisted chat: identifier, title and ordered messages."""

    id: str
    title: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    model: str = ""
    credential_index: int | None = None
    messages: list[Message] = Field(default_factory=list)
    usage: list[dict[str, int]] = Field(default_factory=list)

    @classmethod
    def new(cls, first_prompt: str, model: str = "") -> "Conversation":
        """Create a conversation whose id and title derive from the first prompt."""
        title = _preview(first_prompt) or DEFAULT_SLUG
        return cls(id=generate_conversation_id(first_prompt), title=title, model=model)

    @property
    def hash(self) -> str:
        return id_hash(self.id)

    def first_user_text(self) -> str | None:
        for message in self.messages:
            if isinstance(message, UserText):
                return message.text
            if isinstance(message, UserMedia) and message.caption:
                return message.caption
        return None


class ConversationSummary(BaseModel):
    """Listing row for a stored conversation."""

    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int
    preview: str
    age: str

    @classmethod
    def from_conversation(cls, conversation: Conversation, now: datetime | None = None) -> "ConversationSummary":
        first = conversation.first_user_text()
        current = now or utcnow()
        return cls(
            id=conversation.id,
            title=conversation.title,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            message_count=len(conversation.messages),
            preview=_preview(first) if first is not None else "(no messages)",
            age=format_age(current - conversation.updated_at),
        )
