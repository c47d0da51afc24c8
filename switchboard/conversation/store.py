"""Conversation persistence: one JSON document per conversation."""

import asyncio
import contextlib
import os
import re
import tempfile
from pathlib import Path
from typing import Callable, TypeVar

from pydantic import ValidationError

from switchboard.config import get_config
from switchboard.conversation.export import render_markdown
from switchboard.conversation.models import (
    Conversation,
    ConversationSummary,
    Message,
    ToolCallRequest,
    ToolCallResult,
    id_hash,
    utcnow,
)
from switchboard.exceptions import AmbiguousIdentifierError, ConversationNotFoundError, StoreError
from switchboard.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

_SAFE_ID_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")


def validate_tool_references(messages: list[Message]) -> None:
    """Ensure each tool result references a request emitted earlier in the sequence."""
    seen: set[str] = set()
    for position, message in enumerate(messages):
        if isinstance(message, ToolCallRequest):
            seen.add(message.call_id)
        elif isinstance(message, ToolCallResult) and message.call_id not in seen:
            raise StoreError(
                f"Tool result at position {position} references unknown call id '{message.call_id}'"
            )


def _write_atomic(path: Path, text: str) -> None:
    """Write via a temp file in the same directory, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


class ConversationStore:
    """File-backed conversation store.

    The store does no cross-process locking; concurrent writers to the same id
    resolve last-writer-wins, and the rename keeps every file whole.
    """

    def __init__(self, root: Path | str | None = None, save_markdown: bool | None = None):
        cfg = get_config().conversations
        self.root = Path(root if root is not None else cfg.path).expanduser()
        self.save_markdown = cfg.save_markdown if save_markdown is None else save_markdown

    def path_for(self, conversation_id: str) -> Path:
        return self.root / f"{conversation_id}.json"

    def markdown_path_for(self, conversation_id: str) -> Path:
        return self.root / f"{conversation_id}.md"

    async def _with_retry(self, action: str, func: Callable[[], T]) -> T:
        """Run blocking I/O off the loop; retry once on OSError, then raise StoreError."""
        try:
            return await asyncio.to_thread(func)
        except OSError as first_error:
            log.warning("Conversation store I/O failed; retrying once", action=action, error=str(first_error))
        try:
            return await asyncio.to_thread(func)
        except OSError as e:
            log.error("Conversation store I/O failed", action=action, error=str(e))
            raise StoreError(f"Failed to {action}: {e}") from e

    async def save(self, conversation: Conversation) -> None:
        """Persist the whole conversation atomically (plus its markdown rendering)."""
        validate_tool_references(conversation.messages)
        payload = conversation.model_dump_json(indent=2)
        path = self.path_for(conversation.id)
        await self._with_retry(
            f"save conversation {conversation.id}",
            lambda: _write_atomic(path, payload),
        )
        log.debug("Saved conversation", conversation_id=conversation.id, messages=len(conversation.messages))

        if self.save_markdown:
            markdown = render_markdown(conversation)
            md_path = self.markdown_path_for(conversation.id)
            try:
                await asyncio.to_thread(_write_atomic, md_path, markdown)
            except OSError as e:
                # The JSON document is authoritative.
                log.warning("Failed to write conversation markdown", conversation_id=conversation.id, error=str(e))

    async def append(self, conversation: Conversation, messages: list[Message]) -> Conversation:
        """Append messages and rewrite the conversation file.

        The in-memory conversation is only updated once the write succeeded.
        """
        combined = [*conversation.messages, *messages]
        validate_tool_references(combined)
        updated = conversation.model_copy(update={"messages": combined, "updated_at": utcnow()})
        await self.save(updated)
        conversation.messages = combined
        conversation.updated_at = updated.updated_at
        return conversation

    def _read_file(self, path: Path) -> Conversation:
        text = path.read_text(encoding="utf-8")
        try:
            return Conversation.model_validate_json(text)
        except ValidationError as e:
            raise StoreError(f"Corrupt conversation file {path.name}: {e.error_count()} validation error(s)") from e

    def _read_all(self) -> list[Conversation]:
        if not self.root.exists():
            return []
        conversations: list[Conversation] = []
        for path in self.root.glob("*.json"):
            try:
                conversations.append(self._read_file(path))
            except (OSError, StoreError) as e:
                log.warning("Skipping unreadable conversation file", path=str(path), error=str(e))
        conversations.sort(key=lambda item: item.updated_at, reverse=True)
        return conversations

    async def _all(self) -> list[Conversation]:
        return await self._with_retry("list conversations", self._read_all)

    async def list(self, limit: int | None = None) -> list[ConversationSummary]:
        """Summaries ordered newest-first."""
        conversations = await self._all()
        if limit is not None:
            conversations = conversations[: max(0, limit)]
        now = utcnow()
        return [ConversationSummary.from_conversation(item, now=now) for item in conversations]

    async def latest(self) -> Conversation | None:
        conversations = await self._all()
        return conversations[0] if conversations else None

    async def load(self, ref: str | None) -> Conversation | None:
        """Resolve a reference to a conversation.

        Accepted forms, in priority order: empty (most recent), a numeric index
        into the newest-first listing, an exact id, then a unique id prefix or
        hash prefix. Several prefix matches raise AmbiguousIdentifierError.
        """
        cleaned = str(ref or "").strip()
        if not cleaned:
            return await self.latest()

        if cleaned.isascii() and cleaned.isdigit():
            conversations = await self._all()
            index = int(cleaned)
            if index < len(conversations):
                return conversations[index]
            return None

        if _SAFE_ID_RE.match(cleaned):
            path = self.path_for(cleaned)
            if path.exists():
                return await self._with_retry(f"load conversation {cleaned}", lambda: self._read_file(path))

        lowered = cleaned.lower()
        matches = [
            item
            for item in await self._all()
            if item.id.startswith(lowered) or id_hash(item.id).startswith(lowered)
        ]
        if len(matches) > 1:
            raise AmbiguousIdentifierError(cleaned, [item.id for item in matches])
        return matches[0] if matches else None

    async def resolve(self, ref: str | None) -> Conversation:
        """Like `load`, but a missing conversation is an error."""
        conversation = await self.load(ref)
        if conversation is None:
            raise ConversationNotFoundError(str(ref or "latest"))
        return conversation
