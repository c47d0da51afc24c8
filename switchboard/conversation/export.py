"""Markdown rendering of stored conversations (a read-only projection)."""

from __future__ import annotations

import json
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from switchboard.conversation.models import Conversation

_TIME_FORMAT = "%Y-%m-%d %H:%M:%S UTC"
_TOOL_OUTPUT_MAX_CHARS = 4000


def _fmt_time(value: datetime) -> str:
    return value.strftime(_TIME_FORMAT)


def truncate_history_text(text: str, max_chars: int = _TOOL_OUTPUT_MAX_CHARS) -> str:
    cleaned = str(text or "")
    if len(cleaned) <= max_chars:
        return cleaned
    return cleaned[:max_chars].rstrip() + "... [truncated]"


def render_markdown(conversation: Conversation) -> str:
    lines = [
        f"### Conversation {conversation.id}",
        "",
        f"**Title:** {conversation.title or '-'}",
        f"**Created:** {_fmt_time(conversation.created_at)}",
        f"**Updated:** {_fmt_time(conversation.updated_at)}",
        f"**Messages:** {len(conversation.messages)}",
        f"**Model:** {conversation.model or '-'}",
        "",
        "---",
        "",
    ]
    if not conversation.messages:
        lines.append("(no messages)")
        lines.append("")
        return "\n".join(lines)

    for idx, message in enumerate(conversation.messages):
        if idx > 0:
            lines.extend(["", "---", ""])
        stamp = _fmt_time(message.timestamp)
        kind = message.kind
        if kind == "user_text":
            lines.append(f"**User** · {stamp}")
            lines.append("")
            lines.append(message.text or "(empty)")
        elif kind == "user_media":
            lines.append(f"**User** · {stamp}")
            lines.append("")
            for part in message.parts:
                label = part.filename or "inline"
                lines.append(f"- attachment: {label} ({part.mime_type})")
            if message.caption:
                lines.append("")
                lines.append(message.caption)
        elif kind == "model_text":
            lines.append(f"**Model** · {stamp}")
            lines.append("")
            lines.append(message.text or "(empty)")
        elif kind == "tool_call_request":
            lines.append(f"**Tool call** `{message.tool_name}` ({message.call_id}) · {stamp}")
            lines.append("")
            lines.append("```json")
            lines.append(json.dumps(message.arguments, ensure_ascii=False, indent=2))
            lines.append("```")
        elif kind == "tool_call_result":
            status = "error" if message.is_error else "ok"
            name = f" `{message.tool_name}`" if message.tool_name else ""
            lines.append(f"**Tool result**{name} ({message.call_id}, {status}) · {stamp}")
            lines.append("")
            lines.append("```")
            lines.append(truncate_history_text(message.content) or "(empty)")
            lines.append("```")
    lines.append("")
    return "\n".join(lines)
