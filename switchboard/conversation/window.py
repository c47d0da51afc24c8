"""Context-window truncation.

Costs are measured in characters. Every message pays a fixed overhead for its
role tag and formatting; media parts pay a flat amount regardless of size.
"""

import json

from switchboard.conversation.models import (
    Message,
    ModelText,
    ToolCallRequest,
    ToolCallResult,
    UserMedia,
    UserText,
)
from switchboard.exceptions import ConfigurationError
from switchboard.logging import get_logger

log = get_logger(__name__)

MESSAGE_OVERHEAD = 20
MEDIA_PART_COST = 100
TRUNCATION_MARKER = "... [truncated]"


def message_cost(message: Message) -> int:
    """Approximate character cost of one message."""
    if isinstance(message, (UserText, ModelText)):
        return len(message.text) + MESSAGE_OVERHEAD
    if isinstance(message, UserMedia):
        return MEDIA_PART_COST * len(message.parts) + len(message.caption) + MESSAGE_OVERHEAD
    if isinstance(message, ToolCallRequest):
        arguments = json.dumps(message.arguments, ensure_ascii=False, sort_keys=True)
        return len(message.tool_name) + len(arguments) + MESSAGE_OVERHEAD
    if isinstance(message, ToolCallResult):
        return len(message.content) + MESSAGE_OVERHEAD
    raise TypeError(f"Unsupported message type: {type(message)!r}")


def total_cost(messages: list[Message]) -> int:
    return sum(message_cost(message) for message in messages)


def _is_tool_message(message: Message) -> bool:
    return isinstance(message, (ToolCallRequest, ToolCallResult))


def _split_tool_block(block: list[Message]) -> list[list[Message]]:
    """Split a contiguous run of tool messages into self-contained segments.

    A segment spans from a request to its last result; overlapping spans are
    merged. Results whose request is not in the block and requests that never
    got a result are dropped, so every segment is free of dangling references.
    """
    request_pos: dict[str, int] = {}
    spans: list[tuple[int, int]] = []
    keep: set[int] = set()
    for pos, message in enumerate(block):
        if isinstance(message, ToolCallRequest):
            request_pos[message.call_id] = pos
        elif message.call_id in request_pos:
            start = request_pos[message.call_id]
            spans.append((start, pos))
            keep.update((start, pos))
        else:
            log.debug("Dropping orphaned tool result from window", call_id=message.call_id)

    segments: list[list[Message]] = []
    merged_start: int | None = None
    merged_end = -1
    for start, end in sorted(spans):
        if merged_start is not None and start <= merged_end:
            merged_end = max(merged_end, end)
            continue
        if merged_start is not None:
            segments.append(_collect(block, merged_start, merged_end, keep))
        merged_start, merged_end = start, end
    if merged_start is not None:
        segments.append(_collect(block, merged_start, merged_end, keep))
    return segments


def _collect(block: list[Message], start: int, end: int, keep: set[int]) -> list[Message]:
    return [block[pos] for pos in range(start, end + 1) if pos in keep]


def split_units(messages: list[Message]) -> list[list[Message]]:
    """Group messages into indivisible truncation units, oldest first."""
    units: list[list[Message]] = []
    block: list[Message] = []
    for message in messages:
        if _is_tool_message(message):
            block.append(message)
            continue
        if block:
            units.extend(_split_tool_block(block))
            block = []
        units.append([message])
    if block:
        units.extend(_split_tool_block(block))
    return units


def _fit_text(message: Message, budget: int) -> Message | None:
    room = budget - MESSAGE_OVERHEAD
    if room <= 0:
        return None
    if isinstance(message, (UserText, ModelText)):
        return message.model_copy(update={"text": message.text[:room]})
    if isinstance(message, UserMedia):
        caption_room = room - MEDIA_PART_COST * len(message.parts)
        if caption_room < 0:
            return None
        return message.model_copy(update={"caption": message.caption[:caption_room]})
    return None


def _cut_content(content: str, limit: int) -> str:
    if len(content) <= limit:
        return content
    if limit <= len(TRUNCATION_MARKER):
        return content[:limit]
    return content[: limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def _fit_tool_unit(unit: list[Message], budget: int) -> list[Message] | None:
    """Cut the result contents of a tool unit so the whole unit fits.

    Requests are never altered; each result gets an equal share of the room
    left after the requests and the per-message overhead.
    """
    results = [message for message in unit if isinstance(message, ToolCallResult)]
    fixed = total_cost([message for message in unit if isinstance(message, ToolCallRequest)])
    room = budget - fixed - MESSAGE_OVERHEAD * len(results)
    if not results or room < 0:
        return None
    share = room // len(results)
    return [
        message.model_copy(update={"content": _cut_content(message.content, share)})
        if isinstance(message, ToolCallResult)
        else message
        for message in unit
    ]


def _prompt_reserve(older: list[list[Message]], budget: int) -> int:
    """Room to leave for the user prompt that led to the newest tool unit."""
    for unit in reversed(older):
        if len(unit) == 1 and isinstance(unit[0], (UserText, UserMedia)):
            cost = total_cost(unit)
            return cost if cost <= budget // 2 else 0
    return 0


def _fit_unit(units: list[list[Message]], position: int, budget: int) -> list[Message] | None:
    unit = units[position]
    if len(unit) == 1 and not _is_tool_message(unit[0]):
        fitted = _fit_text(unit[0], budget)
        return [fitted] if fitted is not None else None
    reserve = _prompt_reserve(units[:position], budget)
    fitted_unit = _fit_tool_unit(unit, budget - reserve)
    if fitted_unit is None and reserve:
        fitted_unit = _fit_tool_unit(unit, budget)
    return fitted_unit


def truncate_for_budget(messages: list[Message], budget: int) -> list[Message]:
    """Return the newest messages whose total cost fits within `budget`.

    Whole units are dropped from the oldest end; a tool request and its
    results are kept or dropped together. Only the newest kept unit is cut:
    an oversized text message keeps its head, and an oversized tool unit has
    its result contents shortened (leaving room for the prompt before it when
    that prompt is small enough). A tool unit whose requests alone exceed the
    budget is skipped so the older messages behind it can still be sent.
    """
    if budget <= 0:
        raise ConfigurationError(f"Context window budget must be positive, got {budget}")

    units = split_units(list(messages))
    if not units:
        return []

    kept: list[list[Message]] = []
    used = 0
    for position in range(len(units) - 1, -1, -1):
        unit = units[position]
        cost = total_cost(unit)
        if used + cost <= budget:
            kept.append(unit)
            used += cost
            continue
        if kept:
            break
        fitted = _fit_unit(units, position, budget)
        if fitted is None:
            if _is_tool_message(unit[0]):
                log.warning(
                    "Tool exchange exceeds context budget; leaving it out of the window",
                    budget=budget,
                    cost=cost,
                )
                continue
            log.warning(
                "Newest message exceeds context budget and cannot be cut; window is empty",
                budget=budget,
                cost=cost,
            )
            return []
        log.warning("Newest message exceeds context budget; truncating its content", budget=budget, cost=cost)
        kept.append(fitted)
        used += total_cost(fitted)

    dropped = len(units) - len(kept)
    if dropped:
        log.debug("Truncated conversation window", dropped_units=dropped, kept_cost=used, budget=budget)

    window: list[Message] = []
    for unit in reversed(kept):
        window.extend(unit)
    return window
