"""
Event classification: maps a raw session-log record to a semantic subtype.

classify() is the single source of truth for subtypes; decode() additionally
unpacks the message content once into a typed body so rendering never has
to look at raw JSON again. Both are pure and total.
"""
import math
import re
import time
from datetime import datetime
from typing import Any, Optional

from commentary_bus.models import (
    Body,
    ClassifiedEvent,
    InterruptBody,
    NoticeBody,
    Origin,
    Subtype,
    TextBody,
    ToolResultBody,
    ToolUseBody,
)

INTERRUPT_PATTERN = re.compile(r"request interrupted by user", re.IGNORECASE)

_PASSTHROUGH = {
    "session_start": Subtype.SESSION_START,
    "session_end": Subtype.SESSION_END,
    "error": Subtype.ERROR,
}

_ORIGINS: dict[Subtype, Origin] = {
    Subtype.ASSISTANT_TEXT: Origin.ASSISTANT,
    Subtype.ASSISTANT_TOOL_USE: Origin.ASSISTANT,
    Subtype.USER_TEXT: Origin.HUMAN,
    Subtype.USER_TOOL_RESULT: Origin.TOOL,
    Subtype.USER_INTERRUPT: Origin.SYSTEM,
    Subtype.SESSION_START: Origin.SYSTEM,
    Subtype.SESSION_END: Origin.SYSTEM,
    Subtype.ERROR: Origin.SYSTEM,
    Subtype.UNKNOWN: Origin.SYSTEM,
}


def origin_for(subtype: Subtype) -> Origin:
    return _ORIGINS[subtype]


def record_type(record: Any) -> Optional[str]:
    """Literal `type` (or legacy `event`) value, if it is a non-empty string."""
    if not isinstance(record, dict):
        return None
    for key in ("type", "event"):
        value = record.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _content(record: dict) -> Any:
    message = record.get("message")
    if isinstance(message, dict):
        return message.get("content")
    return None


def content_shape(record: Any) -> str:
    if not isinstance(record, dict):
        return "none"
    content = _content(record)
    if isinstance(content, str):
        return "string"
    if isinstance(content, list):
        return "array"
    if content is None:
        return "none"
    return "object"


def _blocks(content: Any) -> list[dict]:
    if not isinstance(content, list):
        return []
    return [b for b in content if isinstance(b, dict)]


def _text_blocks(content: Any) -> list[str]:
    return [
        b["text"] for b in _blocks(content)
        if b.get("type") == "text" and isinstance(b.get("text"), str)
    ]


def _first_tool_use(record: dict) -> Optional[dict]:
    for block in _blocks(_content(record)):
        if block.get("type") == "tool_use":
            return block
    return None


def classify(record: Any) -> Subtype:
    kind = record_type(record)
    if kind is None:
        return Subtype.UNKNOWN

    if kind == "assistant":
        if _first_tool_use(record) is not None or record.get("tool_name"):
            return Subtype.ASSISTANT_TOOL_USE
        return Subtype.ASSISTANT_TEXT

    if kind == "user":
        content = _content(record)
        if isinstance(content, str):
            return Subtype.USER_TEXT
        for block in _blocks(content):
            if block.get("type") == "tool_result":
                return Subtype.USER_TOOL_RESULT
        for text in _text_blocks(content):
            if INTERRUPT_PATTERN.search(text):
                return Subtype.USER_INTERRUPT
        return Subtype.USER_TEXT

    return _PASSTHROUGH.get(kind, Subtype.UNKNOWN)


def parse_timestamp(record: Any, default: float) -> float:
    """
    Ordering key in epoch milliseconds. Finite numeric `ts`/`timestamp`
    values are taken as-is; ISO-8601 strings are parsed; anything else
    (including NaN, infinities and ints too large for a float) falls back
    to the ingestion time.
    """
    if not isinstance(record, dict):
        return default
    for key in ("timestamp", "ts"):
        value = record.get(key)
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, (int, float)):
            try:
                number = float(value)
            except OverflowError:
                continue
            if math.isfinite(number):
                return number
        if isinstance(value, str) and value:
            try:
                parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                continue
            try:
                return parsed.timestamp() * 1000
            except (OverflowError, OSError, ValueError):
                continue
    return default


def _decode_body(subtype: Subtype, record: Any) -> Body:
    if not isinstance(record, dict):
        return NoticeBody()
    content = _content(record)

    if subtype is Subtype.ASSISTANT_TOOL_USE:
        block = _first_tool_use(record)
        if block is not None:
            tool_input = block.get("input")
            return ToolUseBody(
                tool_name=str(block.get("name") or record.get("tool_name") or "tool"),
                tool_input=tool_input if isinstance(tool_input, dict) else {},
                text_blocks=tuple(_text_blocks(content)),
            )
        tool = record.get("tool") if isinstance(record.get("tool"), dict) else {}
        params = tool.get("parameters") or record.get("tool_input") or {}
        return ToolUseBody(
            tool_name=str(record.get("tool_name") or tool.get("name") or "tool"),
            tool_input=params if isinstance(params, dict) else {},
        )

    if subtype in (Subtype.ASSISTANT_TEXT, Subtype.USER_TEXT):
        if isinstance(content, str):
            return TextBody(blocks=(content,))
        return TextBody(blocks=tuple(_text_blocks(content)))

    if subtype is Subtype.USER_TOOL_RESULT:
        for block in _blocks(content):
            if block.get("type") == "tool_result":
                return ToolResultBody(
                    content=block.get("content"),
                    is_error=bool(block.get("is_error", False)),
                    metadata=record.get("toolUseResult"),
                )
        return ToolResultBody()

    if subtype is Subtype.USER_INTERRUPT:
        for text in _text_blocks(content):
            if INTERRUPT_PATTERN.search(text):
                return InterruptBody(text=text)
        return InterruptBody()

    for key in ("text", "message", "error"):
        value = record.get(key)
        if isinstance(value, str) and value:
            return NoticeBody(text=value)
        if isinstance(value, dict) and isinstance(value.get("message"), str):
            return NoticeBody(text=value["message"])
    return NoticeBody()


def decode(
    record: Any,
    source_file: str = "",
    ingested_at: Optional[float] = None,
) -> ClassifiedEvent:
    if ingested_at is None:
        ingested_at = time.time() * 1000
    subtype = classify(record)
    return ClassifiedEvent(
        subtype=subtype,
        origin=origin_for(subtype),
        timestamp=parse_timestamp(record, ingested_at),
        source_file=source_file,
        record_type=record_type(record),
        shape=content_shape(record),
        body=_decode_body(subtype, record),
        raw=record if isinstance(record, dict) else {},
    )
