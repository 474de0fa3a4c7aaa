import json
import os
from typing import Any, Callable, Optional

from commentary_bus.models import (
    ClassifiedEvent,
    InterruptBody,
    NoticeBody,
    Origin,
    RenderedMessage,
    Subtype,
    TextBody,
    ToolResultBody,
    ToolUseBody,
)

DEFAULT_INDICATOR = "…"
TOOL_RESULT_SPEAKER = "Tool Result"
SYSTEM_SPEAKER = "System"
DEFAULT_ASSISTANT_NAME = "Claude"

# Scanned in order for tools without a dedicated formatter
FALLBACK_FIELDS = [
    "plan", "prompt", "description", "query", "command",
    "url", "pattern", "file_path", "content",
]

REJECTION_MARKERS = ("doesn't want to proceed", "tool use was rejected")


def truncate(text: str, limit: int, indicator: str = DEFAULT_INDICATOR) -> str:
    """Cut `text` to `limit` characters plus `indicator`; limit <= 0 means unlimited."""
    if not text:
        return ""
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + indicator


def _short(value: Any, limit: int) -> str:
    return truncate(value if isinstance(value, str) else "", limit, "...")


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ""


# ── Tool formatters ───────────────────────────────────────────────────────────

def _format_bash(params: dict) -> str:
    command = _as_text(params.get("command"))
    description = _as_text(params.get("description"))
    if command and description:
        return f"{command} → {description}"
    return command or description or "bash command"


def _format_write(params: dict) -> str:
    path = params.get("file_path") or params.get("path") or "file"
    content = params.get("content") or ""
    if not isinstance(content, str):
        content = ""
    return f"Writing {path} ({len(content.encode('utf-8'))}B): {_short(content, 2000)}"


def _format_read(params: dict) -> str:
    path = params.get("file_path") or "file"
    limit = params.get("limit")
    suffix = f" ({limit} lines)" if limit else ""
    return f"Reading {path}{suffix}"


def _format_edit(params: dict) -> str:
    path = params.get("file_path") or "file"
    old = _short(params.get("old_string"), 500)
    new = _short(params.get("new_string"), 500)
    return f'Editing {path}: "{old}" → "{new}"'


def _format_multi_edit(params: dict) -> str:
    path = params.get("file_path") or "file"
    edits = [e for e in _as_list(params.get("edits")) if isinstance(e, dict)]
    details = "; ".join(
        f'"{_short(e.get("old_string"), 100)}" → "{_short(e.get("new_string"), 100)}"'
        for e in edits[:2]
    )
    return f"MultiEdit {path}: {len(edits)} changes - {details}"


def _format_glob(params: dict) -> str:
    return f'Searching files: "{params.get("pattern") or ""}" in {params.get("path") or "."}'


def _format_grep(params: dict) -> str:
    options = []
    if params.get("-i"):
        options.append("case insensitive")
    if params.get("glob"):
        options.append(f"glob: {params['glob']}")
    suffix = f" ({', '.join(options)})" if options else ""
    return f'Searching "{params.get("pattern") or ""}" in {params.get("path") or "."}{suffix}'


def _format_todo_write(params: dict) -> str:
    todos = [t for t in _as_list(params.get("todos")) if isinstance(t, dict)]
    details = "; ".join(
        f'{t.get("status", "pending")}: "{_short(t.get("content"), 100)}"' for t in todos[:2]
    )
    more = f" (and {len(todos) - 2} more)" if len(todos) > 2 else ""
    return f"{len(todos)} todos updated → {details}{more}"


def _format_ls(params: dict) -> str:
    ignore = params.get("ignore")
    suffix = f" (ignoring: {', '.join(map(str, ignore))})" if isinstance(ignore, list) and ignore else ""
    return f"Listing {params.get('path') or '.'}{suffix}"


def _format_task(params: dict) -> str:
    agent = params.get("subagent_type") or "agent"
    return f"Delegating to {agent}: {params.get('description') or _short(params.get('prompt'), 300)}"


def _format_web_fetch(params: dict) -> str:
    return f"Fetching {params.get('url') or ''}: {_short(params.get('prompt'), 300)}"


def _format_web_search(params: dict) -> str:
    return f'Web search: "{params.get("query") or ""}"'


TOOL_FORMATTERS: dict[str, Callable[[dict], str]] = {
    "Bash": _format_bash,
    "Write": _format_write,
    "Read": _format_read,
    "Edit": _format_edit,
    "MultiEdit": _format_multi_edit,
    "Glob": _format_glob,
    "Grep": _format_grep,
    "TodoWrite": _format_todo_write,
    "LS": _format_ls,
    "Task": _format_task,
    "WebFetch": _format_web_fetch,
    "WebSearch": _format_web_search,
}


def format_fallback(tool_name: str, params: dict) -> str:
    for name in FALLBACK_FIELDS:
        value = params.get(name)
        if isinstance(value, str) and value.strip():
            return f"{tool_name}: {value.strip()}"
    return f"{tool_name}: {json.dumps(params, ensure_ascii=False, default=str)}" if params else tool_name


def format_tool_use(body: ToolUseBody) -> str:
    formatter = TOOL_FORMATTERS.get(body.tool_name)
    if formatter is None:
        return format_fallback(body.tool_name, body.tool_input)
    return formatter(body.tool_input)


# ── Tool results ──────────────────────────────────────────────────────────────

def _result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks = []
        for block in content:
            if isinstance(block, str):
                chunks.append(block)
            elif isinstance(block, dict) and isinstance(block.get("text"), str):
                chunks.append(block["text"])
        return "\n".join(chunks)
    if content is None:
        return ""
    return json.dumps(content, ensure_ascii=False, default=str)


def _todo_delta(meta: dict) -> str:
    old = {
        str(t.get("content")): t.get("status")
        for t in _as_list(meta.get("oldTodos")) if isinstance(t, dict)
    }
    new = [t for t in _as_list(meta.get("newTodos")) if isinstance(t, dict)]
    done = sum(1 for t in new if t.get("status") == "completed")
    changed = [
        f'{t.get("status")}: "{_short(t.get("content"), 80)}"'
        for t in new if old.get(str(t.get("content"))) != t.get("status")
    ]
    summary = f"Todos: {done}/{len(new)} completed"
    if changed:
        summary += " → " + "; ".join(changed[:3])
    return summary


def format_tool_result(body: ToolResultBody) -> str:
    text = _result_text(body.content)
    lowered = text.lower()
    if any(marker in lowered for marker in REJECTION_MARKERS):
        return "❌ Rejected by user"
    if body.is_error:
        return f"⚠️ Error: {_short(text.strip(), 200)}"

    meta = body.metadata
    if isinstance(meta, dict):
        path = meta.get("filePath")
        if meta.get("type") == "create" and path:
            return f"✅ Created {path}"
        if path and ("oldString" in meta or meta.get("type") == "update"):
            return f"✏️ Edited {path}"
        file_info = meta.get("file")
        if isinstance(file_info, dict) and file_info.get("filePath"):
            lines = file_info.get("numLines")
            suffix = f" ({lines} lines)" if lines is not None else ""
            return f"📖 Read {file_info['filePath']}{suffix}"
        if "newTodos" in meta:
            return _todo_delta(meta)
        if meta.get("plan") is not None or "approved" in lowered:
            return "✅ Plan approved"
    return _short(text.strip(), 200) or "(no output)"


# ── Renderer ──────────────────────────────────────────────────────────────────

def type_tag(event: ClassifiedEvent) -> str:
    parts = [event.record_type or "none", event.subtype.value, event.origin.value, event.shape]
    if isinstance(event.body, ToolUseBody):
        parts.append(event.body.tool_name)
    return "[" + "/".join(parts) + "] "


class Renderer:
    def __init__(
        self,
        limits: Optional[dict[str, int]] = None,
        indicator: str = DEFAULT_INDICATOR,
        assistant_name: str = "",
    ) -> None:
        self.limits = dict(limits or {})
        self.indicator = indicator
        self.assistant_name = assistant_name or DEFAULT_ASSISTANT_NAME

    def body_text(self, event: ClassifiedEvent) -> str:
        body = event.body
        if isinstance(body, ToolUseBody):
            text = format_tool_use(body)
        elif isinstance(body, TextBody):
            text = "\n".join(b for b in body.blocks if b)
        elif isinstance(body, ToolResultBody):
            text = format_tool_result(body)
        elif isinstance(body, InterruptBody):
            text = "⏹️ Interrupted by user"
        elif event.subtype is Subtype.SESSION_START:
            text = "🚀 New session started"
        elif event.subtype is Subtype.SESSION_END:
            text = "🏁 Session ended"
        elif event.subtype is Subtype.ERROR:
            text = f"❌ Error: {body.text}" if isinstance(body, NoticeBody) and body.text else "❌ Error"
        else:
            text = body.text if isinstance(body, NoticeBody) and body.text else f"Activity in {_session_name(event)}"
        return truncate(text, self.limits.get(event.subtype.value, 0), self.indicator)

    def speaker_for(self, event: ClassifiedEvent) -> Optional[str]:
        if event.subtype is Subtype.USER_TEXT:
            return None
        if event.origin is Origin.ASSISTANT:
            return self.assistant_name
        if event.origin is Origin.TOOL:
            return TOOL_RESULT_SPEAKER
        return SYSTEM_SPEAKER

    def render(self, event: ClassifiedEvent, channel: str = "default") -> RenderedMessage:
        return RenderedMessage(
            channel=channel,
            speaker_name=self.speaker_for(event),
            text=type_tag(event) + self.body_text(event),
            subtype=event.subtype.value,
            timestamp=event.timestamp,
            is_user_message=event.origin is Origin.HUMAN,
            session_file=os.path.basename(event.source_file) if event.source_file else None,
        )


def _session_name(event: ClassifiedEvent) -> str:
    cwd = event.raw.get("cwd")
    if isinstance(cwd, str) and cwd:
        return os.path.basename(cwd.rstrip("/")) or cwd
    return "unknown"
