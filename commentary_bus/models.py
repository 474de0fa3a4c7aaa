from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union


class Subtype(str, Enum):
    ASSISTANT_TEXT = "assistant_text"
    ASSISTANT_TOOL_USE = "assistant_tool_use"
    USER_TEXT = "user_text"
    USER_TOOL_RESULT = "user_tool_result"
    USER_INTERRUPT = "user_interrupt"
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    ERROR = "error"
    UNKNOWN = "unknown"


class Origin(str, Enum):
    ASSISTANT = "assistant"
    HUMAN = "human"
    TOOL = "tool"
    SYSTEM = "system"


# ── Decoded bodies (one per content shape) ────────────────────────────────────

@dataclass(frozen=True)
class TextBody:
    blocks: tuple[str, ...] = ()


@dataclass(frozen=True)
class ToolUseBody:
    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)
    text_blocks: tuple[str, ...] = ()


@dataclass(frozen=True)
class ToolResultBody:
    content: Any = None
    is_error: bool = False
    metadata: Any = None


@dataclass(frozen=True)
class InterruptBody:
    text: str = ""


@dataclass(frozen=True)
class NoticeBody:
    text: str = ""


Body = Union[TextBody, ToolUseBody, ToolResultBody, InterruptBody, NoticeBody]


@dataclass(frozen=True)
class ClassifiedEvent:
    subtype: Subtype
    origin: Origin
    timestamp: float
    source_file: str
    record_type: Optional[str]
    shape: str
    body: Body
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class RenderedMessage:
    channel: str
    speaker_name: Optional[str]
    text: str
    subtype: Optional[str]
    timestamp: float
    is_user_message: bool = False
    session_file: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "channel": self.channel,
            "speakerName": self.speaker_name,
            "text": self.text,
            "subtype": self.subtype,
            "timestamp": self.timestamp,
            "isUserMessage": self.is_user_message,
        }
        if self.session_file:
            payload["sessionFile"] = self.session_file
        return payload


@dataclass(frozen=True)
class ReplayEntry:
    sequence_id: int
    message: RenderedMessage
