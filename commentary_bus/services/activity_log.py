"""
In-memory activity ring buffer.
Captures watcher/tail/pipeline events for the operator's /activity view.
Max 200 entries (oldest auto-dropped).
"""
from collections import deque
from datetime import datetime, timezone
from typing import TypedDict


class ActivityEntry(TypedDict):
    time: str      # HH:MM:SS UTC
    level: str     # "info" | "success" | "error" | "warn"
    category: str  # "watch" | "tail" | "publish" | "system"
    message: str


class ActivityLog:
    def __init__(self, maxlen: int = 200) -> None:
        self._entries: deque[ActivityEntry] = deque(maxlen=maxlen)

    def __len__(self) -> int:
        return len(self._entries)

    def log(self, level: str, category: str, message: str) -> None:
        self._entries.appendleft(
            ActivityEntry(
                time=datetime.now(timezone.utc).strftime("%H:%M:%S"),
                level=level,
                category=category,
                message=message,
            )
        )

    def recent(self, limit: int = 60) -> list[ActivityEntry]:
        return list(self._entries)[:limit]
