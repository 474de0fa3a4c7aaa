import hashlib
import json
from typing import Any


def serialise_record(record: Any) -> str:
    return json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)


def compute_event_hash(
    timestamp: float, event_type: str, payload: str, prefix_length: int = 100
) -> str:
    """
    Key over timestamp, type and a payload prefix. Distinct records that share
    the same prefix (and timestamp/type) collapse onto one key.
    """
    prefix = payload[:prefix_length] if prefix_length > 0 else payload
    key = f"{timestamp}-{event_type}-{prefix}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class RecentHashes:
    """Bounded set of recently seen keys; drops the oldest half on overflow."""

    def __init__(self, max_entries: int = 10000) -> None:
        self.max_entries = max_entries
        self._seen: dict[str, None] = {}

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, key: str) -> bool:
        return key in self._seen

    def add(self, key: str) -> None:
        self._seen[key] = None
        if len(self._seen) > self.max_entries:
            for old in list(self._seen)[: self.max_entries // 2]:
                del self._seen[old]

    def check_and_add(self, key: str) -> bool:
        """Returns True if `key` was already present."""
        if key in self._seen:
            return True
        self.add(key)
        return False
