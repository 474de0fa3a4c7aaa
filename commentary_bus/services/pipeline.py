"""
Ordering, dedup and rate-limit stage between the tailers and the hub.

Records are classified, filtered and dedup-checked as they arrive, then held
in a pending batch. The first record of a batch arms a one-shot timer of
`stabilization_ms`; later arrivals join the batch without re-arming it, so
no record waits longer than one window. On flush the batch is sorted by
timestamp (enqueue order breaks ties), rate-limited per channel and
published.
"""
import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Optional

from commentary_bus.config import PipelineConfig
from commentary_bus.models import ClassifiedEvent, RenderedMessage
from commentary_bus.services.activity_log import ActivityLog
from commentary_bus.services.classifier import decode
from commentary_bus.services.deduplication import (
    RecentHashes,
    compute_event_hash,
    serialise_record,
)
from commentary_bus.services.hub import DEFAULT_CHANNEL, BroadcastHub
from commentary_bus.services.rate_limiter import RateLimiter
from commentary_bus.services.renderer import Renderer

logger = logging.getLogger(__name__)


@dataclass
class PendingEvent:
    event: ClassifiedEvent
    message: RenderedMessage
    channel: str
    seq: int


class EventPipeline:
    def __init__(
        self,
        hub: BroadcastHub,
        renderer: Renderer,
        rate_limiter: RateLimiter,
        dedup: RecentHashes,
        config: PipelineConfig,
        activity: Optional[ActivityLog] = None,
    ) -> None:
        self.hub = hub
        self.renderer = renderer
        self.rate_limiter = rate_limiter
        self.dedup = dedup
        self.config = config
        self.activity = activity or ActivityLog()
        self._patterns = self._compile_patterns(config.filters.exclude_patterns)
        self._pending: list[PendingEvent] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._seq = 0
        self.stats = {
            "received": 0,
            "parse_errors": 0,
            "filtered": 0,
            "duplicates": 0,
            "rate_limited": 0,
            "published": 0,
        }

    @staticmethod
    def _compile_patterns(patterns: list[str]) -> list[re.Pattern]:
        compiled = []
        for pattern in patterns:
            try:
                compiled.append(re.compile(pattern))
            except re.error as exc:
                logger.error("Ignoring invalid exclude pattern %r: %s", pattern, exc)
        return compiled

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def resolve_channel(self, record: dict) -> str:
        channels = self.config.channels
        requested = record.get("channel")
        if isinstance(requested, str) and requested in channels:
            return channels[requested]
        return channels.get("default") or DEFAULT_CHANNEL

    # ── Intake ────────────────────────────────────────────────────────────

    def ingest_line(self, line: str, source_file: str = "") -> bool:
        try:
            record = json.loads(line)
        except json.JSONDecodeError as exc:
            self.stats["parse_errors"] += 1
            logger.error("❌ Parse error in %s: %s", source_file or "<input>", exc)
            return False
        if not isinstance(record, dict):
            self.stats["parse_errors"] += 1
            logger.warning("Skipping non-object record in %s", source_file or "<input>")
            return False
        return self.submit(record, source_file)

    def submit(
        self,
        record: dict[str, Any],
        source_file: str = "",
        ingested_at: Optional[float] = None,
    ) -> bool:
        """Classify, filter and dedup one record; returns True if it was queued."""
        self.stats["received"] += 1
        event = decode(record, source_file, ingested_at)
        serialised = serialise_record(record)
        channel = self.resolve_channel(record)
        message = self.renderer.render(event, channel)

        if not self._passes_filters(event, message, serialised):
            self.stats["filtered"] += 1
            return False

        key = compute_event_hash(
            event.timestamp,
            event.record_type or "unknown",
            serialised,
            self.config.dedup.prefix_length,
        )
        if self.dedup.check_and_add(key):
            self.stats["duplicates"] += 1
            return False

        self._seq += 1
        self._pending.append(PendingEvent(event=event, message=message, channel=channel, seq=self._seq))
        if len(self._pending) == 1:
            self._arm_timer()
        return True

    def _passes_filters(self, event: ClassifiedEvent, message: RenderedMessage, serialised: str) -> bool:
        if not self.config.enabled:
            return False
        filters = self.config.filters
        event_type = event.record_type or "unknown"
        if filters.include_types and event_type not in filters.include_types:
            return False
        if event_type in filters.exclude_types:
            return False
        subtype = event.subtype.value
        if filters.include_subtypes and subtype not in filters.include_subtypes:
            return False
        if subtype in filters.exclude_subtypes:
            return False
        for pattern in self._patterns:
            if pattern.search(serialised):
                return False
        if filters.min_message_length and len(message.text) < filters.min_message_length:
            return False
        return True

    # ── Flush ─────────────────────────────────────────────────────────────

    def _arm_timer(self) -> None:
        delay = max(0, self.config.ordering.stabilization_ms) / 1000
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self.flush)

    def flush(self) -> int:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        batch, self._pending = self._pending, []
        if not batch:
            return 0

        batch.sort(key=lambda p: (p.event.timestamp, p.seq))
        published = 0
        for item in batch:
            if not self.rate_limiter.try_consume(item.channel):
                self.stats["rate_limited"] += 1
                logger.info("⏳ Rate limited: %s (dropped %s)", item.channel, item.event.subtype.value)
                self.activity.log("warn", "publish", f"Rate limited on {item.channel}")
                continue
            try:
                self.hub.publish(item.channel, item.message)
            except Exception as exc:
                logger.error("Publish failed on %s: %s", item.channel, exc, exc_info=True)
                continue
            published += 1

        self.stats["published"] += published
        logger.debug("Flushed %d events (%d published)", len(batch), published)
        return published

    def drain(self) -> int:
        """Flush whatever is pending; used on shutdown."""
        return self.flush()

    def snapshot(self) -> dict[str, Any]:
        return {
            **self.stats,
            "pending": len(self._pending),
            "dedupSize": len(self.dedup),
            "updatedAt": int(time.time() * 1000),
        }
