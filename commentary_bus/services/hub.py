"""
Channel-addressed broadcast hub with bounded replay.

Each channel owns a subscriber set and a replay log of the last N published
messages. Sequence ids come from one counter shared by every channel, so
they give subscribers a single total order to resume from.

publish() never awaits: frames are put on each subscriber's bounded queue
and the SSE response drains it. A subscriber whose queue is full or closed
is dropped instead of slowing everyone else down.
"""
import asyncio
import json
import logging
import time
from collections import deque
from typing import Any, Optional

from commentary_bus.models import RenderedMessage, ReplayEntry

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "default"
RETRY_MS = 3000


def normalise_channel(name: Any) -> str:
    if name is None:
        return DEFAULT_CHANNEL
    key = str(name)
    return key if key else DEFAULT_CHANNEL


def format_sse(event: Optional[str], data: Any, event_id: Optional[int] = None) -> str:
    frame = ""
    if event_id:
        frame += f"id: {event_id}\n"
    if event:
        frame += f"event: {event}\n"
    frame += f"data: {json.dumps(data, ensure_ascii=False)}\n\n"
    return frame


def _now_ms() -> int:
    return int(time.time() * 1000)


class Subscription:
    def __init__(self, channel: str, queue_size: int) -> None:
        self.channel = channel
        self.closed = False
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=queue_size)

    def offer(self, frame: str) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Make room for the end-of-stream marker
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def next_frame(self) -> Optional[str]:
        """Next SSE frame, or None once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()


class BroadcastHub:
    def __init__(self, replay_size: int = 50, queue_size: int = 1000) -> None:
        self.replay_size = replay_size
        self.queue_size = queue_size
        self._subscribers: dict[str, set[Subscription]] = {}
        self._replay: dict[str, deque[ReplayEntry]] = {}
        self._next_id = 1

    def channel(self, name: Any) -> str:
        key = normalise_channel(name)
        self._subscribers.setdefault(key, set())
        self._replay.setdefault(key, deque(maxlen=self.replay_size))
        return key

    @property
    def last_sequence_id(self) -> int:
        return self._next_id - 1

    def subscriber_count(self, channel: Any) -> int:
        return len(self._subscribers.get(normalise_channel(channel), ()))

    def replay_log(self, channel: Any) -> list[ReplayEntry]:
        return list(self._replay.get(normalise_channel(channel), ()))

    def subscribe(self, channel: Any, last_event_id: int = 0) -> Subscription:
        key = self.channel(channel)
        subscription = Subscription(key, self.queue_size)
        subscription.offer(f"retry: {RETRY_MS}\n\n")
        subscription.offer(
            format_sse(
                "connected",
                {
                    "type": "connected",
                    "ts": _now_ms(),
                    "channel": key,
                    "clients": len(self._subscribers[key]) + 1,
                },
            )
        )
        for entry in self._replay[key]:
            if entry.sequence_id > last_event_id:
                subscription.offer(format_sse("chat", entry.message.to_dict(), entry.sequence_id))
        self._subscribers[key].add(subscription)
        logger.info("[SSE] client connect → %s (after id %d)", key, last_event_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.channel)
        removed = subscribers is not None and subscription in subscribers
        if removed:
            subscribers.discard(subscription)
        subscription.close()
        if removed:
            logger.info("[SSE] client disconnect ← %s", subscription.channel)

    def publish(self, channel: Any, message: RenderedMessage) -> int:
        key = self.channel(channel)
        sequence_id = self._next_id
        self._next_id += 1
        self._replay[key].append(ReplayEntry(sequence_id=sequence_id, message=message))

        frame = format_sse("chat", message.to_dict(), sequence_id)
        dead = [s for s in self._subscribers[key] if not s.offer(frame)]
        for subscription in dead:
            logger.warning("Dropping slow/closed subscriber on %s", key)
            self.unsubscribe(subscription)
        return sequence_id

    def heartbeat(self) -> int:
        """Push a keepalive to every subscriber; returns how many were reached."""
        reached = 0
        for key, subscribers in self._subscribers.items():
            if not subscribers:
                continue
            frame = format_sse(
                "heartbeat",
                {"type": "heartbeat", "ts": _now_ms(), "channel": key, "clients": len(subscribers)},
            )
            dead = []
            for subscription in subscribers:
                if subscription.offer(frame):
                    reached += 1
                else:
                    dead.append(subscription)
            for subscription in dead:
                self.unsubscribe(subscription)
        return reached

    def snapshot(self) -> dict[str, Any]:
        clients = {ch: len(subs) for ch, subs in self._subscribers.items()}
        return {
            "clients": clients,
            "buffers": {ch: len(buf) for ch, buf in self._replay.items()},
            "totalClients": sum(clients.values()),
            "lastId": self.last_sequence_id,
        }

    def close_all(self) -> None:
        for subscribers in self._subscribers.values():
            for subscription in list(subscribers):
                self.unsubscribe(subscription)
