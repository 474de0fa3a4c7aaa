import json

import pytest

from commentary_bus.models import RenderedMessage
from commentary_bus.registry import ServiceRegistry
from commentary_bus.services.hub import BroadcastHub, Subscription, format_sse, normalise_channel
from commentary_bus.services.scheduler import create_scheduler, send_heartbeats


def drain(subscription: Subscription) -> list[str]:
    """Frames queued on a subscription but not yet consumed."""
    frames = []
    while not subscription._queue.empty():
        frame = subscription._queue.get_nowait()
        if frame is not None:
            frames.append(frame)
    return frames


def message(text: str, channel: str = "default") -> RenderedMessage:
    return RenderedMessage(channel=channel, speaker_name="System", text=text, subtype=None, timestamp=1.0)


def parse_frames(frames: list[str]) -> list[dict]:
    """Split raw SSE frames into {event, id, data} dicts (retry frames skipped)."""
    parsed = []
    for frame in frames:
        fields: dict = {}
        for line in frame.strip().split("\n"):
            name, _, value = line.partition(": ")
            fields[name] = value
        if "data" not in fields:
            continue
        parsed.append({
            "event": fields.get("event"),
            "id": int(fields["id"]) if "id" in fields else None,
            "data": json.loads(fields["data"]),
        })
    return parsed


def chat_texts(frames: list[str]) -> list[str]:
    return [f["data"]["text"] for f in parse_frames(frames) if f["event"] == "chat"]


class TestFormatting:
    def test_frame_layout(self):
        frame = format_sse("chat", {"a": 1}, 7)
        assert frame == 'id: 7\nevent: chat\ndata: {"a": 1}\n\n'

    def test_frame_without_id(self):
        assert format_sse("connected", {"x": "é"}) == 'event: connected\ndata: {"x": "é"}\n\n'

    @pytest.mark.parametrize("raw,expected", [(None, "default"), ("", "default"), ("ops", "ops"), (3, "3")])
    def test_normalise_channel(self, raw, expected):
        assert normalise_channel(raw) == expected


class TestSubscribe:
    def test_retry_then_connected_notice(self):
        hub = BroadcastHub()
        frames = drain(hub.subscribe("default"))
        assert frames[0] == "retry: 3000\n\n"
        connected = parse_frames(frames)[0]
        assert connected["event"] == "connected"
        assert connected["data"]["channel"] == "default"
        assert connected["data"]["clients"] == 1
        assert connected["id"] is None

    def test_connected_counts_existing_clients(self):
        hub = BroadcastHub()
        hub.subscribe("default")
        second = parse_frames(drain(hub.subscribe("default")))[0]
        assert second["data"]["clients"] == 2

    def test_replay_after_last_id(self):
        hub = BroadcastHub()
        for text in ("m1", "m2", "m3"):
            hub.publish("default", message(text))
        frames = drain(hub.subscribe("default", last_event_id=1))
        assert chat_texts(frames) == ["m2", "m3"]
        assert [f["id"] for f in parse_frames(frames) if f["event"] == "chat"] == [2, 3]

    def test_replay_is_idempotent(self):
        hub = BroadcastHub()
        for text in ("m1", "m2", "m3", "m4"):
            hub.publish("default", message(text))

        def replayed(last_id: int) -> list[tuple[int, str]]:
            frames = parse_frames(drain(hub.subscribe("default", last_event_id=last_id)))
            return [(f["id"], f["data"]["text"]) for f in frames if f["event"] == "chat"]

        first = replayed(2)
        second = replayed(2)
        assert first == [(3, "m3"), (4, "m4")]
        assert second == first

    def test_resubscribe_with_latest_id_replays_nothing(self):
        hub = BroadcastHub()
        hub.publish("default", message("m1"))
        hub.publish("default", message("m2"))
        assert chat_texts(drain(hub.subscribe("default", last_event_id=2))) == []

    def test_replay_capped(self):
        hub = BroadcastHub(replay_size=50)
        for i in range(60):
            hub.publish("default", message(f"m{i}"))
        texts = chat_texts(drain(hub.subscribe("default")))
        assert len(texts) == 50
        assert texts[0] == "m10"
        assert texts[-1] == "m59"

    def test_replay_is_per_channel(self):
        hub = BroadcastHub()
        hub.publish("a", message("for a", "a"))
        hub.publish("b", message("for b", "b"))
        assert chat_texts(drain(hub.subscribe("a"))) == ["for a"]


class TestPublish:
    def test_ids_strictly_increase_across_channels(self):
        hub = BroadcastHub()
        ids = [hub.publish(ch, message("x", ch)) for ch in ("a", "b", "a", "default")]
        assert ids == [1, 2, 3, 4]
        assert hub.last_sequence_id == 4

    def test_live_delivery_in_order(self):
        hub = BroadcastHub()
        sub = hub.subscribe("default")
        drain(sub)
        hub.publish("default", message("one"))
        hub.publish("default", message("two"))
        assert chat_texts(drain(sub)) == ["one", "two"]

    def test_other_channels_not_delivered(self):
        hub = BroadcastHub()
        sub = hub.subscribe("a")
        drain(sub)
        hub.publish("b", message("nope", "b"))
        assert drain(sub) == []

    def test_slow_subscriber_dropped_without_blocking_others(self):
        hub = BroadcastHub(queue_size=3)
        slow = hub.subscribe("default")  # retry + connected already queued
        fast = hub.subscribe("default")
        drain(fast)
        hub.publish("default", message("a"))
        drain(fast)
        hub.publish("default", message("b"))
        assert slow.closed is True
        assert hub.subscriber_count("default") == 1
        assert chat_texts(drain(fast)) == ["b"]

    def test_publish_with_no_subscribers_keeps_replay(self):
        hub = BroadcastHub()
        hub.publish("quiet", message("stored", "quiet"))
        assert [e.message.text for e in hub.replay_log("quiet")] == ["stored"]


class TestLifecycle:
    def test_unsubscribe_is_idempotent(self):
        hub = BroadcastHub()
        sub = hub.subscribe("default")
        hub.unsubscribe(sub)
        hub.unsubscribe(sub)
        assert hub.subscriber_count("default") == 0
        assert sub.closed is True

    @pytest.mark.asyncio
    async def test_closed_subscription_ends_stream(self):
        hub = BroadcastHub()
        sub = hub.subscribe("default")
        hub.unsubscribe(sub)
        assert await sub.next_frame() is None

    def test_heartbeat_reports_clients(self):
        hub = BroadcastHub()
        subs = [hub.subscribe("default") for _ in range(2)]
        for sub in subs:
            drain(sub)
        assert hub.heartbeat() == 2
        beat = parse_frames(drain(subs[0]))[0]
        assert beat["event"] == "heartbeat"
        assert beat["data"]["clients"] == 2

    def test_heartbeat_without_subscribers(self):
        assert BroadcastHub().heartbeat() == 0

    def test_snapshot(self):
        hub = BroadcastHub()
        hub.subscribe("a")
        hub.publish("a", message("x", "a"))
        snap = hub.snapshot()
        assert snap["clients"] == {"a": 1}
        assert snap["buffers"] == {"a": 1}
        assert snap["totalClients"] == 1
        assert snap["lastId"] == 1

    def test_close_all(self):
        hub = BroadcastHub()
        subs = [hub.subscribe(ch) for ch in ("a", "b")]
        hub.close_all()
        assert all(s.closed for s in subs)
        assert hub.snapshot()["totalClients"] == 0


class TestHeartbeatJob:
    def test_scheduler_registers_heartbeat(self):
        scheduler = create_scheduler(BroadcastHub(), interval_seconds=7)
        job = scheduler.get_job("heartbeat_job")
        assert job is not None
        assert job.trigger.interval.total_seconds() == 7

    @pytest.mark.asyncio
    async def test_send_heartbeats_reaches_subscribers(self):
        hub = BroadcastHub()
        sub = hub.subscribe("default")
        drain(sub)
        await send_heartbeats(hub)
        assert "event: heartbeat" in drain(sub)[0]

    @pytest.mark.asyncio
    async def test_registry_scheduler_uses_its_own_settings(self, test_settings):
        test_settings.HEARTBEAT_INTERVAL_SECONDS = 2
        registry = ServiceRegistry(settings=test_settings)
        job = registry.build_scheduler().get_job("heartbeat_job")
        assert job.trigger.interval.total_seconds() == 2
        assert job.args[0] is registry.hub
