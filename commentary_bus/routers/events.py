import asyncio
import logging
from typing import AsyncGenerator, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import StreamingResponse

from commentary_bus.registry import ServiceRegistry, get_registry
from commentary_bus.services.hub import BroadcastHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])

# How often the stream re-checks for a vanished client while idle
DISCONNECT_POLL_SECONDS = 1.0

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def parse_last_event_id(header_value: Optional[str], query_value: Optional[str]) -> int:
    for raw in (header_value, query_value):
        if raw is None:
            continue
        try:
            return max(0, int(raw))
        except ValueError:
            continue
    return 0


async def stream_frames(
    request: Request,
    hub: BroadcastHub,
    channel: Optional[str],
    last_event_id: int,
) -> AsyncGenerator[str, None]:
    # Registered on first iteration: a stream that never starts never subscribes
    subscription = hub.subscribe(channel, last_event_id)
    try:
        while True:
            if await request.is_disconnected():
                break
            try:
                frame = await asyncio.wait_for(
                    subscription.next_frame(), timeout=DISCONNECT_POLL_SECONDS
                )
            except asyncio.TimeoutError:
                continue
            if frame is None:
                break
            yield frame
    finally:
        hub.unsubscribe(subscription)


@router.get("/events")
async def events(
    request: Request,
    channel: Optional[str] = Query(default=None),
    last_event_id_query: Optional[str] = Query(default=None, alias="lastEventId"),
    last_event_id: Optional[str] = Header(default=None),
    registry: ServiceRegistry = Depends(get_registry),
) -> StreamingResponse:
    after_id = parse_last_event_id(last_event_id, last_event_id_query)
    return StreamingResponse(
        stream_frames(request, registry.hub, channel, after_id),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
