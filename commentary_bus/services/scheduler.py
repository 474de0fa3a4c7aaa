import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from commentary_bus.services.hub import BroadcastHub

logger = logging.getLogger(__name__)


def create_scheduler(hub: BroadcastHub, interval_seconds: int) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        send_heartbeats,
        "interval",
        seconds=interval_seconds,
        args=[hub],
        id="heartbeat_job",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    return scheduler


async def send_heartbeats(hub: BroadcastHub) -> None:
    """
    Keepalive for every open stream. Coroutine jobs run on the event loop,
    so the hub is only ever touched from the loop thread.
    """
    reached = hub.heartbeat()
    if reached:
        logger.debug("Heartbeat sent to %d subscribers", reached)
