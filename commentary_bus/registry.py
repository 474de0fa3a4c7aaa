import logging
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Request

from commentary_bus.config import PipelineConfig, Settings, settings as default_settings
from commentary_bus.services.activity_log import ActivityLog
from commentary_bus.services.deduplication import RecentHashes
from commentary_bus.services.folder_watcher import (
    FolderWatcher,
    project_path_to_session_path,
    session_path_to_project_path,
)
from commentary_bus.services.hub import BroadcastHub
from commentary_bus.services.pipeline import EventPipeline
from commentary_bus.services.rate_limiter import RateLimiter
from commentary_bus.services.renderer import Renderer
from commentary_bus.services.scheduler import create_scheduler

logger = logging.getLogger(__name__)


class ServiceRegistry:
    """Owns every piece of mutable service state: hub, pipeline, watcher."""

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.config = config or PipelineConfig()
        self.activity = ActivityLog()

        self.hub = BroadcastHub(
            replay_size=self.settings.REPLAY_BUFFER_SIZE,
            queue_size=self.settings.SUBSCRIBER_QUEUE_SIZE,
        )
        self.rate_limiter = RateLimiter(
            burst=self.config.rate_limit.burst,
            per_minute=self.config.rate_limit.per_minute,
        )
        self.renderer = Renderer(
            limits=self.config.truncation.limits,
            indicator=self.config.truncation.indicator,
            assistant_name=self.settings.ASSISTANT_NAME,
        )
        self.dedup = RecentHashes(max_entries=self.settings.DEDUP_MAX_ENTRIES)
        self.pipeline = EventPipeline(
            self.hub,
            self.renderer,
            self.rate_limiter,
            self.dedup,
            self.config,
            activity=self.activity,
        )
        self.watcher = FolderWatcher(
            self.pipeline.ingest_line,
            debounce=self.settings.WATCH_DEBOUNCE_MS / 1000,
            poll_interval=self.settings.TAIL_POLL_INTERVAL_MS / 1000,
            retry_timeout=self.settings.TAIL_RETRY_TIMEOUT_S,
            activity=self.activity,
        )

    def resolve_session_dir(self, input_path: str) -> str:
        return project_path_to_session_path(input_path, self.settings.SESSION_ROOT)

    def project_path_for(self, session_dir: Optional[str]) -> Optional[str]:
        if not session_dir:
            return None
        return session_path_to_project_path(session_dir, self.settings.SESSION_ROOT)

    async def watch(self, input_path: str) -> dict[str, Any]:
        """Resolve a project/session path and switch the watcher to it."""
        return await self.watcher.switch(self.resolve_session_dir(input_path))

    def build_scheduler(self) -> AsyncIOScheduler:
        """Heartbeat scheduler for this registry's hub (not started)."""
        return create_scheduler(self.hub, self.settings.HEARTBEAT_INTERVAL_SECONDS)

    def status(self) -> dict[str, Any]:
        return {
            **self.hub.snapshot(),
            "monitoring": self.watcher.status(),
            "pipeline": self.pipeline.snapshot(),
            "rateLimit": self.rate_limiter.snapshot(),
        }

    async def shutdown(self) -> None:
        await self.watcher.stop()
        self.pipeline.drain()
        self.hub.close_all()


def get_registry(request: Request) -> ServiceRegistry:
    return request.app.state.registry
