import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from commentary_bus.registry import ServiceRegistry, get_registry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["status"])


@router.get("/status")
async def status(registry: ServiceRegistry = Depends(get_registry)):
    return JSONResponse(registry.status())


@router.get("/activity")
async def activity(
    limit: int = Query(default=60, ge=1, le=200),
    registry: ServiceRegistry = Depends(get_registry),
):
    """Recent watcher/tail/pipeline events for the operator's live log view."""
    return JSONResponse(registry.activity.recent(limit))


@router.get("/health")
async def health(
    request: Request,
    registry: ServiceRegistry = Depends(get_registry),
):
    scheduler = getattr(request.app.state, "scheduler", None)
    scheduler_status = "running" if scheduler and scheduler.running else "stopped"
    monitoring = registry.watcher.status()

    overall_status = "ok"
    if scheduler_status != "running" or not monitoring["watcherActive"]:
        overall_status = "degraded"

    return JSONResponse({
        "status": overall_status,
        "scheduler": scheduler_status,
        "watcher": "active" if monitoring["watcherActive"] else "idle",
        "sessionDir": monitoring["sessionDir"],
        "activeTails": monitoring["activeTails"],
        "totalClients": registry.hub.snapshot()["totalClients"],
    })
