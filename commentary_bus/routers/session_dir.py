"""
Directory control: read or switch the watched session folder.
Mounted at /config/session-dir
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from commentary_bus.registry import ServiceRegistry, get_registry
from commentary_bus.schemas import SessionDirRequest, SessionDirResponse, SessionDirState
from commentary_bus.services.folder_watcher import SessionDirError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/config", tags=["config"])


@router.get("/session-dir", response_model=SessionDirState)
async def get_session_dir(registry: ServiceRegistry = Depends(get_registry)) -> SessionDirState:
    watcher = registry.watcher
    return SessionDirState(
        sessionDir=watcher.directory,
        projectPath=registry.project_path_for(watcher.directory),
        watching=watcher.watching,
        activeTails=watcher.active_tails,
    )


@router.post("/session-dir", response_model=SessionDirResponse)
async def set_session_dir(
    body: SessionDirRequest,
    registry: ServiceRegistry = Depends(get_registry),
):
    input_path = (body.sessionDir or "").strip()
    if not input_path:
        raise HTTPException(status_code=400, detail="sessionDir is required")

    transformed = registry.resolve_session_dir(input_path)
    try:
        result = await registry.watcher.switch(transformed)
    except SessionDirError as exc:
        logger.warning("❌ Failed to switch folder: %s", exc)
        return JSONResponse(
            {"error": str(exc), "inputPath": input_path, "transformedPath": transformed},
            status_code=400,
        )

    logger.info("Session dir switched: %s → %s", input_path, result["sessionDir"])
    return SessionDirResponse(
        success=True,
        sessionDir=result["sessionDir"],
        inputPath=input_path,
        sessionFiles=result["sessionFiles"],
    )
