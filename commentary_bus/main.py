import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from commentary_bus.config import load_pipeline_config, settings
from commentary_bus.registry import ServiceRegistry
from commentary_bus.routers.events import router as events_router
from commentary_bus.routers.ingest import router as ingest_router
from commentary_bus.routers.session_dir import router as session_dir_router
from commentary_bus.routers.status import router as status_router
from commentary_bus.services.folder_watcher import SessionDirError

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── STARTUP ──────────────────────────────────────────────────────────────
    logger.info("🌉 %s starting (auth: %s)", settings.APP_NAME, "token required" if settings.CBUS_TOKEN else "none")
    registry = ServiceRegistry(load_pipeline_config(settings.CONFIG_FILE), settings)
    app.state.registry = registry

    scheduler = registry.build_scheduler()
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info("Heartbeat scheduler started (%ds)", registry.settings.HEARTBEAT_INTERVAL_SECONDS)

    if settings.SESSION_DIR:
        try:
            await registry.watch(settings.SESSION_DIR)
        except SessionDirError as exc:
            logger.error("⚠️ Initial folder watch failed: %s", exc)
            logger.info("💡 Configure via POST /config/session-dir")
    else:
        logger.info("💡 No SESSION_DIR set - configure via POST /config/session-dir")

    yield

    # ── SHUTDOWN ─────────────────────────────────────────────────────────────
    scheduler.shutdown(wait=False)
    await registry.shutdown()
    logger.info("👋 Shut down")


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=False, allow_methods=["*"], allow_headers=["*"])

# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(events_router)
app.include_router(ingest_router)
app.include_router(status_router)
app.include_router(session_dir_router)


# ── Request logging middleware ────────────────────────────────────────────────
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s → %d [%.1fms]",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


# ── Global 500 handler ────────────────────────────────────────────────────────
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception on %s: %s", request.url.path, exc, exc_info=True)
    return JSONResponse({"error": str(exc), "status": 500}, status_code=500)


def run() -> None:
    uvicorn.run("commentary_bus.main:app", host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run()
