from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from collections import Counter
import logging

import psutil

from api import sessions, schedules
from config.app_config import AppConfig
from constants import ServerConfig
from database import SessionLocal
from init_db import init_database
from repositories.schedule_repository import ScheduleRepository
from repositories.session_repository import SessionRepository
from schemas import ReconcileReportResponse, SystemStatus
from services.orchestrator import Orchestrator
from services.websocket import websocket_endpoint
from utils.logging_utils import configure_logging

config = AppConfig.from_env()
LOG_FILE = configure_logging(config.log_dir)

logger = logging.getLogger(__name__)
logger.info(f"Logging initialized: {LOG_FILE}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown"""
    # Startup
    init_database()
    config.media_root.mkdir(parents=True, exist_ok=True)

    orchestrator = Orchestrator(config, session_factory=SessionLocal)
    app.state.orchestrator = orchestrator

    logger.info(f"Starting orchestrator (backend: {config.process_backend}, media root: {config.media_root})")
    await orchestrator.start()
    logger.info("Application startup complete - all services running")

    yield

    # Shutdown
    logger.info("Stopping background services...")
    await orchestrator.stop()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Stream Orchestrator API",
    description="Scheduled ffmpeg restreaming of media files to RTMP platforms",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS - allow all origins for network accessibility
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions.router, prefix="/api", tags=["sessions"])
app.include_router(schedules.router, prefix="/api", tags=["schedules"])


@app.websocket("/api/ws")
async def websocket_route(websocket: WebSocket):
    """WebSocket endpoint for real-time session state updates"""
    await websocket_endpoint(websocket, websocket.app.state.orchestrator.manager)


@app.get("/api/health")
def health_check():
    return {"status": "ok"}


@app.get("/api/system/status", response_model=SystemStatus)
def get_system_status():
    """Scheduler, process and host status at a glance"""
    orchestrator: Orchestrator = app.state.orchestrator
    db = orchestrator.session_factory()
    try:
        statuses = Counter(s.status for s in SessionRepository(db).get_all())
        schedule_repo = ScheduleRepository(db)
        enabled = schedule_repo.count_enabled()
        next_fire_at = schedule_repo.earliest_next_fire_at()
    finally:
        db.close()

    report = orchestrator.reconciler.last_report
    return SystemStatus(
        process_backend=config.process_backend,
        scheduler_running=orchestrator.engine.running,
        sessions_by_status=dict(statuses),
        tracked_processes=len(orchestrator.supervisor.tracked()),
        enabled_schedules=enabled,
        next_fire_at=next_fire_at,
        websocket_clients=len(orchestrator.manager.active_connections),
        cpu_percent=psutil.cpu_percent(interval=None),
        memory_percent=psutil.virtual_memory().percent,
        last_reconcile=ReconcileReportResponse(**report.to_dict()) if report else None,
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=ServerConfig.HOST, port=ServerConfig.PORT)
