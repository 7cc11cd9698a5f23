"""
Media Unifier Web Backend - FastAPI application
Accepts media uploads, merges them into one file through ffmpeg jobs,
streams job state via WebSocket and serves the result for download.
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, File, HTTPException, Request, Response, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from starlette.background import BackgroundTask

import unifier

from . import __version__
from .broadcast import ConnectionManager
from .errors import ResourceNotFound, ValidationError
from .jobs import JobOrchestrator, JobState
from .models import ConfigModel, SubmitJobRequest
from .registry import UploadRegistry
from .retention import RetentionManager
from .settings import Settings, load_config, save_config

logger = logging.getLogger("unifier-web")

router = APIRouter()

# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(settings: Optional[Settings] = None, engine=None) -> FastAPI:
    """
    Wire one set of service objects and expose them on app.state.
    engine defaults to unifier.FFmpegEngine; tests pass a stand-in.
    """
    settings = settings or Settings.from_env()
    settings.temp_dir.mkdir(parents=True, exist_ok=True)
    engine = engine or unifier.FFmpegEngine(settings.ffmpeg_bin, settings.ffprobe_bin)

    retention = RetentionManager(settings.temp_dir)
    registry = UploadRegistry(
        settings.temp_dir,
        engine,
        retention,
        max_bytes=settings.max_upload_bytes,
        ttl=settings.asset_ttl,
        max_files=settings.max_files,
    )
    broadcaster = ConnectionManager()
    orchestrator = JobOrchestrator(
        registry,
        engine,
        broadcaster,
        retention,
        root=settings.temp_dir,
        output_ttl=settings.output_ttl,
        config_loader=lambda: load_config(settings.config_file),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        retention.sweep(settings.sweep_max_age)
        sweeper = asyncio.create_task(retention.run_sweeper(settings.sweep_interval, settings.sweep_max_age))
        logger.info(f"Media Unifier {__version__} ready, temp dir {settings.temp_dir}")
        try:
            yield
        finally:
            sweeper.cancel()
            await orchestrator.shutdown(settings.shutdown_grace)
            broadcaster.close()
            retention.shutdown()
            logger.info("Media Unifier stopped")

    app = FastAPI(title="Media Unifier", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings     = settings
    app.state.engine       = engine
    app.state.retention    = retention
    app.state.registry     = registry
    app.state.broadcaster  = broadcaster
    app.state.orchestrator = orchestrator
    app.state.started_at   = time.monotonic()

    app.include_router(router)
    return app


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


def get_registry(request: Request) -> UploadRegistry:
    return request.app.state.registry


# ---------------------------------------------------------------------------
# REST endpoints
# ---------------------------------------------------------------------------

@router.get("/health")
async def health(request: Request):
    return {"status": "ok", "uptime": round(time.monotonic() - request.app.state.started_at)}


@router.get("/api/status")
async def get_status(request: Request):
    state = request.app.state
    return {
        "status":        "online",
        "version":       __version__,
        "activeJobs":    state.orchestrator.active_count(),
        "jobs":          len(state.orchestrator.jobs),
        "uploadedFiles": state.registry.count(),
        "observers":     state.broadcaster.count(),
        "pendingTimers": state.retention.pending(),
        "uptime":        round(time.monotonic() - state.started_at),
        "pid":           os.getpid(),
    }


@router.get("/api/config")
async def get_config(request: Request):
    return load_config(request.app.state.settings.config_file)


@router.post("/api/config")
async def post_config(request: Request, cfg: ConfigModel):
    save_config(request.app.state.settings.config_file, cfg.model_dump())
    return {"ok": True}


@router.post("/api/uploads")
async def upload_files(
    files: list[UploadFile] = File(...),
    registry: UploadRegistry = Depends(get_registry),
):
    try:
        assets = await registry.register_batch(files)
    except ValidationError as e:
        raise HTTPException(400, str(e))
    finally:
        for f in files:
            await f.close()
    logger.info(f"Upload: {len(assets)} file(s)")
    return [a.to_dict() for a in assets]


@router.get("/api/uploads/{asset_id}")
async def get_upload(asset_id: str, registry: UploadRegistry = Depends(get_registry)):
    asset = registry.lookup(asset_id)
    if asset is None:
        raise HTTPException(404, f"Upload not found: {asset_id}")
    return asset.to_dict()


@router.delete("/api/uploads/{asset_id}", status_code=204)
async def delete_upload(asset_id: str, registry: UploadRegistry = Depends(get_registry)):
    registry.revoke(asset_id)
    return Response(status_code=204)


@router.post("/api/jobs", status_code=202)
async def submit_job(body: SubmitJobRequest, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    try:
        job = await orchestrator.submit(body.asset_ids, body.profile)
    except ValidationError as e:
        raise HTTPException(400, str(e))
    return {"jobId": job.id}


@router.get("/api/jobs")
async def list_jobs(orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    return [j.to_dict() for j in orchestrator.list_jobs()]


@router.get("/api/jobs/{job_id}")
async def get_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.require(job_id).to_dict()
    except ResourceNotFound as e:
        raise HTTPException(404, str(e))


@router.get("/api/jobs/{job_id}/download")
async def download(job_id: str, request: Request, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    job = orchestrator.get(job_id)
    if job is None or job.state is not JobState.COMPLETED or not job.output_path.exists():
        raise HTTPException(404, "File not found")

    settings = request.app.state.settings
    retention = request.app.state.retention

    async def expire_after_download() -> None:
        # Runs once the response body has been sent
        retention.schedule_output_expiry(job, settings.download_grace, on_expired=orchestrator.forget)

    logger.info(f"Download: {job.output_name} ({job.id})")
    return FileResponse(
        job.output_path,
        filename=job.output_name,
        media_type="application/octet-stream",
        background=BackgroundTask(expire_after_download),
    )


# ---------------------------------------------------------------------------
# WebSocket - live job feed
# ---------------------------------------------------------------------------

@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    manager: ConnectionManager = ws.app.state.broadcaster
    orchestrator: JobOrchestrator = ws.app.state.orchestrator

    await ws.send_json({"type": "connected", "message": "Connected to Media Unifier"})
    await manager.subscribe(ws, snapshot=lambda: [j.to_message() for j in orchestrator.list_jobs()])
    try:
        while True:
            # Nothing is expected from clients; this only detects disconnects
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        manager.unsubscribe(ws)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    settings = Settings.from_env()
    unifier.setup_logging(settings.log_file)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level="info")


if __name__ == "__main__":
    main()
