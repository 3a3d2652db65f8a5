from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from reelcast.config import resolve_config
from reelcast.errors import DataIntegrityError, StorageUnavailable, VideoNotFound
from reelcast.logging_setup import configure_logging
from reelcast.models import (
    GENERATION_QUEUE,
    PUBLISH_QUEUE,
    GenerationJobPayload,
    PublishJobPayload,
    ReelcastConfig,
)
from reelcast.orchestrator import GENERATION_PRIORITY, PUBLISH_PRIORITY, Orchestrator

logger = logging.getLogger(__name__)


# --- Request Models ---
class GenerationRequest(BaseModel):
    payload: GenerationJobPayload
    priority: int = GENERATION_PRIORITY


class PublishRequest(BaseModel):
    payload: PublishJobPayload
    priority: int = PUBLISH_PRIORITY


class CleanRequest(BaseModel):
    older_than_hours: Optional[float] = Field(default=None, gt=0)


def create_app(
    orchestrator: Optional[Orchestrator] = None,
    config: Optional[ReelcastConfig] = None,
    start_workers: bool = True,
) -> FastAPI:
    """Build the control-surface app.

    With no ``orchestrator`` one is built from config on startup (and its
    worker pools started when ``start_workers`` is set). An injected
    orchestrator is used as-is and its lifecycle is left to the caller.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = orchestrator is None
        if owned:
            resolved = config or resolve_config()
            configure_logging(resolved.log_level)
            app.state.orchestrator = Orchestrator.from_config(resolved)
            if start_workers:
                app.state.orchestrator.start()
        yield
        if owned:
            await asyncio.to_thread(app.state.orchestrator.close)

    app = FastAPI(title="reelcast", lifespan=lifespan)
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    @app.exception_handler(VideoNotFound)
    async def video_not_found(request: Request, exc: VideoNotFound):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(DataIntegrityError)
    async def data_integrity(request: Request, exc: DataIntegrityError):
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    @app.exception_handler(StorageUnavailable)
    async def storage_unavailable(request: Request, exc: StorageUnavailable):
        logger.error("Storage unavailable: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)}
        )

    def _orchestrator(request: Request) -> Orchestrator:
        return request.app.state.orchestrator

    def _check_queue(queue: str) -> None:
        if queue not in (GENERATION_QUEUE, PUBLISH_QUEUE):
            raise HTTPException(status_code=400, detail=f"Unknown queue '{queue}'")

    @app.get("/health")
    async def health_check(request: Request):
        return {"status": "ok", "workers_running": _orchestrator(request).is_running}

    # --- QUEUE ENDPOINTS ---

    @app.get("/queue/stats")
    async def queue_stats(request: Request):
        return await asyncio.to_thread(_orchestrator(request).get_queue_stats)

    @app.get("/queue/active")
    async def active_jobs(request: Request):
        return await asyncio.to_thread(_orchestrator(request).get_active_summary)

    @app.get("/queue/jobs/{job_id}")
    async def get_job(job_id: str, request: Request, queue: str = GENERATION_QUEUE):
        _check_queue(queue)
        job = await asyncio.to_thread(_orchestrator(request).get_job_status, job_id, queue)
        if job["status"] == "not_found":
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    @app.delete("/queue/jobs/{job_id}")
    async def cancel_job(job_id: str, request: Request, queue: str = GENERATION_QUEUE):
        """Remove a waiting/delayed job. An active job is only flagged."""
        _check_queue(queue)
        orch = _orchestrator(request)
        job = await asyncio.to_thread(orch.get_job_status, job_id, queue)
        if job["status"] == "not_found":
            raise HTTPException(status_code=404, detail="Job not found")
        removed = await asyncio.to_thread(orch.cancel_job, job_id, queue)
        return {"id": job_id, "cancelled": removed, "previous_status": job["status"]}

    @app.post("/queue/clean")
    async def clean_queues(request: Request, data: Optional[CleanRequest] = None):
        hours = data.older_than_hours if data else None
        deleted = await asyncio.to_thread(_orchestrator(request).clean_queues, hours)
        return {"deleted": deleted}

    # --- ENQUEUE ENDPOINTS ---

    @app.post("/jobs/generation", status_code=201)
    async def enqueue_generation(data: GenerationRequest, request: Request):
        job_id = await asyncio.to_thread(
            _orchestrator(request).enqueue_generation, data.payload, data.priority
        )
        return {"id": job_id, "queue": GENERATION_QUEUE, "status": "waiting"}

    @app.post("/jobs/publish", status_code=201)
    async def enqueue_publish(data: PublishRequest, request: Request):
        job_id = await asyncio.to_thread(
            _orchestrator(request).enqueue_publish, data.payload, data.priority
        )
        return {"id": job_id, "queue": PUBLISH_QUEUE, "status": "waiting"}

    return app
