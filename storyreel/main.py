from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from pydantic import ValidationError

from storyreel.config import Settings, get_settings
from storyreel.errors import JobAlreadyFinishedError, JobNotFoundError
from storyreel.jobs.registry import Worker, build_worker
from storyreel.models.api import (
    BatchGenerateImagesRequest,
    CompileVideoRequest,
    JobCancelledResponse,
    JobCreatedResponse,
    JobListResponse,
    JobResponse,
    JobView,
)
from storyreel.models.domain import BatchGenerateImagesPayload, CompileVideoPayload, Job, JobState, JobType
from storyreel.storage.job_store import JobFilter

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
log = logging.getLogger("storyreel.api")

_worker: Worker | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    global _worker
    yield
    if _worker is not None:
        _worker.stop()
        _worker = None


app = FastAPI(title="storyreel jobs", lifespan=lifespan)

STATE_BY_STATUS = {
    "pending": JobState.QUEUED,
    "running": JobState.RUNNING,
    "completed": JobState.COMPLETED,
    "failed": JobState.FAILED,
}


def require_user_id(x_user_id: str = Header(default=None, alias="X-User-ID")) -> str:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-ID header required")
    return x_user_id


def get_worker(settings: Settings = Depends(get_settings)) -> Worker:
    global _worker
    if _worker is None:
        worker = build_worker(settings)
        if settings.scheduler_enabled:
            worker.start()
        _worker = worker
    return _worker


def _view(worker: Worker, job: Job) -> JobView:
    return JobView.from_job(job, lock_lifetime=worker.store.lock_lifetime_seconds)


def _owned_job(worker: Worker, job_id: str, user_id: str) -> Job:
    jobs = worker.store.find(JobFilter(job_id=job_id, payload={"user_id": user_id}), limit=1)
    if not jobs:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return jobs[0]


@app.get("/jobs", response_model=JobListResponse)
def list_jobs(
    status_filter: Optional[str] = Query(default=None, alias="status", pattern="^(pending|running|completed|failed)$"),
    limit: int = Query(default=50, ge=1, le=500),
    user_id: str = Depends(require_user_id),
    worker: Worker = Depends(get_worker),
) -> JobListResponse:
    job_filter = JobFilter(
        state=STATE_BY_STATUS.get(status_filter) if status_filter else None,
        payload={"user_id": user_id},
    )
    jobs = worker.store.find(job_filter, limit=limit)
    return JobListResponse(jobs=[_view(worker, job) for job in jobs])


@app.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(
    job_id: str,
    user_id: str = Depends(require_user_id),
    worker: Worker = Depends(get_worker),
) -> JobResponse:
    return JobResponse(job=_view(worker, _owned_job(worker, job_id, user_id)))


@app.delete("/jobs/{job_id}", response_model=JobCancelledResponse)
def cancel_job(
    job_id: str,
    user_id: str = Depends(require_user_id),
    worker: Worker = Depends(get_worker),
) -> JobCancelledResponse:
    _owned_job(worker, job_id, user_id)
    try:
        worker.scheduler.cancel(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except JobAlreadyFinishedError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot cancel a completed job") from exc
    log.info("job cancelled", extra={"job_id": job_id, "user_id": user_id})
    return JobCancelledResponse(message="Job cancelled")


@app.post("/jobs/batch-generate-images", response_model=JobCreatedResponse, status_code=status.HTTP_202_ACCEPTED)
def create_batch_images_job(
    request: BatchGenerateImagesRequest,
    user_id: str = Depends(require_user_id),
    worker: Worker = Depends(get_worker),
) -> JobCreatedResponse:
    try:
        payload = BatchGenerateImagesPayload(user_id=user_id, **request.model_dump())
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="frame_indices must not be empty") from exc
    job_id = worker.scheduler.now(JobType.BATCH_GENERATE_IMAGES.value, payload.model_dump(mode="json"))
    log.info(
        "batch image job created",
        extra={"job_id": job_id, "user_id": user_id, "storyboard_id": payload.storyboard_id, "frames": len(payload.frame_indices)},
    )
    return JobCreatedResponse(job_id=job_id, message=f"Job created to generate {len(payload.frame_indices)} images")


@app.post("/jobs/compile-video", response_model=JobCreatedResponse, status_code=status.HTTP_202_ACCEPTED)
def create_compile_video_job(
    request: CompileVideoRequest,
    user_id: str = Depends(require_user_id),
    worker: Worker = Depends(get_worker),
) -> JobCreatedResponse:
    try:
        payload = CompileVideoPayload(user_id=user_id, **request.model_dump())
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="video_urls must not be empty") from exc
    job_id = worker.scheduler.now(JobType.COMPILE_VIDEO.value, payload.model_dump(mode="json"))
    log.info(
        "compile video job created",
        extra={
            "job_id": job_id,
            "user_id": user_id,
            "storyboard_id": payload.storyboard_id,
            "videos": len(payload.video_urls),
            "with_music": bool(payload.music_url),
        },
    )
    return JobCreatedResponse(job_id=job_id, message=f"Job created to compile {len(payload.video_urls)} videos")
