from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from .domain import Job


class JobView(BaseModel):
    job_id: str
    type: str
    payload: dict[str, Any]
    priority: int
    progress: int
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    fail_reason: Optional[str] = None
    locked_at: Optional[datetime] = None
    state: str
    status: str

    @classmethod
    def from_job(cls, job: Job, lock_lifetime: float | None = None) -> "JobView":
        state = job.state(lock_lifetime=lock_lifetime)
        return cls(
            job_id=job.id,
            type=job.type,
            payload=job.payload,
            priority=job.priority,
            progress=job.progress,
            next_run_at=job.next_run_at,
            last_run_at=job.last_run_at,
            last_finished_at=job.last_finished_at,
            failed_at=job.failed_at,
            fail_reason=job.fail_reason,
            locked_at=job.locked_at,
            state=state.value,
            status=job.status(lock_lifetime=lock_lifetime),
        )


class JobResponse(BaseModel):
    job: JobView


class JobListResponse(BaseModel):
    jobs: List[JobView]


class JobCreatedResponse(BaseModel):
    job_id: str
    message: str


class JobCancelledResponse(BaseModel):
    message: str


class BatchGenerateImagesRequest(BaseModel):
    storyboard_id: str
    frame_indices: List[int]
    aspect_ratio: str = Field(default="1:1", description="Aspect ratio for generated images")


class CompileVideoRequest(BaseModel):
    storyboard_id: str
    video_urls: List[str]
    music_url: Optional[str] = Field(default=None, description="YouTube URL for background music")
    audio_start_time: float = Field(default=0.0, ge=0, description="Music start offset in seconds")
