from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime in the job tables is stored this way."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobType(str, Enum):
    BATCH_GENERATE_IMAGES = "batch-generate-images"
    COMPILE_VIDEO = "compile-video"
    CLEANUP_OLD_JOBS = "cleanup-old-jobs"


class JobState(str, Enum):
    QUEUED = "queued"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


STATUS_BY_STATE = {
    JobState.QUEUED: "pending",
    JobState.SCHEDULED: "pending",
    JobState.RUNNING: "running",
    JobState.COMPLETED: "completed",
    JobState.FAILED: "failed",
}


class Job(BaseModel):
    id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    schedule: Optional[str] = None
    next_run_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    progress: int = 0
    last_run_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    fail_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def recurring(self) -> bool:
        return bool(self.schedule)

    def state(self, now: datetime | None = None, lock_lifetime: float | None = None) -> JobState:
        now = now or utcnow()
        if self.locked_at is not None:
            expired = lock_lifetime is not None and self.locked_at < now - timedelta(seconds=lock_lifetime)
            if not expired:
                return JobState.RUNNING
        if self.failed_at is not None:
            return JobState.FAILED
        if self.last_finished_at is not None and self.next_run_at is None:
            return JobState.COMPLETED
        if self.next_run_at is not None and self.next_run_at > now:
            return JobState.SCHEDULED
        return JobState.QUEUED

    def status(self, now: datetime | None = None, lock_lifetime: float | None = None) -> str:
        return STATUS_BY_STATE[self.state(now, lock_lifetime)]


class BatchGenerateImagesPayload(BaseModel):
    user_id: Optional[str] = None
    storyboard_id: str
    frame_indices: List[int]
    aspect_ratio: str = "1:1"

    @field_validator("frame_indices")
    @classmethod
    def validate_indices(cls, value: List[int]) -> List[int]:
        if not value:
            raise ValueError("frame_indices must not be empty")
        return value


class CompileVideoPayload(BaseModel):
    user_id: Optional[str] = None
    storyboard_id: str
    video_urls: List[str]
    music_url: Optional[str] = None
    audio_start_time: float = Field(default=0.0, ge=0)

    @field_validator("video_urls")
    @classmethod
    def validate_urls(cls, value: List[str]) -> List[str]:
        cleaned = [url.strip() for url in value if url and url.strip()]
        if not cleaned:
            raise ValueError("video_urls must not be empty")
        return cleaned

    @field_validator("music_url")
    @classmethod
    def blank_music_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class Frame(BaseModel):
    frame: int
    scene: str = ""
    visual_description: str
    dialogue: Optional[str] = None
    image_url: Optional[str] = None
    image_prompt: Optional[str] = None
    image_aspect_ratio: Optional[str] = None
    video_url: Optional[str] = None
    generated_at: Optional[datetime] = None


class Storyboard(BaseModel):
    id: str
    user_id: Optional[str] = None
    title: str = ""
    frames: List[Frame] = Field(default_factory=list)
    compiled_video_url: Optional[str] = None
    music_source_url: Optional[str] = None
    music_start_time: Optional[float] = None
    updated_at: datetime = Field(default_factory=utcnow)
