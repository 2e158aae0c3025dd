from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.orm import sessionmaker

from storyreel.clients.fal import FalClient, GenerationProvider
from storyreel.config import Settings
from storyreel.events.publisher import JobEventPublisher
from storyreel.jobs.batch_images import BatchImageGenerationHandler
from storyreel.jobs.cleanup import CleanupHandler
from storyreel.jobs.compile_video import VideoCompilationHandler
from storyreel.models.domain import JobType
from storyreel.queue.scheduler import JobScheduler
from storyreel.services.audio_extraction import AudioExtractionService
from storyreel.services.media import MediaToolkit
from storyreel.services.process_runner import ProcessRunner, Runner
from storyreel.storage.database import create_session_factory
from storyreel.storage.job_store import JobStore
from storyreel.storage.repository import SqlStoryboardRepository, StoryboardRepository


@dataclass
class Worker:
    settings: Settings
    store: JobStore
    scheduler: JobScheduler
    storyboards: StoryboardRepository
    events: JobEventPublisher | None = None

    def start(self) -> None:
        self.scheduler.start()
        self.scheduler.every(self.settings.cleanup_schedule, JobType.CLEANUP_OLD_JOBS.value)

    def stop(self, timeout: float = 30.0) -> None:
        self.scheduler.stop(timeout)
        if self.events is not None:
            self.events.close()


def build_worker(
    settings: Settings,
    session_factory: sessionmaker | None = None,
    storyboards: StoryboardRepository | None = None,
    provider: GenerationProvider | None = None,
    runner: Runner | None = None,
    http_client: httpx.Client | None = None,
    logger: Optional[logging.Logger] = None,
) -> Worker:
    log = logger or logging.getLogger("storyreel.worker")
    session_factory = session_factory or create_session_factory(settings.database_url)
    store = JobStore(session_factory, lock_lifetime_seconds=settings.lock_lifetime_seconds)
    storyboards = storyboards or SqlStoryboardRepository(session_factory)
    provider = provider or FalClient(
        api_key=settings.fal_api_key,
        text_to_image_model=settings.text_to_image_model,
        image_to_video_model=settings.image_to_video_model,
        base_url=settings.fal_base_url,
        timeout=settings.generation_timeout,
    )
    media = MediaToolkit(
        runner or ProcessRunner(timeout=settings.process_timeout_seconds),
        ffmpeg=settings.ffmpeg_binary,
        ffprobe=settings.ffprobe_binary,
        ytdlp=settings.ytdlp_binary,
    )
    audio = AudioExtractionService(media, work_dir=os.path.join(settings.temp_dir, "audio"))

    scheduler = JobScheduler.from_settings(store, settings)
    register_handlers(scheduler, store, storyboards, provider, media, audio, settings, http_client)
    scheduler.on("*", _log_event(log))

    events = None
    if settings.kafka_enabled:
        try:
            events = JobEventPublisher.from_settings(settings, logger=log)
        except Exception:  # pragma: no cover - best effort logging
            log.warning(
                "job event publisher unavailable",
                extra={"topic": settings.kafka_events_topic},
                exc_info=True,
            )
        else:
            scheduler.on("*", lambda event, job, error: events.publish(event, job, error))
    return Worker(settings=settings, store=store, scheduler=scheduler, storyboards=storyboards, events=events)


def register_handlers(
    scheduler: JobScheduler,
    store: JobStore,
    storyboards: StoryboardRepository,
    provider: GenerationProvider,
    media: MediaToolkit,
    audio: AudioExtractionService,
    settings: Settings,
    http_client: httpx.Client | None = None,
) -> None:
    scheduler.define(
        JobType.BATCH_GENERATE_IMAGES.value,
        BatchImageGenerationHandler(storyboards, provider),
        concurrency=settings.concurrency_for(JobType.BATCH_GENERATE_IMAGES.value),
    )
    scheduler.define(
        JobType.COMPILE_VIDEO.value,
        VideoCompilationHandler(
            storyboards,
            media,
            audio,
            storage_dir=settings.storage_dir,
            public_url_base=settings.public_url_base,
            temp_dir=settings.temp_dir,
            download_timeout=settings.download_timeout,
            video_audio_weight=settings.video_audio_weight,
            music_weight=settings.music_weight,
            http_client=http_client,
        ),
        concurrency=settings.concurrency_for(JobType.COMPILE_VIDEO.value),
    )
    scheduler.define(
        JobType.CLEANUP_OLD_JOBS.value,
        CleanupHandler(store, retention_hours=settings.job_retention_hours),
        concurrency=1,
    )


def _log_event(log: logging.Logger):
    def callback(event, job, error):
        extra = {"event": event, "job_id": job.id, "job_type": job.type}
        if error is not None:
            log.error("job %s: %s", event, error, extra=extra)
        else:
            log.debug("job %s", event, extra=extra)

    return callback
