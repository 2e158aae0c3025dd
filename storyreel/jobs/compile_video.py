from __future__ import annotations

import logging
import os
import shutil
from typing import Any, Callable, List, Optional

import httpx
from pydantic import ValidationError

from storyreel.errors import (
    AudioExtractionError,
    JobValidationError,
    PipelineStepError,
    ProcessError,
)
from storyreel.models.domain import CompileVideoPayload, Job
from storyreel.queue.scheduler import JobContext
from storyreel.services.artifacts import TempArtifacts, remove_quietly
from storyreel.services.audio_extraction import AudioExtractionService, is_valid_source_url
from storyreel.services.media import MediaToolkit
from storyreel.storage.repository import StoryboardRepository

STEP_ERRORS = (ProcessError, AudioExtractionError, httpx.HTTPError, OSError, ValueError)


class VideoCompilationHandler:
    """Concatenates frame videos into one compiled video, optionally with background music.

    Any failing step aborts the job with a PipelineStepError naming the step.
    Temporary files are removed on every exit path, and the final file is only
    moved into the storage directory once it is complete.
    """

    def __init__(
        self,
        storyboards: StoryboardRepository,
        media: MediaToolkit,
        audio: AudioExtractionService,
        storage_dir: str,
        public_url_base: str,
        temp_dir: str,
        download_timeout: float = 120.0,
        video_audio_weight: float = 0.7,
        music_weight: float = 0.3,
        http_client: httpx.Client | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.storyboards = storyboards
        self.media = media
        self.audio = audio
        self.storage_dir = storage_dir
        self.public_url_base = public_url_base.rstrip("/")
        self.temp_dir = temp_dir
        self.download_timeout = download_timeout
        self.video_audio_weight = video_audio_weight
        self.music_weight = music_weight
        self.http_client = http_client
        self.log = logger or logging.getLogger(__name__)

    def output_path(self, storyboard_id: str) -> str:
        return os.path.join(self.storage_dir, f"{storyboard_id}.mp4")

    def public_url(self, storyboard_id: str) -> str:
        return f"{self.public_url_base}/{storyboard_id}.mp4"

    def __call__(self, job: Job, context: JobContext) -> None:
        try:
            payload = CompileVideoPayload.model_validate(job.payload)
        except ValidationError as exc:
            raise JobValidationError(f"invalid compile-video payload: {exc}") from exc
        if payload.music_url and not is_valid_source_url(payload.music_url):
            raise JobValidationError(f"invalid music URL: {payload.music_url}")
        context.report_progress(5)

        self._step("storage", os.makedirs, self.storage_dir, exist_ok=True)
        context.report_progress(10)

        log_extra = {"job_id": job.id, "storyboard_id": payload.storyboard_id}
        output_path = self.output_path(payload.storyboard_id)
        with TempArtifacts(self.temp_dir, f"compile_{payload.storyboard_id}", logger=self.log) as temp:
            clips = self._download_clips(payload.video_urls, temp, context, log_extra)

            manifest_path = temp.path("concat.txt")
            self._step("manifest", self._write_manifest, manifest_path, clips)
            context.report_progress(45)

            context.checkpoint()
            base_path = temp.path("base.mp4")
            self.log.info("concatenating frame videos", extra={**log_extra, "clips": len(clips)})
            self._step("concat", self.media.concat, manifest_path, base_path)
            context.report_progress(60)

            context.checkpoint()
            duration = self._step("probe", self.media.probe_duration, base_path)
            self.log.info("compiled base video", extra={**log_extra, "duration": duration})
            context.report_progress(65)

            if payload.music_url:
                self._add_music(payload, base_path, duration, output_path, temp, context, log_extra)
            else:
                self._step("publish", shutil.move, base_path, output_path)
            context.report_progress(90)

            public_url = self.public_url(payload.storyboard_id)
            self._persist(payload, public_url, output_path)
            context.report_progress(95)
        context.report_progress(100)
        self.log.info("video compiled", extra={**log_extra, "url": public_url})

    def _download_clips(
        self,
        urls: List[str],
        temp: TempArtifacts,
        context: JobContext,
        log_extra: dict[str, Any],
    ) -> List[str]:
        total = len(urls)
        clips: List[str] = []
        client = self.http_client or httpx.Client(timeout=self._timeout(), follow_redirects=True)
        try:
            for index, url in enumerate(urls):
                context.checkpoint()
                self.log.info(
                    "downloading frame video",
                    extra={**log_extra, "position": index + 1, "total": total, "url": url[:80]},
                )
                path = temp.path(f"video_{index}.mp4")
                try:
                    self._download(client, url, path)
                except STEP_ERRORS as exc:
                    raise PipelineStepError("download", f"video {index + 1}/{total}: {exc}") from exc
                clips.append(path)
                context.report_progress(10 + (index + 1) / total * 30)
        finally:
            if client is not self.http_client:
                client.close()
        return clips

    def _download(self, client: httpx.Client, url: str, path: str) -> None:
        with client.stream("GET", url) as resp:
            resp.raise_for_status()
            with open(path, "wb") as f:
                for chunk in resp.iter_bytes():
                    if chunk:
                        f.write(chunk)

    def _timeout(self) -> httpx.Timeout:
        read_timeout = max(10.0, float(self.download_timeout))
        return httpx.Timeout(connect=10.0, read=read_timeout, write=10.0, pool=read_timeout)

    def _write_manifest(self, path: str, clips: List[str]) -> None:
        with open(path, "w", encoding="utf-8") as f:
            for clip in clips:
                escaped = os.path.abspath(clip).replace("'", "'\\''")
                f.write(f"file '{escaped}'\n")

    def _add_music(
        self,
        payload: CompileVideoPayload,
        base_path: str,
        duration: float,
        output_path: str,
        temp: TempArtifacts,
        context: JobContext,
        log_extra: dict[str, Any],
    ) -> None:
        self.log.info("extracting background music", extra={**log_extra, "music_url": payload.music_url})
        audio = self._step(
            "audio",
            self.audio.extract,
            payload.music_url,
            start_offset=payload.audio_start_time,
            target_duration=duration,
            checkpoint=context.checkpoint,
        )
        temp.track(audio.path)
        context.report_progress(75)

        context.checkpoint()
        try:
            has_audio = self.media.has_audio_stream(base_path)
        except ProcessError:
            has_audio = False
        self.log.info("mixing background music", extra={**log_extra, "has_audio": has_audio})

        mixed_path = temp.path("mixed.mp4")
        self._step(
            "mix",
            self.media.mix_background,
            base_path,
            audio.path,
            mixed_path,
            has_audio,
            video_weight=self.video_audio_weight,
            music_weight=self.music_weight,
        )
        self._step("publish", shutil.move, mixed_path, output_path)
        remove_quietly(base_path, self.log)

    def _persist(self, payload: CompileVideoPayload, public_url: str, output_path: str) -> None:
        try:
            storyboard = self.storyboards.get(payload.storyboard_id)
            if storyboard is None:
                raise LookupError(f"storyboard {payload.storyboard_id} not found")
            storyboard.compiled_video_url = public_url
            if payload.music_url:
                storyboard.music_source_url = payload.music_url
                storyboard.music_start_time = payload.audio_start_time
            self.storyboards.save(storyboard)
        except Exception as exc:
            remove_quietly(output_path, self.log)
            raise PipelineStepError("persist", str(exc)) from exc

    def _step(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except STEP_ERRORS as exc:
            raise PipelineStepError(name, str(exc)) from exc
