from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError

from storyreel.clients.fal import TEXT_TO_IMAGE, GenerationProvider
from storyreel.errors import JobValidationError, StoryboardNotFoundError
from storyreel.models.domain import BatchGenerateImagesPayload, Frame, Job, utcnow
from storyreel.queue.scheduler import JobContext
from storyreel.storage.repository import StoryboardRepository


class BatchImageGenerationHandler:
    """Generates images for a subset of storyboard frames.

    A failing frame is logged and skipped; only errors outside the per-frame
    guard (bad payload, missing storyboard, save failure) fail the job.
    """

    def __init__(
        self,
        storyboards: StoryboardRepository,
        provider: GenerationProvider,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.storyboards = storyboards
        self.provider = provider
        self.log = logger or logging.getLogger(__name__)

    def __call__(self, job: Job, context: JobContext) -> None:
        try:
            payload = BatchGenerateImagesPayload.model_validate(job.payload)
        except ValidationError as exc:
            raise JobValidationError(f"invalid batch-generate-images payload: {exc}") from exc

        storyboard = self.storyboards.get(payload.storyboard_id, payload.user_id)
        if storyboard is None:
            raise StoryboardNotFoundError(
                f"storyboard {payload.storyboard_id} not found for user {payload.user_id}"
            )

        total = len(payload.frame_indices)
        generated = 0
        for done, frame_index in enumerate(payload.frame_indices, start=1):
            context.checkpoint()
            log_extra = {"job_id": job.id, "storyboard_id": storyboard.id, "frame_index": frame_index}
            if 0 <= frame_index < len(storyboard.frames):
                frame = storyboard.frames[frame_index]
                if self._generate_frame(frame, payload.aspect_ratio, log_extra):
                    generated += 1
            else:
                self.log.warning("frame index out of range, skipping", extra=log_extra)
            context.report_progress(done / total * 100)

        self.storyboards.save(storyboard)
        self.log.info(
            "batch image generation finished",
            extra={"job_id": job.id, "storyboard_id": storyboard.id, "generated": generated, "requested": total},
        )

    def _generate_frame(self, frame: Frame, aspect_ratio: str, log_extra: dict) -> bool:
        prompt = build_frame_prompt(frame)
        if not prompt:
            self.log.warning("frame has no visual description, skipping", extra=log_extra)
            return False
        self.log.info("generating frame image", extra={**log_extra, "prompt_excerpt": prompt[:50]})
        try:
            result = self.provider.generate(prompt, mode=TEXT_TO_IMAGE, aspect_ratio=aspect_ratio)
        except Exception as exc:
            self.log.warning("frame image generation failed", extra={**log_extra, "error": str(exc)})
            return False
        if not result.images:
            self.log.warning("provider returned no image for frame", extra=log_extra)
            return False
        frame.image_url = result.images[0].url
        frame.image_prompt = prompt
        frame.image_aspect_ratio = aspect_ratio
        frame.generated_at = utcnow()
        return True


def build_frame_prompt(frame: Frame) -> str:
    return (frame.visual_description or "").strip()
