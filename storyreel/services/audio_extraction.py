from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Callable, Optional
from uuid import uuid4

from storyreel.errors import AudioExtractionError, AudioWindowError, ProcessError
from storyreel.services.artifacts import remove_quietly
from storyreel.services.media import MediaToolkit

YOUTUBE_URL_RE = re.compile(r"^(https?://)?(www\.)?(youtube\.com|youtu\.be)/.+$")


def is_valid_source_url(url: str | None) -> bool:
    return bool(url) and bool(YOUTUBE_URL_RE.match(url.strip()))


@dataclass
class ExtractedAudio:
    path: str
    duration: float


class AudioExtractionService:
    def __init__(
        self,
        media: MediaToolkit,
        work_dir: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.media = media
        self.work_dir = work_dir
        self.log = logger or logging.getLogger(__name__)

    def extract(
        self,
        source_url: str,
        start_offset: float = 0.0,
        target_duration: float | None = None,
        checkpoint: Callable[[], None] | None = None,
    ) -> ExtractedAudio:
        """Download the best audio track of ``source_url`` and cut the requested window.

        The returned file belongs to the caller, who releases it with ``cleanup``.
        """
        if not is_valid_source_url(source_url):
            raise AudioExtractionError(f"invalid audio source URL: {source_url!r}")
        if start_offset < 0:
            raise AudioExtractionError(f"start offset must not be negative: {start_offset}")
        checkpoint = checkpoint or (lambda: None)

        os.makedirs(self.work_dir, exist_ok=True)
        token = uuid4().hex[:12]
        raw_path = os.path.join(self.work_dir, f"raw_{token}.m4a")
        processed_path = os.path.join(self.work_dir, f"processed_{token}.m4a")

        try:
            checkpoint()
            self.log.info("downloading background audio", extra={"source_url": source_url})
            self.media.download_audio(source_url.strip(), raw_path)
            if not os.path.exists(raw_path):
                raise AudioExtractionError("audio download produced no file")

            checkpoint()
            total_duration = self.media.probe_duration(raw_path)
            self.log.debug("background audio downloaded", extra={"duration": total_duration})
            if start_offset >= total_duration:
                raise AudioWindowError(
                    f"start offset {start_offset}s exceeds audio duration {total_duration}s"
                )

            if start_offset <= 0 and not target_duration:
                return ExtractedAudio(path=raw_path, duration=total_duration)

            cut_duration = target_duration or total_duration - start_offset
            checkpoint()
            self.log.info(
                "trimming background audio",
                extra={"start_offset": start_offset, "duration": cut_duration},
            )
            self.media.trim_audio(raw_path, processed_path, start_offset, target_duration)
            remove_quietly(raw_path, self.log)
            return ExtractedAudio(path=processed_path, duration=cut_duration)
        except (ProcessError, ValueError) as exc:
            self._discard(raw_path, processed_path)
            raise AudioExtractionError(f"audio extraction failed: {exc}") from exc
        except BaseException:
            self._discard(raw_path, processed_path)
            raise

    def cleanup(self, path: str | None) -> None:
        remove_quietly(path, self.log)

    def _discard(self, *paths: str) -> None:
        for path in paths:
            remove_quietly(path, self.log)
