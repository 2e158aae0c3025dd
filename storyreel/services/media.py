from __future__ import annotations

import logging
import math
from typing import Optional

from storyreel.services.process_runner import Runner


class MediaToolkit:
    """ffmpeg / ffprobe / yt-dlp invocations used by the compile pipeline."""

    def __init__(
        self,
        runner: Runner,
        ffmpeg: str = "ffmpeg",
        ffprobe: str = "ffprobe",
        ytdlp: str = "yt-dlp",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.runner = runner
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.ytdlp = ytdlp
        self.log = logger or logging.getLogger(__name__)

    def concat(self, manifest_path: str, output_path: str) -> None:
        self.runner.run(
            self.ffmpeg,
            ["-y", "-f", "concat", "-safe", "0", "-i", manifest_path, "-c", "copy", output_path],
        )

    def probe_duration(self, path: str) -> float:
        result = self.runner.run(
            self.ffprobe,
            [
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
                path,
            ],
        )
        raw = result.stdout.strip()
        try:
            duration = float(raw.splitlines()[0]) if raw else math.nan
        except ValueError:
            duration = math.nan
        if math.isnan(duration) or duration <= 0:
            raise ValueError(f"could not read duration of {path}: {raw!r}")
        return duration

    def has_audio_stream(self, path: str) -> bool:
        result = self.runner.run(
            self.ffprobe,
            [
                "-v",
                "error",
                "-select_streams",
                "a",
                "-show_entries",
                "stream=codec_type",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
                path,
            ],
        )
        return "audio" in result.stdout.split()

    def mix_background(
        self,
        video_path: str,
        audio_path: str,
        output_path: str,
        has_audio: bool,
        video_weight: float = 0.7,
        music_weight: float = 0.3,
    ) -> None:
        args = ["-y", "-i", video_path, "-i", audio_path]
        if has_audio:
            graph = (
                f"[0:a]volume={video_weight}[a0];[1:a]volume={music_weight}[a1];"
                "[a0][a1]amix=inputs=2:duration=first[aout]"
            )
            args += ["-filter_complex", graph, "-map", "0:v", "-map", "[aout]"]
        else:
            args += ["-map", "0:v", "-map", "1:a"]
        args += ["-c:v", "copy", "-c:a", "aac", "-shortest", output_path]
        self.runner.run(self.ffmpeg, args)

    def trim_audio(self, source_path: str, output_path: str, start: float, duration: float | None) -> None:
        args = ["-y", "-ss", _seconds(start)]
        if duration:
            args += ["-t", _seconds(duration)]
        args += ["-i", source_path, "-c", "copy", output_path]
        self.runner.run(self.ffmpeg, args)

    def download_audio(self, url: str, output_path: str) -> None:
        self.runner.run(
            self.ytdlp,
            ["-f", "bestaudio", "-x", "--audio-format", "m4a", "-o", output_path, url],
        )


def _seconds(value: float) -> str:
    return f"{value:.3f}".rstrip("0").rstrip(".") or "0"
