from __future__ import annotations

import logging
import pathlib
import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

import httpx
import pytest

from storyreel.clients.fal import GeneratedImage, GenerationResult
from storyreel.errors import GenerationError, ProcessError
from storyreel.models.domain import Frame, Storyboard, utcnow
from storyreel.queue.scheduler import JobScheduler
from storyreel.services.audio_extraction import AudioExtractionService
from storyreel.services.media import MediaToolkit
from storyreel.services.process_runner import ProcessResult
from storyreel.storage.database import create_session_factory
from storyreel.storage.job_store import JobStore
from storyreel.storage.repository import InMemoryStoryboardRepository


class Clock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or utcnow()

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


def write_media(path: str, duration: float, audio: bool) -> None:
    pathlib.Path(path).write_text(f"duration={duration} audio={int(audio)}")


def read_media(path: str) -> tuple[float, bool]:
    fields = dict(part.split("=") for part in pathlib.Path(path).read_text().split())
    return float(fields["duration"]), fields["audio"] == "1"


class FakeRunner:
    """Stands in for ffmpeg/ffprobe/yt-dlp; media files are small text files
    carrying their duration and whether they hold an audio stream."""

    def __init__(self, source_audio_duration: float = 200.0) -> None:
        self.source_audio_duration = source_audio_duration
        self.calls: List[tuple[str, List[str]]] = []
        self.failures: List[tuple[Callable[[str, List[str]], bool], str]] = []
        self._lock = threading.Lock()

    def fail_when(self, predicate: Callable[[str, List[str]], bool], message: str = "boom") -> None:
        self.failures.append((predicate, message))

    def calls_for(self, tool: str) -> List[List[str]]:
        return [args for name, args in self.calls if name == tool]

    def run(self, tool: str, args: Sequence[str]) -> ProcessResult:
        args = [str(arg) for arg in args]
        with self._lock:
            self.calls.append((tool, args))
        for predicate, message in self.failures:
            if predicate(tool, args):
                raise ProcessError(tool, 1, message)
        if tool == "ffprobe":
            duration, audio = read_media(args[-1])
            if "stream=codec_type" in args:
                return ProcessResult("audio\n" if audio else "", "", 0)
            return ProcessResult(f"{duration}\n", "", 0)
        if tool == "yt-dlp":
            write_media(args[args.index("-o") + 1], self.source_audio_duration, True)
        elif tool == "ffmpeg":
            self._ffmpeg(args)
        return ProcessResult("", "", 0)

    def _ffmpeg(self, args: List[str]) -> None:
        output = args[-1]
        if "concat" in args:
            manifest = args[args.index("-i") + 1]
            clips = [
                line.strip()[len("file '"):-1]
                for line in pathlib.Path(manifest).read_text().splitlines()
                if line.strip()
            ]
            media = [read_media(clip) for clip in clips]
            write_media(output, sum(d for d, _ in media), all(a for _, a in media))
        elif "-map" in args:
            inputs = [args[i + 1] for i, arg in enumerate(args) if arg == "-i"]
            video_duration, _ = read_media(inputs[0])
            audio_duration, _ = read_media(inputs[1])
            write_media(output, min(video_duration, audio_duration), True)
        elif "-ss" in args:
            source = args[args.index("-i") + 1]
            total, _ = read_media(source)
            start = float(args[args.index("-ss") + 1])
            duration = float(args[args.index("-t") + 1]) if "-t" in args else total - start
            write_media(output, min(duration, total - start), True)


class FakeProvider:
    def __init__(self, failing_prompts: Sequence[str] = (), empty_prompts: Sequence[str] = ()) -> None:
        self.failing_prompts = set(failing_prompts)
        self.empty_prompts = set(empty_prompts)
        self.calls: List[tuple[str, str, Optional[str]]] = []

    def generate(self, prompt, mode="text-to-image", aspect_ratio=None, reference_images=None):
        self.calls.append((prompt, mode, aspect_ratio))
        if prompt in self.failing_prompts:
            raise GenerationError(f"provider rejected {prompt!r}")
        if prompt in self.empty_prompts:
            return GenerationResult(images=[])
        slug = prompt.lower().replace(" ", "-")
        return GenerationResult(images=[GeneratedImage(url=f"https://cdn.example/{slug}.png")])


def video_transport(clips: dict[str, tuple[float, bool]], failing: Sequence[str] = ()) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url in failing or url not in clips:
            return httpx.Response(404, text="missing")
        duration, audio = clips[url]
        return httpx.Response(200, content=f"duration={duration} audio={int(audio)}".encode())

    return httpx.MockTransport(handler)


def make_storyboard(storyboard_id: str = "sb1", user_id: str = "u1", frames: int = 3) -> Storyboard:
    return Storyboard(
        id=storyboard_id,
        user_id=user_id,
        title="Night market",
        frames=[
            Frame(frame=index + 1, scene=f"scene {index + 1}", visual_description=f"frame {index + 1}")
            for index in range(frames)
        ],
    )


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def session_factory(tmp_path):
    return create_session_factory(f"sqlite:///{tmp_path / 'jobs.db'}")


@pytest.fixture
def store(session_factory, clock) -> JobStore:
    return JobStore(session_factory, lock_lifetime_seconds=600, clock=clock)


@pytest.fixture
def scheduler(store) -> JobScheduler:
    instance = JobScheduler(store, name="test", poll_interval=0.05, max_concurrency=5, default_concurrency=2)
    yield instance
    instance.stop(timeout=5)


@pytest.fixture
def storyboards() -> InMemoryStoryboardRepository:
    return InMemoryStoryboardRepository()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def media(runner) -> MediaToolkit:
    return MediaToolkit(runner)


@pytest.fixture
def audio_service(media, tmp_path) -> AudioExtractionService:
    return AudioExtractionService(media, work_dir=str(tmp_path / "audio"), logger=logging.getLogger("test.audio"))


def run_until_idle(scheduler: JobScheduler, cycles: int = 20) -> None:
    for _ in range(cycles):
        scheduler.poll_once()
        assert scheduler.wait_idle(timeout=10)
