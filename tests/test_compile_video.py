import os

import httpx
import pytest

from conftest import make_storyboard, read_media, run_until_idle, video_transport
from storyreel.jobs.compile_video import VideoCompilationHandler
from storyreel.models.domain import JobState

CLIPS = {
    "https://cdn.example/v1.mp4": (5.0, True),
    "https://cdn.example/v2.mp4": (4.0, True),
    "https://cdn.example/v3.mp4": (6.0, True),
}
SILENT_CLIPS = {url.replace("cdn", "silent"): (duration, False) for url, (duration, _) in CLIPS.items()}
MUSIC_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


@pytest.fixture
def dirs(tmp_path):
    return {"videos": str(tmp_path / "videos"), "tmp": str(tmp_path / "tmp"), "audio": str(tmp_path / "audio")}


@pytest.fixture
def compile_scheduler(scheduler, storyboards, media, audio_service, dirs):
    def build(clips=None, failing=()):
        handler = VideoCompilationHandler(
            storyboards,
            media,
            audio_service,
            storage_dir=dirs["videos"],
            public_url_base="http://localhost:8000/videos/",
            temp_dir=dirs["tmp"],
            http_client=httpx.Client(transport=video_transport({**CLIPS, **SILENT_CLIPS, **(clips or {})}, failing)),
        )
        scheduler.define("compile-video", handler)
        return scheduler

    return build


def _payload(urls=None, **overrides):
    payload = {"user_id": "u1", "storyboard_id": "sb1", "video_urls": urls or list(CLIPS)}
    payload.update(overrides)
    return payload


def _leftovers(path):
    return os.listdir(path) if os.path.isdir(path) else []


def test_compiles_without_music(compile_scheduler, storyboards, store, runner, dirs):
    storyboards.save(make_storyboard())
    scheduler = compile_scheduler()
    job_id = scheduler.now("compile-video", _payload())

    run_until_idle(scheduler, cycles=2)

    job = store.get(job_id)
    assert job.state() == JobState.COMPLETED
    assert job.progress == 100
    output = os.path.join(dirs["videos"], "sb1.mp4")
    assert read_media(output) == (15.0, True)
    assert storyboards.get("sb1").compiled_video_url == "http://localhost:8000/videos/sb1.mp4"
    assert storyboards.get("sb1").music_source_url is None
    concat = runner.calls_for("ffmpeg")[0]
    assert concat[concat.index("-c") + 1] == "copy"
    assert runner.calls_for("yt-dlp") == []
    assert _leftovers(dirs["tmp"]) == []


def test_music_is_mixed_under_existing_audio(compile_scheduler, storyboards, store, runner, dirs):
    storyboards.save(make_storyboard())
    scheduler = compile_scheduler()
    job_id = scheduler.now("compile-video", _payload(music_url=MUSIC_URL, audio_start_time=30))

    run_until_idle(scheduler, cycles=2)

    assert store.get(job_id).state() == JobState.COMPLETED
    trim = next(args for args in runner.calls_for("ffmpeg") if "-ss" in args)
    assert trim[trim.index("-ss") + 1] == "30"
    assert trim[trim.index("-t") + 1] == "15"
    mix = runner.calls_for("ffmpeg")[-1]
    graph = mix[mix.index("-filter_complex") + 1]
    assert "volume=0.7" in graph and "volume=0.3" in graph
    assert "amix=inputs=2:duration=first" in graph
    assert mix[mix.index("-c:v") + 1] == "copy"
    assert "-shortest" in mix

    duration, has_audio = read_media(os.path.join(dirs["videos"], "sb1.mp4"))
    assert duration <= 15.0 and has_audio
    storyboard = storyboards.get("sb1")
    assert storyboard.music_source_url == MUSIC_URL
    assert storyboard.music_start_time == 30
    assert _leftovers(dirs["tmp"]) == []
    assert _leftovers(dirs["audio"]) == []


def test_music_becomes_only_audio_for_silent_video(compile_scheduler, storyboards, store, runner):
    storyboards.save(make_storyboard())
    scheduler = compile_scheduler()
    job_id = scheduler.now("compile-video", _payload(urls=list(SILENT_CLIPS), music_url=MUSIC_URL))

    run_until_idle(scheduler, cycles=2)

    assert store.get(job_id).state() == JobState.COMPLETED
    mix = runner.calls_for("ffmpeg")[-1]
    assert "-filter_complex" not in mix
    assert mix[mix.index("1:a") - 1] == "-map"


def test_invalid_music_url_fails_before_any_download(compile_scheduler, storyboards, store, runner, dirs):
    storyboards.save(make_storyboard())
    scheduler = compile_scheduler()
    job_id = scheduler.now("compile-video", _payload(music_url="https://vimeo.com/123"))

    run_until_idle(scheduler, cycles=2)

    job = store.get(job_id)
    assert job.state() == JobState.FAILED
    assert "invalid music URL" in job.fail_reason
    assert runner.calls == []
    assert _leftovers(dirs["tmp"]) == []


def test_download_failure_names_the_clip(compile_scheduler, storyboards, store, runner, dirs):
    storyboards.save(make_storyboard())
    scheduler = compile_scheduler(failing=["https://cdn.example/v2.mp4"])
    job_id = scheduler.now("compile-video", _payload())

    run_until_idle(scheduler, cycles=2)

    job = store.get(job_id)
    assert job.state() == JobState.FAILED
    assert job.fail_reason.startswith("download failed: video 2/3")
    assert runner.calls == []
    assert _leftovers(dirs["tmp"]) == []
    assert storyboards.get("sb1").compiled_video_url is None


def test_concat_failure_cleans_up(compile_scheduler, storyboards, store, runner, dirs):
    storyboards.save(make_storyboard())
    runner.fail_when(lambda tool, args: tool == "ffmpeg" and "concat" in args, "Invalid data found")
    scheduler = compile_scheduler()
    job_id = scheduler.now("compile-video", _payload())

    run_until_idle(scheduler, cycles=2)

    job = store.get(job_id)
    assert job.state() == JobState.FAILED
    assert job.fail_reason == "concat failed: ffmpeg exited with code 1: Invalid data found"
    assert _leftovers(dirs["tmp"]) == []
    assert not os.path.exists(os.path.join(dirs["videos"], "sb1.mp4"))


def test_audio_window_past_end_fails_job(compile_scheduler, storyboards, store, dirs):
    storyboards.save(make_storyboard())
    scheduler = compile_scheduler()
    job_id = scheduler.now("compile-video", _payload(music_url=MUSIC_URL, audio_start_time=500))

    run_until_idle(scheduler, cycles=2)

    job = store.get(job_id)
    assert job.state() == JobState.FAILED
    assert job.fail_reason.startswith("audio failed:")
    assert "exceeds audio duration" in job.fail_reason
    assert _leftovers(dirs["tmp"]) == []
    assert _leftovers(dirs["audio"]) == []
    assert not os.path.exists(os.path.join(dirs["videos"], "sb1.mp4"))


def test_persist_failure_removes_output(compile_scheduler, store, dirs):
    scheduler = compile_scheduler()
    job_id = scheduler.now("compile-video", _payload())

    run_until_idle(scheduler, cycles=2)

    job = store.get(job_id)
    assert job.state() == JobState.FAILED
    assert job.fail_reason.startswith("persist failed")
    assert not os.path.exists(os.path.join(dirs["videos"], "sb1.mp4"))
    assert _leftovers(dirs["tmp"]) == []


def test_blank_video_list_is_invalid(compile_scheduler, storyboards, store, runner):
    storyboards.save(make_storyboard())
    scheduler = compile_scheduler()
    job_id = scheduler.now("compile-video", _payload(urls=["  "]))

    run_until_idle(scheduler, cycles=2)

    job = store.get(job_id)
    assert job.state() == JobState.FAILED
    assert "video_urls must not be empty" in job.fail_reason
    assert runner.calls == []
