from storyreel.config import Settings


def test_concurrency_defaults():
    settings = Settings()

    assert settings.concurrency_for("batch-generate-images") == 3
    assert settings.concurrency_for("compile-video") == 2
    assert settings.concurrency_for("cleanup-old-jobs") == settings.default_concurrency
    assert settings.lock_lifetime_seconds == 600
    assert settings.cleanup_schedule == "0 3 * * *"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("STORYREEL_MAX_CONCURRENCY", "8")
    monkeypatch.setenv("STORYREEL_JOB_CONCURRENCY", '{"compile-video": 1}')
    monkeypatch.setenv("STORYREEL_MUSIC_WEIGHT", "0.25")

    settings = Settings()

    assert settings.max_concurrency == 8
    assert settings.concurrency_for("compile-video") == 1
    assert settings.concurrency_for("batch-generate-images") == settings.default_concurrency
    assert settings.music_weight == 0.25
