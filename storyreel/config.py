from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STORYREEL_", env_file=".env", env_file_encoding="utf-8")

    app_name: str = "storyreel-jobs"
    host: str = "0.0.0.0"
    port: int = 8100

    database_url: str = "sqlite:///./storyreel.db"

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_name: str = ""
    poll_interval_seconds: float = 5.0
    lock_lifetime_seconds: float = 10 * 60
    max_concurrency: int = 5
    default_concurrency: int = 2
    job_concurrency: dict[str, int] = Field(
        default_factory=lambda: {"batch-generate-images": 3, "compile-video": 2}
    )
    cleanup_schedule: str = "0 3 * * *"
    job_retention_hours: float = 24.0

    # Compiled video output
    storage_dir: str = "/var/www/storyreel/storage/compiled-videos"
    public_url_base: str = "https://storyreel.local/storage/compiled-videos"
    temp_dir: str = "/tmp/storyreel"
    download_timeout: float = 120.0

    # External tools
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"
    ytdlp_binary: str = "yt-dlp"
    process_timeout_seconds: float | None = 15 * 60
    video_audio_weight: float = 0.7
    music_weight: float = 0.3

    # Generation provider
    fal_api_key: str = ""
    fal_base_url: str = "https://fal.run"
    text_to_image_model: str = "fal-ai/nano-banana"
    image_to_video_model: str = "fal-ai/kling-video/v2.5-turbo/standard/image-to-video"
    generation_timeout: float = 180.0

    kafka_enabled: bool = False
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_events_topic: str = "storyreel_job_events"

    def concurrency_for(self, job_type: str) -> int:
        return max(1, self.job_concurrency.get(job_type, self.default_concurrency))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
