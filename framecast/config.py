import logging
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FRAMECAST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    # Fall back to the imageio-ffmpeg bundled binary when ffmpeg_path is not found
    use_bundled_ffmpeg: bool = True
    # Maximum threads for the encoder (limits per-thread buffer memory)
    ffmpeg_threads: int = 2

    # Extracted frame cache
    cache_max_frames: int = 90
    cache_max_bytes: int = 500 * 1024 * 1024
    precache_concurrency: int = 4
    # Longest run of consecutive frames extracted by one ffmpeg process
    precache_batch_frames: int = 30

    # Encoder process
    stderr_tail_bytes: int = 32 * 1024
    # Longer programs are written to a script file (-filter_complex_script)
    filter_graph_inline_max_chars: int = 16000
    cancel_grace_seconds: float = 5.0

    # Render
    work_dir_prefix: str = "framecast_render_"

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for the framecast package."""
    logging.basicConfig(
        level=level or get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
