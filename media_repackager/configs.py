from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    log_level: str = "INFO"  # The logging level to use.
    working_dir: str = Field(
        "/tmp/media-repackager", description="Root directory for per-asset working directories."
    )
    packager: Literal["shaka"] = "shaka"  # The packager driving the final packaging step.
    packager_path: str = "packager"  # Executable name or path of the Shaka Packager binary.
    batch_size: int = Field(1, description="Number of assets packaged concurrently (1..10).")
    segment_duration: int = 2  # Segment duration in seconds for the generated manifests.
    use_pipes: bool = False  # Stream inputs to the packager through named pipes instead of staging files.
    pipe_buffer_chunks: int = 8  # Maximum number of chunks buffered between a pipe producer and its consumer.
    chunk_size: int = 1024 * 1024  # Read size used when streaming objects.
    http_timeout: int = 60  # Timeout for HTTP object storage requests in seconds.
    http_retries: int = 3  # Attempts for transient HTTP failures.
    process_live_video: bool = True  # Apply the live-archive video fix-up after reconstruction.
    process_live_audio: bool = True  # Align live-archive audio to the video timeline.
    process_live_vtt: bool = True  # Shift live-archive caption cues by the video start offset.
    delete_working_dir: bool = True  # Remove the per-asset working directory after upload.

    @field_validator("batch_size")
    @classmethod
    def _check_batch_size(cls, value: int) -> int:
        if value < 1 or value > 10:
            raise ValueError("Invalid batch size. Only values 1..10 are supported")
        return value

    class Config:
        env_file = ".env"
        env_prefix = "REPACKAGER_"
        extra = "ignore"


settings = Settings()
