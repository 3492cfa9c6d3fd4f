# backend/converter/config.py
import os
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


class Settings(BaseSettings):
    """Service settings loaded from environment variables (.env supported)."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    PROJECT_NAME: str = "Media Converter"
    HOST: str = "0.0.0.0"
    PORT: int = 3002

    # Storage roots; upload/output default to subdirectories of STORAGE_DIR
    STORAGE_DIR: str = os.path.join(BASE_DIR, "storage")
    UPLOAD_DIR: Optional[str] = None
    OUTPUT_DIR: Optional[str] = None
    MAX_UPLOAD_BYTES: int = 100 * 1024 * 1024

    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    # 0 disables the limit
    TRANSCODE_TIMEOUT_SECONDS: float = 3600.0

    # In-memory by default: jobs live for the lifetime of the process
    DATABASE_URL: str = "sqlite://"
    # Unset means finished jobs are never purged
    JOB_RETENTION_SECONDS: Optional[int] = None

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    @property
    def upload_dir(self) -> str:
        return self.UPLOAD_DIR or os.path.join(self.STORAGE_DIR, "uploads")

    @property
    def output_dir(self) -> str:
        return self.OUTPUT_DIR or os.path.join(self.STORAGE_DIR, "output")


@lru_cache
def get_settings() -> Settings:
    return Settings()
