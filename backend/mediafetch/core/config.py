"""
Application configuration
"""
import os
import tempfile
from typing import List, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # API Configuration
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8080

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Access key shared with callers (KEY is accepted for older deployments)
    API_KEY: Optional[str] = Field(None, validation_alias=AliasChoices("API_KEY", "KEY"))

    # Extractor
    YTDLP_BINARY: str = "yt-dlp"
    WORKSPACE_ROOT: str = os.path.join(tempfile.gettempdir(), "mediafetch")

    # Job Processing
    MAX_CONCURRENT_JOBS: int = 4
    JOB_TTL_SECONDS: int = 900  # 15 minutes
    SWEEP_INTERVAL_SECONDS: float = 60.0
    ERROR_TEXT_MAX_CHARS: int = 2000

    # Progress feed
    PROGRESS_POLL_INTERVAL_SECONDS: float = 1.0
    PROGRESS_GRACE_SECONDS: float = 2.0

    # Download
    DOWNLOAD_CHUNK_SIZE: int = 64 * 1024

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
