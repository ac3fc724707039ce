"""
Application Configuration
Loads settings from environment variables.
"""

from typing import List
from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    APP_NAME: str = "Studio Batch API"
    DEBUG: bool = False
    API_BASE_URL: str = "http://localhost:8000"  # Base URL for file serving

    # Database - SQLite for local dev, PostgreSQL for production
    DATABASE_URL: str = "sqlite:///./studio.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379"

    # Generation provider: "pollinations" or "gemini"
    GENERATION_PROVIDER: str = "pollinations"
    GENERATION_TIMEOUT: float = 120.0  # Seconds per upstream call

    # Pollinations (default provider)
    POLLINATIONS_BASE_URL: str = "https://gen.pollinations.ai"
    POLLINATIONS_API_KEY: str = ""
    POLLINATIONS_DEFAULT_MODEL: str = "flux"

    # Image Generation (Gemini 2.5 Flash - Nano Banana)
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.5-flash-image"

    # Storage - S3 settings (S3 or any S3-compatible store such as R2)
    S3_BUCKET: str = ""
    S3_ENDPOINT: str = ""
    S3_ACCESS_KEY: str = ""
    S3_SECRET_KEY: str = ""
    S3_REGION: str = "auto"
    S3_PUBLIC_URL: str = ""  # Public base URL for objects, if the bucket is exposed

    # Local storage fallback
    LOCAL_STORAGE_PATH: str = "./uploads"
    USE_LOCAL_STORAGE: bool = True

    # Google Cloud Storage (for Cloud Run deployment)
    USE_GCS: bool = False
    GCS_BUCKET_OUTPUTS: str = "studio-outputs"
    GCP_PROJECT_ID: str = ""

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Batch settings
    MIN_BATCH_SIZE: int = 1
    MAX_BATCH_SIZE: int = 1000
    BATCH_ITEM_INTERVAL_SECONDS: float = 0.0  # Delay between consecutive items
    JOB_TIMEOUT_BATCH_STEP: int = 300

    # Retry policy for transient generation failures
    RETRY_MAX_RETRIES: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 2.0
    RETRY_MAX_DELAY_SECONDS: float = 30.0

    # Worker / progress backends
    # "rq" enqueues steps on Redis; "thread" runs them on timers in-process (dev only)
    SCHEDULER_BACKEND: str = "rq"
    # "redis" publishes progress over Redis pub/sub; "memory" is single-process only
    PROGRESS_BACKEND: str = "redis"
    PROGRESS_HEARTBEAT_SECONDS: float = 15.0

    @field_validator('GEMINI_API_KEY', 'POLLINATIONS_API_KEY', mode='before')
    @classmethod
    def strip_api_keys(cls, v):
        """Strip whitespace and newlines from API keys loaded from secrets."""
        if isinstance(v, str):
            return v.strip()
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
