"""Application configuration."""
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings

MB = 1024 * 1024
KB = 1024

ALLOWED_FILE_TYPES = {
    "leads_import": ["text/csv", "application/csv", "text/plain"],
    "template_assets": ["image/jpeg", "image/png", "image/gif", "image/webp"],
    "bulk_email_assets": [
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "application/zip",
    ],
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = "development"
    database_url: str

    # Redis (for Celery and progress pub/sub)
    redis_url: str = "redis://localhost:6379/0"
    progress_pubsub_enabled: bool = True

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Chunk storage
    upload_dir: str = "/tmp/uploads"

    # File size limits
    max_file_size: int = 100 * MB
    max_chunk_size: int = 1 * MB
    min_chunk_size: int = 64 * KB

    # Concurrency limits
    max_concurrent_uploads: int = 3
    max_concurrent_batches: int = 5
    max_retries: int = 3

    # Processing limits
    batch_size: int = 1000
    max_records_per_file: int = 500_000
    cancel_check_interval: int = 250

    # Timing
    retry_backoff_seconds: int = 60
    batch_estimate_seconds: int = 5

    # Retention
    retention_hours: int = 24
    cleanup_interval_hours: int = 6

    # Error reporting
    max_validation_errors: int = 100
    max_import_errors: int = 100

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
