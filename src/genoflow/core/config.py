"""Configuration management for the genoflow service."""

from datetime import time

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )

    ENV: str = "local"
    SERVICE_NAME: str = "genoflow"
    SERVICE_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Upload Storage
    UPLOAD_ROOT: str = "data/uploads"  # Published files, one directory per project
    STAGING_ROOT: str = "data/staging"  # Chunk staging, one directory per upload
    HASH_ALGORITHM: str = "md5"
    DUPLICATE_CONTENT_POLICY: str = "reuse"  # "reuse" or "reject"

    # Upload Constraints
    MAX_CHUNK_MB: int = 1024
    MAX_TOTAL_CHUNKS: int = 100_000
    UPLOAD_SESSION_TTL_MINUTES: int = 24 * 60
    SESSION_JANITOR_INTERVAL_SECONDS: int = 600

    # Task Queue
    MAX_CONCURRENT_TASKS: int = 3
    MAX_TASK_RETRIES: int = 3
    RETRY_BASE_DELAY_MS: int = 1000
    RESOURCE_PRESSURE_THRESHOLD: float = 0.8  # Fraction of memory in use
    RESOURCE_RETRY_DELAY_SECONDS: float = 5.0
    LARGE_TASK_THRESHOLD_GB: int = 5
    TASK_SEGMENT_MB: int = 100
    TASK_BATCH_WIDTH: int = 3

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_INTERVAL_SECONDS: int = 300
    SCHEDULER_TIMEZONE: str = "Asia/Shanghai"
    ADMISSION_WINDOW_START: str = "22:00"
    ADMISSION_WINDOW_END: str = "06:00"
    ADMISSION_CLOSING_MARGIN_MINUTES: int = 15
    MIN_QUEUE_AGE_MINUTES: int = 5
    SCHEDULER_BATCH_LIMIT: int = 10

    # Processing Service
    PROCESS_SERVICE_URL: str = "http://127.0.0.1:3178/api"
    PROCESS_REQUEST_TIMEOUT: int = 30  # seconds

    @property
    def max_chunk_bytes(self) -> int:
        """Convert MAX_CHUNK_MB to bytes."""
        return self.MAX_CHUNK_MB * 1024 * 1024

    @property
    def large_task_threshold_bytes(self) -> int:
        """Convert LARGE_TASK_THRESHOLD_GB to bytes."""
        return self.LARGE_TASK_THRESHOLD_GB * 1024 * 1024 * 1024

    @property
    def task_segment_bytes(self) -> int:
        """Convert TASK_SEGMENT_MB to bytes."""
        return self.TASK_SEGMENT_MB * 1024 * 1024

    @property
    def retry_base_delay_seconds(self) -> float:
        """Convert RETRY_BASE_DELAY_MS to seconds."""
        return self.RETRY_BASE_DELAY_MS / 1000

    @property
    def admission_window_start(self) -> time:
        """Parse ADMISSION_WINDOW_START ("HH:MM")."""
        return time.fromisoformat(self.ADMISSION_WINDOW_START)

    @property
    def admission_window_end(self) -> time:
        """Parse ADMISSION_WINDOW_END ("HH:MM")."""
        return time.fromisoformat(self.ADMISSION_WINDOW_END)


# Singleton settings instance
settings = Settings()
