from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings
from pydantic import ConfigDict


class Settings(BaseSettings):
    API_V1_STR: str = "/api/v1"
    VERSION: str = "0.1.0"
    PROJECT_NAME: str = "drcal_jobs"

    DEBUG: bool = False

    # Database settings (user:password@host:port/dbname)
    DB_URL: str = "postgres:postgres@localhost:5432/drcal"
    # Full SQLAlchemy URL, overrides DB_URL when set
    DATABASE_URL: Optional[str] = None

    # Queue store connection
    QUEUE_CONNECT_TIMEOUT: float = 10.0
    QUEUE_CONNECT_RETRIES: int = 3

    # Worker Configuration
    WORKER_ID: Optional[str] = None
    WORKER_CONCURRENCY: int = 5
    POLL_INTERVAL: float = 1.0
    MAX_POLL_INTERVAL: float = 30.0
    BACKOFF_FACTOR: float = 1.5
    SHUTDOWN_GRACE_PERIOD: float = 30.0
    STALE_JOB_TIMEOUT_SECONDS: int = 300
    # active jobs refresh updated_at this often; defaults to a third of the stale timeout
    HEARTBEAT_INTERVAL_SECONDS: Optional[float] = None
    REAPER_INTERVAL_SECONDS: float = 60.0
    # run a worker pool inside the API process as well
    RUN_WORKER_IN_API: bool = True

    # Retry policy
    JOB_MAX_ATTEMPTS: int = 3
    JOB_BACKOFF_TYPE: str = "exponential"
    JOB_BACKOFF_DELAY_MS: int = 2000

    # Retention
    KEEP_COMPLETED_JOBS: int = 10
    KEEP_FAILED_JOBS: int = 5

    # Handlers
    ADVISORY_LOCK_TTL_SECONDS: int = 300
    APPOINTMENT_PROCESSING_SECONDS: float = 2.0
    NOTIFICATION_DELIVERY_SECONDS: float = 1.0

    # Logging
    LOG_DIR: str = "logs"
    LOG_BACKUP_COUNT: int = 30

    # Application
    ENVIRONMENT: str = "development"

    # CORS settings
    CORS_ORIGINS: List[str] = ["*"]
    CORS_METHODS: List[str] = ["*"]
    CORS_HEADERS: List[str] = ["*"]
    ALLOW_CREDENTIALS: bool = True

    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def async_database_url(self) -> str:
        """Async version for asyncpg/worker processes."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql+asyncpg://{self.DB_URL}"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
