"""Queue configuration settings."""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class QueueSettings(BaseSettings):
    """Settings for the generation queue and its workers."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Generation backend
    BACKEND_URL: str = "http://localhost:3000"
    GENERATION_MODEL: str = "gemini-2.5-flash"
    GENERATION_TIMEOUT: float = 90.0  # Hard timeout per generation call (seconds)

    # Credentials (JSON list in the environment)
    GEMINI_API_KEYS: List[str] = []

    # Worker
    WORKER_MAX_RETRIES: int = 5  # Local attempts per job
    WORKER_RETRY_DELAY: float = 20.0  # Seconds between local attempts
    WORKER_COOLDOWN: float = 60.0  # Seconds a worker rests after giving up on a job

    # Queue
    QUEUE_TICK_INTERVAL: float = 0.5  # Seconds between scheduling ticks
    QUEUE_MAX_UNIQUE_WORKERS: int = 3  # Distinct workers allowed to try one job
    QUEUE_STATUS_LOG_COOLDOWN: float = 5.0  # Seconds between identical availability logs

    # Job waiter
    WAITER_POLL_INTERVAL: float = 1.0
    WAITER_TIMEOUT: float = 300.0

    # Job log registry
    LOG_REGISTRY_MAX_SIZE: int = 500
    LOG_REGISTRY_EVICT_COUNT: int = 100
    LOG_REGISTRY_TTL: float = 600.0  # Seconds before an orphaned registration expires

    # Run inputs for the service entry point
    AGENT_FILE: Optional[str] = None
    TITLES_FILE: Optional[str] = None
    OUTPUT_FILE: str = "generation_results.json"

    # Monitoring
    HEARTBEAT_INTERVAL: int = 30  # Seconds between heartbeat writes
    HEARTBEAT_FILE: str = "/tmp/scriptqueue_heartbeat"
    HEALTH_PORT: int = 8080

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"


@lru_cache
def get_settings() -> QueueSettings:
    """Get cached settings instance."""
    return QueueSettings()


settings = get_settings()
