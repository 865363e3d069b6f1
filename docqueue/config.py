"""Job engine configuration settings."""

from functools import lru_cache
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Settings for the job engine service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    DATABASE_URL: str = "sqlite:///./docqueue.db"

    # Scheduler
    SCHEDULER_TICK_INTERVAL: float = 2.0  # Seconds between scheduler ticks
    SCHEDULER_ENABLED: bool = True
    MAINTENANCE_INTERVAL: int = 60  # Seconds between maintenance passes
    STUCK_JOB_THRESHOLD_MINUTES: int = 30
    SHUTDOWN_TIMEOUT: float = 30.0  # Max seconds to wait for in-flight jobs on stop

    # Worker pools (job_type -> cap / seconds between top-ups)
    POOL_CONCURRENCY: Dict[str, int] = {
        "content_extraction": 2,
        "analysis": 3,
        "embedding_generation": 2,
    }
    POOL_INTERVALS: Dict[str, float] = {
        "content_extraction": 2.0,
        "analysis": 2.0,
        "embedding_generation": 2.0,
    }
    DEFAULT_POOL_CONCURRENCY: int = 3
    DEFAULT_POOL_INTERVAL: float = 15.0

    # Shared AI provider budget
    PROVIDER_REQUESTS_PER_MINUTE: int = 15
    PROVIDER_DAILY_LIMIT: int = 1200  # Safety buffer below the provider's 1500/day

    # Tenant admission limits
    MAX_JOBS_PER_ORG_PER_HOUR: int = 100
    MAX_JOBS_PER_ORG_PER_DAY: int = 1000
    TENANT_STALE_HOURS: int = 25

    # Idempotency
    IDEMPOTENCY_CLEAR_INTERVAL: int = 600  # Seconds between wholesale clears

    # Retry / backoff
    QUEUE_MAX_ATTEMPTS: int = 3  # Default retry limit
    RETRY_DELAYS: List[int] = [30, 120, 300]  # Escalating delays per attempt (seconds)
    RATE_LIMIT_INITIAL_BACKOFF: int = 5
    RATE_LIMIT_MAX_BACKOFF: int = 300
    QUOTA_DEFER_SECONDS: int = 300
    POISON_PILL_THRESHOLD: int = 3  # Failures of one subject that end retries early
    POISON_PILL_WINDOW_SECONDS: int = 60

    # Claude AI
    ANTHROPIC_API_KEY: Optional[str] = None
    CLAUDE_MODEL: str = "claude-sonnet-4-5-20250929"
    CLAUDE_MAX_TOKENS: int = 2048
    CLAUDE_TIMEOUT: float = 60.0

    # Embeddings
    OPENAI_API_KEY: Optional[str] = None
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_TIMEOUT: float = 30.0
    EMBEDDING_MAX_CHARS: int = 8000

    # S3
    S3_BUCKET: str = "docqueue-artifacts"
    S3_REGION: str = "us-east-1"
    S3_PREFIX: str = "v1/"
    S3_ACCESS_KEY_ID: Optional[str] = None
    S3_SECRET_ACCESS_KEY: Optional[str] = None

    # Monitoring
    HEALTH_PORT: int = 8080
    HEALTH_SERVER_ENABLED: bool = True
    QUEUE_LAG_SLA_SECONDS: int = 900

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"


@lru_cache
def get_settings() -> EngineSettings:
    """Get cached settings instance."""
    return EngineSettings()


settings = get_settings()
