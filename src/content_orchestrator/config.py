from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Orchestrator settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///./data/content_jobs.db"

    # Logging
    log_level: str = "INFO"

    # Timers (seconds between ticks)
    scheduler_interval_seconds: float = 60.0
    retry_poll_interval_seconds: float = 60.0

    # Retry backoff defaults, applied when a job is first queued for retry
    retry_max_retries: int = 3
    retry_base_delay_ms: int = 30_000
    retry_max_delay_ms: int = 300_000

    # Upper bound on rows handled per timer tick
    due_batch_size: int = 10

    # Number of most recent jobs kept by cleanup_old_jobs()
    job_history_limit: int = 100

    # Base time for the next occurrence of a recurring schedule:
    # "completion" = wall clock at completion, "scheduled" = the row's scheduled_at
    recurrence_anchor: Literal["completion", "scheduled"] = "completion"

    # Exhausted retry entries older than this are purged by the retry poller.
    # 0 keeps them forever as an audit trail.
    exhausted_retry_retention_days: int = 0

    model_config = {"env_file": ".env"}


settings = Settings()
