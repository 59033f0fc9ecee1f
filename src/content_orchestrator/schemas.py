"""Structured values returned to callers (dashboard, CLI) and exchanged with the pipeline."""

from datetime import datetime

from pydantic import BaseModel


class JobOptions(BaseModel):
    """Per-job step toggles. Disabled steps are recorded as ``skipped``."""

    generate_image: bool = True
    upload_to_wordpress: bool = True
    generate_pins: bool = True


class JobResult(BaseModel):
    """Structured output of a job, filled incrementally as steps complete."""

    article_title: str | None = None
    post_id: int | None = None
    image_path: str | None = None
    pins_generated: int | None = None


class ArticleDraft(BaseModel):
    """Article produced by the first pipeline step and fed to the later ones."""

    title: str
    content: str


class RetryOutcome(BaseModel):
    """Result of ``RetryQueue.queue_for_retry``."""

    queued: bool
    next_retry_at: datetime | None = None
    retry_count: int | None = None
    reason: str | None = None


class RetryQueueStats(BaseModel):
    pending: int
    due_now: int
    exhausted: int


class SchedulerStats(BaseModel):
    pending: int
    processing: int
    completed_today: int
    failed_today: int
    upcoming_24h: int
