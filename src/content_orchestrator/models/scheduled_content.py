"""Scheduled content — a pending or recurring request to run the pipeline.

Status lifecycle:
    pending → processing → completed   (recurring rows spawn a new pending sibling)
                         ↘ failed
    pending → cancelled
"""

from datetime import datetime

from sqlalchemy import String, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column

from content_orchestrator.models import Base
from content_orchestrator.timeutils import utcnow

SCHEDULE_STATUS_PENDING = "pending"
SCHEDULE_STATUS_PROCESSING = "processing"
SCHEDULE_STATUS_COMPLETED = "completed"
SCHEDULE_STATUS_FAILED = "failed"
SCHEDULE_STATUS_CANCELLED = "cancelled"

VALID_SCHEDULE_STATUSES: list[str] = [
    SCHEDULE_STATUS_PENDING,
    SCHEDULE_STATUS_PROCESSING,
    SCHEDULE_STATUS_COMPLETED,
    SCHEDULE_STATUS_FAILED,
    SCHEDULE_STATUS_CANCELLED,
]

RECURRENCE_DAILY = "daily"
RECURRENCE_WEEKLY = "weekly"
RECURRENCE_MONTHLY = "monthly"

VALID_RECURRENCES: frozenset[str] = frozenset(
    {RECURRENCE_DAILY, RECURRENCE_WEEKLY, RECURRENCE_MONTHLY}
)


class ScheduledContent(Base):
    __tablename__ = "scheduled_content"

    id: Mapped[int] = mapped_column(primary_key=True)
    topic: Mapped[str] = mapped_column(Text)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    status: Mapped[str] = mapped_column(
        String(20), default=SCHEDULE_STATUS_PENDING, index=True
    )

    # Set once execution starts; cleared by JobService.cleanup_old_jobs when the job is deleted
    job_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("jobs.id", ondelete="SET NULL"), default=None, index=True
    )
    # "daily", "weekly", "monthly", or None for a one-shot entry
    recurrence: Mapped[str | None] = mapped_column(String(20), default=None)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    error: Mapped[str | None] = mapped_column(Text, default=None)

    def __repr__(self) -> str:
        return f"<ScheduledContent {self.id} {self.topic!r} ({self.status})>"
