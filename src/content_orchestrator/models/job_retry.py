"""Retry metadata for a failed job — at most one row per job."""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import String, Integer, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from content_orchestrator.models import Base
from content_orchestrator.timeutils import utcnow

if TYPE_CHECKING:
    from content_orchestrator.models.job import Job


class JobRetry(Base):
    __tablename__ = "job_retries"

    id: Mapped[int] = mapped_column(primary_key=True)
    job_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("jobs.id", ondelete="CASCADE"), unique=True, index=True
    )

    # Retries already consumed; the ceiling is fixed when the row is created
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)

    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime, index=True)
    last_error: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    job: Mapped["Job"] = relationship(back_populates="retry_entry")

    @property
    def is_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    def __repr__(self) -> str:
        return f"<JobRetry {self.job_id} {self.retry_count}/{self.max_retries}>"
