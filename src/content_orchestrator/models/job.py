"""Job model — one tracked execution of the content pipeline for a topic.

Status lifecycle:
    queued → processing → completed
                        ↘ failed → (retry) processing → completed | failed

Each job also carries four independent step statuses:
    pending → processing → completed | failed | skipped
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import String, DateTime, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from content_orchestrator.models import Base
from content_orchestrator.timeutils import utcnow

if TYPE_CHECKING:
    from content_orchestrator.models.job_retry import JobRetry

# Valid job status values, ordered by lifecycle stage
JOB_STATUS_QUEUED = "queued"
JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"

VALID_JOB_STATUSES: list[str] = [
    JOB_STATUS_QUEUED,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
]

# Pipeline steps, in execution order
STEP_ARTICLE = "article"
STEP_IMAGE = "image"
STEP_WORDPRESS = "wordpress"
STEP_PINS = "pins"

STEP_NAMES: tuple[str, ...] = (STEP_ARTICLE, STEP_IMAGE, STEP_WORDPRESS, STEP_PINS)

# Step status values
STEP_PENDING = "pending"
STEP_PROCESSING = "processing"
STEP_COMPLETED = "completed"
STEP_FAILED = "failed"
STEP_SKIPPED = "skipped"

VALID_STEP_STATUSES: frozenset[str] = frozenset(
    {STEP_PENDING, STEP_PROCESSING, STEP_COMPLETED, STEP_FAILED, STEP_SKIPPED}
)


def initial_steps() -> dict[str, str]:
    """Return a fresh steps record with every step pending."""
    return {name: STEP_PENDING for name in STEP_NAMES}


def validate_steps(steps: dict[str, str]) -> None:
    """Raise ValueError unless ``steps`` has exactly the four known keys with valid values."""
    if set(steps) != set(STEP_NAMES):
        raise ValueError(
            f"steps must contain exactly {list(STEP_NAMES)}, got {sorted(steps)}"
        )
    invalid = {k: v for k, v in steps.items() if v not in VALID_STEP_STATUSES}
    if invalid:
        raise ValueError(f"Invalid step status values: {invalid}")


class Job(Base):
    __tablename__ = "jobs"

    # --- Identity ---
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    topic: Mapped[str] = mapped_column(Text)

    # --- Status tracking ---
    status: Mapped[str] = mapped_column(
        String(20), default=JOB_STATUS_QUEUED, index=True
    )
    # {"article": "pending", "image": "pending", "wordpress": "pending", "pins": "pending"}
    steps: Mapped[dict] = mapped_column(JSON, default=initial_steps)
    # Step toggles persisted so retries re-run with the same choices
    options: Mapped[dict | None] = mapped_column(JSON, default=None)

    # --- Results ---
    # {"article_title", "post_id", "image_path", "pins_generated"}, filled incrementally
    result: Mapped[dict | None] = mapped_column(JSON, default=None)
    # Error message when status == "failed"
    error: Mapped[str | None] = mapped_column(Text, default=None)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    # Deleting a job removes its retry metadata
    retry_entry: Mapped[Optional["JobRetry"]] = relationship(
        back_populates="job",
        cascade="all, delete-orphan",
        uselist=False,
    )

    def __repr__(self) -> str:
        return f"<Job {self.id} ({self.status})>"
