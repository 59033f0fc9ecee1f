"""Retry queue — decides whether and when a failed job may run again.

One ``JobRetry`` row per failed job. The retry ceiling is fixed when the row
is first created; later calls cannot raise or lower it. Exhausted rows are
kept as an audit trail until cancelled, purged, or removed with their job.

Backoff:
    delay = base_delay_ms * 2**retry_count, capped at max_delay_ms,
    then ±10% jitter, never below one second.
"""

import logging
import math
import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from content_orchestrator.config import settings
from content_orchestrator.models.job import Job, JOB_STATUS_FAILED
from content_orchestrator.models.job_retry import JobRetry
from content_orchestrator.schemas import RetryOutcome, RetryQueueStats
from content_orchestrator.timeutils import utcnow

logger = logging.getLogger(__name__)

MAX_RETRIES_EXCEEDED = "Max retries exceeded"

# Never retry sooner than this, whatever the jitter
MIN_RETRY_DELAY_MS = 1000
JITTER_RATIO = 0.10


@dataclass(frozen=True)
class RetryConfig:
    """Backoff parameters for ``RetryQueue.queue_for_retry``."""

    max_retries: int = 3
    base_delay_ms: float = 30_000
    max_delay_ms: float = 300_000

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        return cls(
            max_retries=settings.retry_max_retries,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
        )


def capped_delay_ms(retry_count: int, config: RetryConfig) -> float:
    """Exponential delay for ``retry_count``, capped, before jitter is applied."""
    try:
        delay = config.base_delay_ms * (2 ** retry_count)
    except OverflowError:
        delay = math.inf
    delay = min(delay, config.max_delay_ms)
    if not math.isfinite(delay):
        # Also catches NaN, which min() lets through
        delay = config.base_delay_ms
    return float(delay)


def compute_backoff_delay_ms(retry_count: int, config: RetryConfig) -> float:
    """Capped exponential delay with ±10% jitter, floored at one second."""
    delay = capped_delay_ms(retry_count, config)
    jitter = delay * JITTER_RATIO * random.uniform(-1, 1)
    return max(delay + jitter, MIN_RETRY_DELAY_MS)


def calculate_next_retry_time(
    retry_count: int,
    config: RetryConfig,
    now: datetime | None = None,
) -> datetime:
    """Earliest time a job may be retried after ``retry_count`` retries."""
    delay_ms = math.floor(compute_backoff_delay_ms(retry_count, config))
    return (now or utcnow()) + timedelta(milliseconds=delay_ms)


class RetryQueue:
    """Tracks failed jobs that are eligible to run again."""

    def __init__(self, batch_size: int | None = None) -> None:
        self._batch_size = batch_size or settings.due_batch_size

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def queue_for_retry(
        self,
        db: Session,
        job_id: str,
        error_message: str,
        config: RetryConfig | None = None,
    ) -> RetryOutcome:
        """Add a failed job to the queue, or advance its existing entry.

        The first call creates the entry with ``retry_count=0``. Later calls
        increment the count and push ``next_retry_at`` out, until the stored
        ``max_retries`` is reached; from then on every call is refused with
        ``reason="Max retries exceeded"`` and the entry is left untouched.
        """
        cfg = config or RetryConfig.from_settings()
        now = utcnow()

        existing = self.get_retry_status(db, job_id)
        if existing is not None:
            if existing.is_exhausted:
                logger.warning(
                    "Job exceeded max retries",
                    extra={
                        "job_id": job_id,
                        "retry_count": existing.retry_count,
                        "max_retries": existing.max_retries,
                    },
                )
                return RetryOutcome(queued=False, reason=MAX_RETRIES_EXCEEDED)

            new_count = existing.retry_count + 1
            next_retry = calculate_next_retry_time(new_count, cfg, now)
            existing.retry_count = new_count
            existing.next_retry_at = next_retry
            existing.last_error = error_message
            db.commit()
            logger.info(
                "Job %s queued for retry %d/%d at %s",
                job_id, new_count, existing.max_retries, next_retry.isoformat(),
            )
            return RetryOutcome(queued=True, retry_count=new_count, next_retry_at=next_retry)

        next_retry = calculate_next_retry_time(0, cfg, now)
        entry = JobRetry(
            job_id=job_id,
            retry_count=0,
            max_retries=cfg.max_retries,
            next_retry_at=next_retry,
            last_error=error_message,
            created_at=now,
        )
        db.add(entry)
        db.commit()
        logger.info(
            "Job %s added to retry queue, first retry at %s",
            job_id, next_retry.isoformat(),
        )
        return RetryOutcome(queued=True, retry_count=0, next_retry_at=next_retry)

    def get_jobs_due_for_retry(self, db: Session, *, limit: int | None = None) -> list[JobRetry]:
        """Entries whose time has come, still under their ceiling, for jobs still failed.

        Ordered by ``next_retry_at`` ascending and capped at the batch size.
        """
        now = utcnow()
        return (
            db.query(JobRetry)
            .join(Job, Job.id == JobRetry.job_id)
            .filter(
                JobRetry.next_retry_at <= now,
                JobRetry.retry_count < JobRetry.max_retries,
                Job.status == JOB_STATUS_FAILED,
            )
            .order_by(JobRetry.next_retry_at.asc())
            .limit(limit or self._batch_size)
            .all()
        )

    def mark_retry_successful(self, db: Session, job_id: str) -> None:
        """Remove the job from retry tracking once a re-run has completed."""
        deleted = db.query(JobRetry).filter(JobRetry.job_id == job_id).delete()
        db.commit()
        if deleted:
            logger.info("Retry successful, job %s removed from queue", job_id)

    def cancel_retries(self, db: Session, job_id: str) -> bool:
        """Delete the job's retry entry whatever its state. Returns whether one existed."""
        deleted = db.query(JobRetry).filter(JobRetry.job_id == job_id).delete()
        db.commit()
        if deleted:
            logger.info("Retries cancelled for job %s", job_id)
            return True
        return False

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_retry_status(self, db: Session, job_id: str) -> JobRetry | None:
        return db.query(JobRetry).filter(JobRetry.job_id == job_id).first()

    def get_pending_retries(self, db: Session) -> list[JobRetry]:
        """All entries that still have retries left, soonest first."""
        return (
            db.query(JobRetry)
            .filter(JobRetry.retry_count < JobRetry.max_retries)
            .order_by(JobRetry.next_retry_at.asc())
            .all()
        )

    def get_retry_queue_stats(self, db: Session) -> RetryQueueStats:
        now = utcnow()
        pending = (
            db.query(func.count(JobRetry.id))
            .filter(JobRetry.retry_count < JobRetry.max_retries)
            .scalar()
        )
        due_now = (
            db.query(func.count(JobRetry.id))
            .filter(
                JobRetry.retry_count < JobRetry.max_retries,
                JobRetry.next_retry_at <= now,
            )
            .scalar()
        )
        exhausted = (
            db.query(func.count(JobRetry.id))
            .filter(JobRetry.retry_count >= JobRetry.max_retries)
            .scalar()
        )
        return RetryQueueStats(pending=pending or 0, due_now=due_now or 0, exhausted=exhausted or 0)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def purge_exhausted(self, db: Session, older_than: timedelta) -> int:
        """Delete exhausted entries created more than ``older_than`` ago."""
        cutoff = utcnow() - older_than
        deleted = (
            db.query(JobRetry)
            .filter(
                JobRetry.retry_count >= JobRetry.max_retries,
                JobRetry.created_at < cutoff,
            )
            .delete(synchronize_session=False)
        )
        db.commit()
        if deleted:
            logger.info("Purged %d exhausted retry entries older than %s", deleted, cutoff.isoformat())
        return deleted
