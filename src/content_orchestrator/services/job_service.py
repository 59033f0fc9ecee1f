"""Job service — creates, updates and queries Job records.

Keeps DB operations isolated from the worker and the timers so the logic is
easily testable and reusable.

Writes to a single job are serialized with a per-job lock; writes to
different jobs proceed independently. The store records whatever status the
caller supplies and never judges business failures. Persistence errors
(``SQLAlchemyError``) propagate to the caller.
"""

import logging
import threading
import uuid
from typing import Any

from sqlalchemy.orm import Session

from content_orchestrator.models.job import (
    Job,
    JOB_STATUS_QUEUED,
    JOB_STATUS_FAILED,
    STEP_NAMES,
    VALID_JOB_STATUSES,
    VALID_STEP_STATUSES,
    initial_steps,
    validate_steps,
)
from content_orchestrator.models.scheduled_content import ScheduledContent
from content_orchestrator.timeutils import utcnow

logger = logging.getLogger(__name__)


class _JobLocks:
    """Registry of one re-entrant lock per job id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def get(self, job_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = self._locks[job_id] = threading.RLock()
            return lock

    def discard(self, job_id: str) -> None:
        with self._guard:
            self._locks.pop(job_id, None)


# Shared by every JobService instance in the process
_job_locks = _JobLocks()


class JobService:
    """CRUD operations and status helpers for Job records."""

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_job(
        self,
        db: Session,
        topic: str,
        *,
        options: dict[str, Any] | None = None,
    ) -> Job:
        """Create a new Job in QUEUED state with all steps pending and return it."""
        now = utcnow()
        job = Job(
            id=uuid.uuid4().hex,
            topic=topic,
            status=JOB_STATUS_QUEUED,
            steps=initial_steps(),
            options=options,
            created_at=now,
            updated_at=now,
        )
        db.add(job)
        db.commit()
        db.refresh(job)
        logger.info("Created job %s for topic %r", job.id, topic)
        return job

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update_job(
        self,
        db: Session,
        job_id: str,
        *,
        status: str | None = None,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        steps: dict[str, str] | None = None,
    ) -> Job | None:
        """Merge the provided fields into a job and refresh ``updated_at``.

        ``steps`` replaces the whole steps record; use ``update_step`` to
        change one step without a read-modify-write. Moving a job to any
        status other than ``failed`` clears its error.

        Raises:
            ValueError: unknown status, or a steps record without exactly the
                four known steps.
        """
        if status is not None and status not in VALID_JOB_STATUSES:
            raise ValueError(f"Invalid job status: {status!r}")
        if steps is not None:
            validate_steps(steps)

        with _job_locks.get(job_id):
            job = self.get_job(db, job_id)
            if not job:
                logger.warning("update_job: job %s not found", job_id)
                return None
            if status is not None:
                job.status = status
                if status != JOB_STATUS_FAILED and error is None:
                    job.error = None
            if result is not None:
                job.result = dict(result)
            if error is not None:
                job.error = error
            if steps is not None:
                job.steps = dict(steps)
            job.updated_at = utcnow()
            db.commit()
            db.refresh(job)
            return job

    def update_step(
        self,
        db: Session,
        job_id: str,
        step: str,
        status: str,
    ) -> Job | None:
        """Atomically set the status of one step, leaving the other steps untouched."""
        if step not in STEP_NAMES:
            raise ValueError(f"Unknown step: {step!r}")
        if status not in VALID_STEP_STATUSES:
            raise ValueError(f"Invalid step status: {status!r}")

        with _job_locks.get(job_id):
            job = self.get_job(db, job_id)
            if not job:
                logger.warning("update_step: job %s not found", job_id)
                return None
            # Re-read inside the lock so concurrent step writers never clobber each other
            db.refresh(job)
            steps = dict(job.steps or initial_steps())
            steps[step] = status
            job.steps = steps
            job.updated_at = utcnow()
            db.commit()
            db.refresh(job)
            return job

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_job(self, db: Session, job_id: str) -> Job | None:
        """Fetch a job by its id."""
        return db.get(Job, job_id)

    def list_jobs(
        self,
        db: Session,
        *,
        limit: int = 50,
        newest_first: bool = True,
    ) -> list[Job]:
        """Return up to ``limit`` jobs ordered by creation time."""
        order = Job.created_at.desc() if newest_first else Job.created_at.asc()
        return db.query(Job).order_by(order).limit(limit).all()

    def list_by_status(self, db: Session, status: str, *, limit: int = 50) -> list[Job]:
        """Return up to ``limit`` jobs in ``status``, newest first."""
        return (
            db.query(Job)
            .filter(Job.status == status)
            .order_by(Job.created_at.desc())
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup_old_jobs(self, db: Session, keep: int = 100) -> int:
        """Delete all but the ``keep`` most recently created jobs.

        Retry entries of deleted jobs are removed with them, and scheduled
        content that pointed at them is unlinked. Returns the number of jobs
        deleted.
        """
        stale = (
            db.query(Job)
            .order_by(Job.created_at.desc(), Job.id.desc())
            .offset(keep)
            .all()
        )
        if not stale:
            return 0
        stale_ids = [job.id for job in stale]
        db.query(ScheduledContent).filter(
            ScheduledContent.job_id.in_(stale_ids)
        ).update({ScheduledContent.job_id: None}, synchronize_session=False)
        for job in stale:
            db.delete(job)
        db.commit()
        for job_id in stale_ids:
            _job_locks.discard(job_id)
        logger.info("Cleaned up %d old jobs (keeping %d)", len(stale_ids), keep)
        return len(stale_ids)
