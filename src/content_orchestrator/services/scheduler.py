"""Content scheduler — future and recurring requests to run the content pipeline.

Rows are claimed by a periodic tick once ``scheduled_at`` has passed. The
caller supplies the executor that turns a due row into a job; the scheduler
never runs pipeline work itself.

Recurrence always spawns a new sibling row on completion; the completed row
is never reused. By default the next occurrence is computed from the
completion time, so a late run shifts the cadence forward.
"""

import calendar
import inspect
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Literal, Union

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from content_orchestrator.config import settings
from content_orchestrator.database import SessionLocal
from content_orchestrator.models.scheduled_content import (
    ScheduledContent,
    SCHEDULE_STATUS_PENDING,
    SCHEDULE_STATUS_PROCESSING,
    SCHEDULE_STATUS_COMPLETED,
    SCHEDULE_STATUS_FAILED,
    SCHEDULE_STATUS_CANCELLED,
    RECURRENCE_DAILY,
    RECURRENCE_WEEKLY,
    RECURRENCE_MONTHLY,
    VALID_RECURRENCES,
)
from content_orchestrator.schemas import SchedulerStats
from content_orchestrator.services.periodic import PeriodicRunner
from content_orchestrator.timeutils import local_midnight_utc, to_utc_naive, utcnow

logger = logging.getLogger(__name__)

# Turns a due row into a job and returns the job id
Executor = Callable[[ScheduledContent], Union[str, Awaitable[str]]]

# Distinguishes "not given" from an explicit None in update_scheduled_content
_UNSET = object()


def _add_months(base: datetime, months: int) -> datetime:
    """Calendar month addition; the day is clamped to the target month's length."""
    month_index = base.month - 1 + months
    year = base.year + month_index // 12
    month = month_index % 12 + 1
    day = min(base.day, calendar.monthrange(year, month)[1])
    return base.replace(year=year, month=month, day=day)


def next_occurrence(base: datetime, recurrence: str | None) -> datetime | None:
    """Next run time after ``base`` for a recurrence tag; None for unknown tags."""
    if recurrence == RECURRENCE_DAILY:
        return base + timedelta(days=1)
    if recurrence == RECURRENCE_WEEKLY:
        return base + timedelta(days=7)
    if recurrence == RECURRENCE_MONTHLY:
        return _add_months(base, 1)
    return None


class ContentScheduler:
    """Persists scheduled content and drives due rows through an executor.

    One instance owns one timer; construct it once per process and keep the
    handle for ``stop()``.
    """

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        *,
        batch_size: int | None = None,
        recurrence_anchor: Literal["completion", "scheduled"] | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._batch_size = batch_size or settings.due_batch_size
        self._recurrence_anchor = recurrence_anchor or settings.recurrence_anchor
        self._executor: Executor | None = None
        self._runner = PeriodicRunner("content-scheduler", self._tick)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def schedule_content(
        self,
        db: Session,
        topic: str,
        scheduled_at: datetime | str,
        *,
        recurrence: str | None = None,
    ) -> ScheduledContent:
        """Insert a pending row to run ``topic`` at ``scheduled_at``."""
        if recurrence is not None and recurrence not in VALID_RECURRENCES:
            logger.warning("Unknown recurrence %r; entry will not repeat", recurrence)
        entry = ScheduledContent(
            topic=topic,
            scheduled_at=to_utc_naive(scheduled_at),
            status=SCHEDULE_STATUS_PENDING,
            recurrence=recurrence or None,
            created_at=utcnow(),
        )
        db.add(entry)
        db.commit()
        db.refresh(entry)
        logger.info(
            "Content scheduled",
            extra={
                "scheduled_id": entry.id,
                "topic": topic,
                "scheduled_at": entry.scheduled_at.isoformat(),
                "recurrence": entry.recurrence,
            },
        )
        return entry

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def mark_as_processing(self, db: Session, scheduled_id: int, job_id: str) -> bool:
        """Claim a pending row for ``job_id``.

        Returns False, leaving the row alone, if it is missing or has
        already been claimed, completed, failed or cancelled.
        """
        updated = (
            db.query(ScheduledContent)
            .filter(
                ScheduledContent.id == scheduled_id,
                ScheduledContent.status == SCHEDULE_STATUS_PENDING,
            )
            .update(
                {
                    ScheduledContent.status: SCHEDULE_STATUS_PROCESSING,
                    ScheduledContent.job_id: job_id,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        return bool(updated)

    def mark_as_completed(self, db: Session, scheduled_id: int) -> ScheduledContent | None:
        """Complete a row; for recurring rows, schedule and return the next occurrence."""
        entry = self.get_by_id(db, scheduled_id)
        if not entry:
            logger.warning("mark_as_completed: scheduled content %s not found", scheduled_id)
            return None
        now = utcnow()
        entry.status = SCHEDULE_STATUS_COMPLETED
        entry.executed_at = now
        db.commit()

        if not entry.recurrence:
            return None
        base = entry.scheduled_at if self._recurrence_anchor == "scheduled" else now
        next_at = next_occurrence(base, entry.recurrence)
        if next_at is None:
            return None
        sibling = self.schedule_content(db, entry.topic, next_at, recurrence=entry.recurrence)
        logger.info(
            "Next recurring content scheduled",
            extra={"topic": entry.topic, "next_scheduled_at": next_at.isoformat()},
        )
        return sibling

    def mark_as_failed(self, db: Session, scheduled_id: int, error: str) -> None:
        """Fail a row. Recurring rows are not rescheduled."""
        entry = self.get_by_id(db, scheduled_id)
        if not entry:
            logger.warning("mark_as_failed: scheduled content %s not found", scheduled_id)
            return
        entry.status = SCHEDULE_STATUS_FAILED
        entry.executed_at = utcnow()
        entry.error = error
        db.commit()

    def cancel_scheduled_content(self, db: Session, scheduled_id: int) -> bool:
        """Cancel a pending row. Returns False for any other status."""
        updated = (
            db.query(ScheduledContent)
            .filter(
                ScheduledContent.id == scheduled_id,
                ScheduledContent.status == SCHEDULE_STATUS_PENDING,
            )
            .update({ScheduledContent.status: SCHEDULE_STATUS_CANCELLED})
        )
        db.commit()
        if updated:
            logger.info("Scheduled content %s cancelled", scheduled_id)
            return True
        return False

    def update_scheduled_content(
        self,
        db: Session,
        scheduled_id: int,
        *,
        topic: str | object = _UNSET,
        scheduled_at: datetime | str | object = _UNSET,
        recurrence: str | None | object = _UNSET,
    ) -> bool:
        """Edit a row in place while it is still pending.

        Returns False if the row is missing, no longer pending, or no field
        was given. Pass ``recurrence=None`` to make a row one-shot.
        """
        values: dict = {}
        if topic is not _UNSET:
            values[ScheduledContent.topic] = topic
        if scheduled_at is not _UNSET:
            values[ScheduledContent.scheduled_at] = to_utc_naive(scheduled_at)
        if recurrence is not _UNSET:
            values[ScheduledContent.recurrence] = recurrence
        if not values:
            return False

        updated = (
            db.query(ScheduledContent)
            .filter(
                ScheduledContent.id == scheduled_id,
                ScheduledContent.status == SCHEDULE_STATUS_PENDING,
            )
            .update(values)
        )
        db.commit()
        return bool(updated)

    def delete_scheduled_content(self, db: Session, scheduled_id: int) -> bool:
        deleted = db.query(ScheduledContent).filter(ScheduledContent.id == scheduled_id).delete()
        db.commit()
        return bool(deleted)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_by_id(self, db: Session, scheduled_id: int) -> ScheduledContent | None:
        return db.get(ScheduledContent, scheduled_id)

    def get_by_job_id(self, db: Session, job_id: str) -> ScheduledContent | None:
        """The row that spawned ``job_id``, if any (most recent first)."""
        return (
            db.query(ScheduledContent)
            .filter(ScheduledContent.job_id == job_id)
            .order_by(ScheduledContent.id.desc())
            .first()
        )

    def get_content_due_for_execution(
        self, db: Session, *, limit: int | None = None
    ) -> list[ScheduledContent]:
        """Pending rows whose time has come, earliest first, capped at the batch size."""
        now = utcnow()
        return (
            db.query(ScheduledContent)
            .filter(
                ScheduledContent.scheduled_at <= now,
                ScheduledContent.status == SCHEDULE_STATUS_PENDING,
            )
            .order_by(ScheduledContent.scheduled_at.asc(), ScheduledContent.id.asc())
            .limit(limit or self._batch_size)
            .all()
        )

    def get_scheduled_content(
        self,
        db: Session,
        *,
        status: str | None = None,
        limit: int = 100,
    ) -> list[ScheduledContent]:
        q = db.query(ScheduledContent)
        if status:
            q = q.filter(ScheduledContent.status == status)
        return q.order_by(ScheduledContent.scheduled_at.asc()).limit(limit).all()

    def get_upcoming_scheduled_content(self, db: Session, limit: int = 10) -> list[ScheduledContent]:
        return self.get_scheduled_content(db, status=SCHEDULE_STATUS_PENDING, limit=limit)

    def get_scheduler_stats(self, db: Session) -> SchedulerStats:
        now = utcnow()
        today_start = local_midnight_utc()
        horizon = now + timedelta(hours=24)

        def _count(*criteria) -> int:
            return db.query(func.count(ScheduledContent.id)).filter(*criteria).scalar() or 0

        return SchedulerStats(
            pending=_count(ScheduledContent.status == SCHEDULE_STATUS_PENDING),
            processing=_count(ScheduledContent.status == SCHEDULE_STATUS_PROCESSING),
            completed_today=_count(
                ScheduledContent.status == SCHEDULE_STATUS_COMPLETED,
                ScheduledContent.executed_at >= today_start,
            ),
            failed_today=_count(
                ScheduledContent.status == SCHEDULE_STATUS_FAILED,
                ScheduledContent.executed_at >= today_start,
            ),
            upcoming_24h=_count(
                ScheduledContent.status == SCHEDULE_STATUS_PENDING,
                ScheduledContent.scheduled_at <= horizon,
            ),
        )

    # ------------------------------------------------------------------
    # Driver loop
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._runner.running

    def start(self, executor: Executor, interval_seconds: float | None = None) -> bool:
        """Poll for due content every ``interval_seconds`` and hand it to ``executor``.

        Must be called from inside a running event loop. A second call while
        running is a no-op that logs a warning and returns False.
        """
        if self.running:
            logger.warning("Scheduler already running")
            return False
        self._executor = executor
        return self._runner.start(interval_seconds or settings.scheduler_interval_seconds)

    def stop(self) -> None:
        """Stop polling. Idempotent."""
        self._runner.stop()
        self._executor = None

    async def _tick(self) -> None:
        if self._executor is not None:
            await self.run_due(self._executor)

    async def run_due(self, executor: Executor) -> int:
        """Process one batch of due content. Returns the number of rows handed off.

        Each row is passed to ``executor``; on success the row is claimed with
        the returned job id, unless the executor already linked it (as
        ``JobWorker.submit_scheduled`` does) or the job has since moved it
        on. An exception from the executor fails the row
        immediately, without creating a retry-eligible job. Store errors
        propagate.
        """
        db = self._session_factory()
        started = 0
        try:
            for entry in self.get_content_due_for_execution(db):
                scheduled_id = entry.id
                logger.info(
                    "Processing scheduled content",
                    extra={"scheduled_id": scheduled_id, "topic": entry.topic},
                )
                try:
                    job_id = executor(entry)
                    if inspect.isawaitable(job_id):
                        job_id = await job_id
                except Exception as exc:
                    logger.error(
                        "Failed to process scheduled content",
                        extra={"scheduled_id": scheduled_id, "error": str(exc)},
                    )
                    self.mark_as_failed(db, scheduled_id, str(exc))
                else:
                    self.mark_as_processing(db, scheduled_id, job_id)
                    started += 1
        finally:
            db.close()
        return started
