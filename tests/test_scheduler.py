"""Tests for ContentScheduler: CRUD, recurrence, stats and the driver loop."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from content_orchestrator.models import Base
from content_orchestrator.models.scheduled_content import (
    ScheduledContent,
    SCHEDULE_STATUS_PENDING,
    SCHEDULE_STATUS_PROCESSING,
    SCHEDULE_STATUS_COMPLETED,
    SCHEDULE_STATUS_FAILED,
    SCHEDULE_STATUS_CANCELLED,
)
from content_orchestrator.services.scheduler import ContentScheduler, next_occurrence
from content_orchestrator.timeutils import utcnow


def _make_db():
    """Create an isolated in-memory SQLite DB and return session factory."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


@pytest.fixture
def SessionLocal():
    return _make_db()


@pytest.fixture
def db(SessionLocal):
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def scheduler(SessionLocal):
    sched = ContentScheduler(SessionLocal, batch_size=10, recurrence_anchor="completion")
    yield sched
    sched.stop()


# ---------------------------------------------------------------------------
# Recurrence arithmetic
# ---------------------------------------------------------------------------


def test_next_occurrence_daily_and_weekly():
    base = datetime(2024, 3, 10, 9, 30)
    assert next_occurrence(base, "daily") == datetime(2024, 3, 11, 9, 30)
    assert next_occurrence(base, "weekly") == datetime(2024, 3, 17, 9, 30)


def test_next_occurrence_monthly_clamps_day():
    assert next_occurrence(datetime(2023, 1, 31, 8, 0), "monthly") == datetime(2023, 2, 28, 8, 0)
    assert next_occurrence(datetime(2024, 1, 31, 8, 0), "monthly") == datetime(2024, 2, 29, 8, 0)
    assert next_occurrence(datetime(2024, 12, 15), "monthly") == datetime(2025, 1, 15)


def test_next_occurrence_unknown_tag():
    assert next_occurrence(datetime(2024, 1, 1), "hourly") is None
    assert next_occurrence(datetime(2024, 1, 1), None) is None


# ---------------------------------------------------------------------------
# schedule / due / complete
# ---------------------------------------------------------------------------


def test_scheduled_content_shows_as_upcoming(db, scheduler):
    entry = scheduler.schedule_content(db, "Toddler sleep", utcnow() + timedelta(days=1))

    upcoming = scheduler.get_upcoming_scheduled_content(db, 10)

    assert [e.id for e in upcoming] == [entry.id]
    assert upcoming[0].status == SCHEDULE_STATUS_PENDING
    assert upcoming[0].job_id is None


def test_schedule_accepts_iso_string_with_offset(db, scheduler):
    entry = scheduler.schedule_content(db, "topic", "2030-06-01T12:00:00+02:00")
    assert entry.scheduled_at == datetime(2030, 6, 1, 10, 0)


def test_schedule_accepts_aware_datetime(db, scheduler):
    aware = datetime(2030, 6, 1, 12, 0, tzinfo=timezone.utc)
    entry = scheduler.schedule_content(db, "topic", aware)
    assert entry.scheduled_at == datetime(2030, 6, 1, 12, 0)


def test_due_then_complete_one_shot(db, scheduler):
    entry = scheduler.schedule_content(db, "topic", utcnow() - timedelta(milliseconds=1000))

    due = scheduler.get_content_due_for_execution(db)
    assert [e.id for e in due] == [entry.id]

    assert scheduler.mark_as_completed(db, entry.id) is None

    assert db.query(ScheduledContent).count() == 1
    done = scheduler.get_by_id(db, entry.id)
    assert done.status == SCHEDULE_STATUS_COMPLETED
    assert done.executed_at is not None


def test_due_skips_future_and_non_pending(db, scheduler):
    past = utcnow() - timedelta(minutes=5)
    scheduler.schedule_content(db, "future", utcnow() + timedelta(hours=1))
    processing = scheduler.schedule_content(db, "processing", past)
    scheduler.mark_as_processing(db, processing.id, "job-1")
    due = scheduler.schedule_content(db, "due", past)

    assert [e.id for e in scheduler.get_content_due_for_execution(db)] == [due.id]


def test_due_ordered_and_capped(db, SessionLocal):
    sched = ContentScheduler(SessionLocal, batch_size=2)
    now = utcnow()
    late = sched.schedule_content(db, "late", now - timedelta(minutes=1))
    early = sched.schedule_content(db, "early", now - timedelta(minutes=3))
    sched.schedule_content(db, "middle", now - timedelta(minutes=2))

    due = sched.get_content_due_for_execution(db)
    assert [e.topic for e in due] == ["early", "middle"]
    assert late.id not in [e.id for e in due]
    assert early.id == due[0].id


def test_daily_recurrence_spawns_sibling(db, scheduler):
    entry = scheduler.schedule_content(
        db, "topic", utcnow() - timedelta(hours=3), recurrence="daily"
    )
    before = utcnow()

    sibling = scheduler.mark_as_completed(db, entry.id)

    assert sibling is not None
    assert sibling.id != entry.id
    assert sibling.topic == "topic"
    assert sibling.recurrence == "daily"
    assert sibling.status == SCHEDULE_STATUS_PENDING
    # Anchored on completion time, not the original schedule
    assert sibling.scheduled_at >= before + timedelta(days=1)
    assert scheduler.get_by_id(db, entry.id).status == SCHEDULE_STATUS_COMPLETED


def test_recurrence_anchored_on_scheduled_time(db, SessionLocal):
    sched = ContentScheduler(SessionLocal, recurrence_anchor="scheduled")
    original = datetime(2024, 1, 31, 9, 0)
    entry = sched.schedule_content(db, "topic", original, recurrence="monthly")

    sibling = sched.mark_as_completed(db, entry.id)

    assert sibling.scheduled_at == datetime(2024, 2, 29, 9, 0)


def test_failed_recurring_row_not_rescheduled(db, scheduler):
    entry = scheduler.schedule_content(db, "topic", utcnow(), recurrence="weekly")

    scheduler.mark_as_failed(db, entry.id, "pipeline down")

    assert db.query(ScheduledContent).count() == 1
    failed = scheduler.get_by_id(db, entry.id)
    assert failed.status == SCHEDULE_STATUS_FAILED
    assert failed.error == "pipeline down"
    assert failed.executed_at is not None


def test_unknown_recurrence_is_one_shot(db, scheduler):
    entry = scheduler.schedule_content(db, "topic", utcnow(), recurrence="hourly")
    assert scheduler.mark_as_completed(db, entry.id) is None
    assert db.query(ScheduledContent).count() == 1


def test_get_by_job_id(db, scheduler):
    entry = scheduler.schedule_content(db, "topic", utcnow())
    scheduler.mark_as_processing(db, entry.id, "job-42")

    assert scheduler.get_by_job_id(db, "job-42").id == entry.id
    assert scheduler.get_by_job_id(db, "job-0") is None


def test_mark_as_processing_only_claims_pending_rows(db, scheduler):
    entry = scheduler.schedule_content(db, "topic", utcnow())

    assert scheduler.mark_as_processing(db, entry.id, "job-1") is True
    assert scheduler.mark_as_processing(db, entry.id, "job-2") is False
    assert scheduler.get_by_job_id(db, "job-1").id == entry.id

    scheduler.mark_as_completed(db, entry.id)
    assert scheduler.mark_as_processing(db, entry.id, "job-3") is False
    assert scheduler.mark_as_processing(db, 9999, "job-4") is False

    db.expire_all()
    row = scheduler.get_by_id(db, entry.id)
    assert row.status == SCHEDULE_STATUS_COMPLETED
    assert row.job_id == "job-1"


# ---------------------------------------------------------------------------
# cancel / update / delete
# ---------------------------------------------------------------------------


def test_cancel_only_pending(db, scheduler):
    pending = scheduler.schedule_content(db, "a", utcnow() + timedelta(hours=1))
    running = scheduler.schedule_content(db, "b", utcnow())
    scheduler.mark_as_processing(db, running.id, "job-1")

    assert scheduler.cancel_scheduled_content(db, pending.id) is True
    assert scheduler.cancel_scheduled_content(db, pending.id) is False
    assert scheduler.cancel_scheduled_content(db, running.id) is False
    assert scheduler.cancel_scheduled_content(db, 9999) is False

    db.expire_all()
    assert scheduler.get_by_id(db, pending.id).status == SCHEDULE_STATUS_CANCELLED
    assert scheduler.get_by_id(db, running.id).status == SCHEDULE_STATUS_PROCESSING


def test_cancelled_row_never_due(db, scheduler):
    entry = scheduler.schedule_content(db, "a", utcnow() - timedelta(minutes=1))
    scheduler.cancel_scheduled_content(db, entry.id)
    assert scheduler.get_content_due_for_execution(db) == []


def test_update_pending_fields(db, scheduler):
    entry = scheduler.schedule_content(
        db, "old", utcnow() + timedelta(hours=1), recurrence="daily"
    )
    new_time = datetime(2031, 1, 1, 7, 0)

    assert scheduler.update_scheduled_content(
        db, entry.id, topic="new", scheduled_at=new_time, recurrence=None
    ) is True

    db.expire_all()
    updated = scheduler.get_by_id(db, entry.id)
    assert updated.topic == "new"
    assert updated.scheduled_at == new_time
    assert updated.recurrence is None


def test_update_rejected_when_not_pending_or_empty(db, scheduler):
    entry = scheduler.schedule_content(db, "topic", utcnow())

    assert scheduler.update_scheduled_content(db, entry.id) is False
    scheduler.mark_as_processing(db, entry.id, "job-1")
    assert scheduler.update_scheduled_content(db, entry.id, topic="x") is False
    assert scheduler.update_scheduled_content(db, 9999, topic="x") is False

    db.expire_all()
    assert scheduler.get_by_id(db, entry.id).topic == "topic"


def test_delete_scheduled_content(db, scheduler):
    entry = scheduler.schedule_content(db, "topic", utcnow())
    assert scheduler.delete_scheduled_content(db, entry.id) is True
    assert scheduler.delete_scheduled_content(db, entry.id) is False


def test_get_scheduled_content_by_status(db, scheduler):
    a = scheduler.schedule_content(db, "a", utcnow())
    scheduler.schedule_content(db, "b", utcnow())
    scheduler.cancel_scheduled_content(db, a.id)

    cancelled = scheduler.get_scheduled_content(db, status=SCHEDULE_STATUS_CANCELLED)
    assert [e.topic for e in cancelled] == ["a"]
    assert len(scheduler.get_scheduled_content(db)) == 2


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


def test_scheduler_stats(db, scheduler):
    now = utcnow()
    scheduler.schedule_content(db, "soon", now + timedelta(hours=2))
    scheduler.schedule_content(db, "later", now + timedelta(days=3))
    proc = scheduler.schedule_content(db, "proc", now)
    scheduler.mark_as_processing(db, proc.id, "job-1")
    done = scheduler.schedule_content(db, "done", now)
    scheduler.mark_as_completed(db, done.id)
    bad = scheduler.schedule_content(db, "bad", now)
    scheduler.mark_as_failed(db, bad.id, "boom")

    stats = scheduler.get_scheduler_stats(db)

    assert stats.pending == 2
    assert stats.processing == 1
    assert stats.completed_today == 1
    assert stats.failed_today == 1
    assert stats.upcoming_24h == 1


# ---------------------------------------------------------------------------
# Driver loop
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_due_claims_rows_with_job_ids(SessionLocal, scheduler):
    s = SessionLocal()
    a_id = scheduler.schedule_content(s, "a", utcnow() - timedelta(minutes=2)).id
    b_id = scheduler.schedule_content(s, "b", utcnow() - timedelta(minutes=1)).id
    s.close()

    seen = []

    def executor(row):
        seen.append(row.topic)
        return f"job-{row.topic}"

    started = await scheduler.run_due(executor)

    assert started == 2
    assert seen == ["a", "b"]
    s = SessionLocal()
    assert scheduler.get_by_id(s, a_id).status == SCHEDULE_STATUS_PROCESSING
    assert scheduler.get_by_id(s, a_id).job_id == "job-a"
    assert scheduler.get_by_id(s, b_id).job_id == "job-b"
    s.close()


@pytest.mark.asyncio
async def test_run_due_accepts_async_executor(SessionLocal, scheduler):
    s = SessionLocal()
    entry = scheduler.schedule_content(s, "a", utcnow() - timedelta(minutes=1))
    s.close()

    async def executor(row):
        return f"job-{row.id}"

    assert await scheduler.run_due(executor) == 1
    s = SessionLocal()
    assert scheduler.get_by_id(s, entry.id).job_id == f"job-{entry.id}"
    s.close()


@pytest.mark.asyncio
async def test_run_due_executor_error_fails_row(SessionLocal, scheduler):
    s = SessionLocal()
    bad_id = scheduler.schedule_content(
        s, "bad", utcnow() - timedelta(minutes=2), recurrence="daily"
    ).id
    good_id = scheduler.schedule_content(s, "good", utcnow() - timedelta(minutes=1)).id
    s.close()

    def executor(row):
        if row.topic == "bad":
            raise RuntimeError("pipeline unavailable")
        return "job-good"

    assert await scheduler.run_due(executor) == 1

    s = SessionLocal()
    failed = scheduler.get_by_id(s, bad_id)
    assert failed.status == SCHEDULE_STATUS_FAILED
    assert failed.error == "pipeline unavailable"
    assert scheduler.get_by_id(s, good_id).status == SCHEDULE_STATUS_PROCESSING
    # Failed recurring rows are not rescheduled
    assert s.query(ScheduledContent).count() == 2
    s.close()


@pytest.mark.asyncio
async def test_run_due_does_not_reopen_row_finished_during_executor(SessionLocal, scheduler):
    s = SessionLocal()
    entry_id = scheduler.schedule_content(s, "a", utcnow() - timedelta(minutes=1)).id
    s.close()

    async def executor(row):
        # The job is linked and finishes before the executor returns
        other = SessionLocal()
        scheduler.mark_as_processing(other, row.id, "job-fast")
        scheduler.mark_as_completed(other, row.id)
        other.close()
        await asyncio.sleep(0)
        return "job-fast"

    assert await scheduler.run_due(executor) == 1

    s = SessionLocal()
    row = scheduler.get_by_id(s, entry_id)
    assert row.status == SCHEDULE_STATUS_COMPLETED
    assert row.job_id == "job-fast"
    s.close()


@pytest.mark.asyncio
async def test_start_stop_lifecycle(scheduler):
    executor = MagicMock(return_value="job")

    assert scheduler.start(executor, interval_seconds=3600) is True
    assert scheduler.running is True
    assert scheduler.start(executor, interval_seconds=3600) is False

    scheduler.stop()
    assert scheduler.running is False
    scheduler.stop()

    assert scheduler.start(executor, interval_seconds=3600) is True
    scheduler.stop()
