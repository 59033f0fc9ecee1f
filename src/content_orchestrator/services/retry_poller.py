"""Retry poller — periodically re-runs failed jobs whose backoff has elapsed."""

import logging
from datetime import timedelta

from sqlalchemy.orm import sessionmaker

from content_orchestrator.config import settings
from content_orchestrator.database import SessionLocal
from content_orchestrator.services.job_worker import JobWorker
from content_orchestrator.services.periodic import PeriodicRunner
from content_orchestrator.services.retry_queue import RetryQueue

logger = logging.getLogger(__name__)


class RetryPoller:
    def __init__(
        self,
        worker: JobWorker,
        *,
        session_factory: sessionmaker | None = None,
        retry_queue: RetryQueue | None = None,
        retention_days: int | None = None,
    ) -> None:
        self._worker = worker
        self._session_factory = session_factory or SessionLocal
        self._retries = retry_queue or RetryQueue()
        self._retention_days = (
            settings.exhausted_retry_retention_days if retention_days is None else retention_days
        )
        self._runner = PeriodicRunner("retry-poller", self.poll)

    @property
    def running(self) -> bool:
        return self._runner.running

    def start(self, interval_seconds: float | None = None) -> bool:
        return self._runner.start(interval_seconds or settings.retry_poll_interval_seconds)

    def stop(self) -> None:
        self._runner.stop()

    async def poll(self) -> int:
        """Start every retry that is due, soonest first. Returns how many were started."""
        db = self._session_factory()
        try:
            due_ids = [entry.job_id for entry in self._retries.get_jobs_due_for_retry(db)]
            if self._retention_days > 0:
                self._retries.purge_exhausted(db, timedelta(days=self._retention_days))
        finally:
            db.close()

        started = 0
        for job_id in due_ids:
            if self._worker.retry(job_id):
                started += 1
        if due_ids:
            logger.info("Retry poll started %d of %d due jobs", started, len(due_ids))
        return started
