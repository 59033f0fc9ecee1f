"""Background job worker — runs the content pipeline for a submitted job.

Jobs are started with ``asyncio.create_task()`` so callers (the scheduler
tick, the retry poller, a dashboard handler) get the job id back
immediately. The worker updates step and job status in the DB as it
progresses and reports the outcome to the retry queue and the scheduler.

Pipeline flow:
    1. ``article`` is required; if it raises, the job fails.
    2. ``image``, ``wordpress`` and ``pins`` are optional. A disabled step is
       recorded as ``skipped``; a step that raises is recorded as ``failed``
       and the job carries on.
    3. On completion the retry entry is removed and the scheduled row that
       spawned the job (if any) is completed, which may schedule its next
       occurrence.
    4. On failure the job is queued for retry. Once the retry queue refuses,
       the scheduled row is marked failed.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from content_orchestrator.config import settings
from content_orchestrator.database import SessionLocal
from content_orchestrator.logging_config import bind_job_id
from content_orchestrator.models.job import (
    JOB_STATUS_PROCESSING,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    STEP_ARTICLE,
    STEP_IMAGE,
    STEP_WORDPRESS,
    STEP_PINS,
    STEP_PROCESSING,
    STEP_COMPLETED,
    STEP_FAILED,
    STEP_SKIPPED,
    initial_steps,
)
from content_orchestrator.models.scheduled_content import (
    ScheduledContent,
    SCHEDULE_STATUS_PROCESSING,
)
from content_orchestrator.schemas import ArticleDraft, JobOptions, JobResult
from content_orchestrator.services.job_service import JobService
from content_orchestrator.services.retry_queue import RetryConfig, RetryQueue
from content_orchestrator.services.scheduler import ContentScheduler

logger = logging.getLogger(__name__)


class ContentPipeline(Protocol):
    """The four content-generation steps a job runs, in order."""

    async def generate_article(self, topic: str) -> ArticleDraft: ...

    async def generate_image(self, topic: str) -> str:
        """Return the local path of the generated featured image."""
        ...

    async def upload_to_wordpress(self, article: ArticleDraft, image_path: str | None) -> int:
        """Create a draft post and return its id."""
        ...

    async def generate_pins(
        self, article: ArticleDraft, post_id: int | None, image_path: str | None
    ) -> int:
        """Create pins for the article and return how many were made."""
        ...


class JobWorker:
    """Runs jobs in the background and wires their outcomes into retry and scheduling."""

    def __init__(
        self,
        pipeline: ContentPipeline,
        *,
        session_factory: sessionmaker | None = None,
        job_service: JobService | None = None,
        retry_queue: RetryQueue | None = None,
        scheduler: ContentScheduler | None = None,
        retry_config: RetryConfig | None = None,
        history_limit: int | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._session_factory = session_factory or SessionLocal
        self._jobs = job_service or JobService()
        self._retries = retry_queue or RetryQueue()
        self._scheduler = scheduler or ContentScheduler(self._session_factory)
        self._retry_config = retry_config or RetryConfig.from_settings()
        self._history_limit = history_limit or settings.job_history_limit
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def submit(
        self,
        topic: str,
        *,
        options: JobOptions | None = None,
        scheduled_id: int | None = None,
    ) -> str:
        """Create a job for ``topic``, start it in the background and return its id.

        When ``scheduled_id`` is given, that scheduled row is linked to the
        job before the run starts, so the run always finds it on completion.
        Must be called from inside a running event loop.
        """
        db = self._session_factory()
        try:
            job = self._jobs.create_job(
                db, topic, options=(options or JobOptions()).model_dump()
            )
            job_id = job.id
            if scheduled_id is not None:
                self._scheduler.mark_as_processing(db, scheduled_id, job_id)
            self._jobs.cleanup_old_jobs(db, keep=self._history_limit)
        finally:
            db.close()
        self._spawn(job_id)
        return job_id

    def submit_scheduled(self, entry: ScheduledContent) -> str:
        """Executor for ``ContentScheduler.start``: one job per due row."""
        return self.submit(entry.topic, scheduled_id=entry.id)

    def retry(self, job_id: str) -> bool:
        """Re-run a failed job in the background.

        The job is claimed (moved to ``processing``) before this returns, so
        a later poll cannot start it twice. Returns False if the job is
        missing or no longer failed.
        """
        db = self._session_factory()
        try:
            job = self._jobs.get_job(db, job_id)
            if job is None or job.status != JOB_STATUS_FAILED:
                return False
            self._jobs.update_job(db, job_id, status=JOB_STATUS_PROCESSING)
        finally:
            db.close()
        logger.info("Retrying job", extra={"job_id": job_id})
        self._spawn(job_id)
        return True

    async def wait_idle(self) -> None:
        """Wait for every job started by this worker to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def _spawn(self, job_id: str) -> None:
        task = asyncio.create_task(self.run_job(job_id), name=f"job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background job task %s crashed",
                task.get_name(),
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def run_job(self, job_id: str) -> None:
        """Execute the pipeline for one job and record the outcome.

        Pipeline errors fail the job; store errors propagate.
        """
        with bind_job_id(job_id):
            db = self._session_factory()
            try:
                job = self._jobs.get_job(db, job_id)
                if job is None:
                    logger.warning("Job %s not found, nothing to run", job_id)
                    return
                topic = job.topic
                options = JobOptions(**(job.options or {}))
                self._jobs.update_job(
                    db, job_id, status=JOB_STATUS_PROCESSING, steps=initial_steps()
                )
                logger.info("Job started", extra={"topic": topic})

                try:
                    result = await self._run_pipeline(db, job_id, topic, options)
                except SQLAlchemyError:
                    raise
                except Exception as exc:
                    logger.exception("Job %s failed", job_id)
                    self._handle_failure(db, job_id, str(exc))
                else:
                    self._handle_success(db, job_id, result)
            finally:
                db.close()

    async def _run_pipeline(
        self, db: Session, job_id: str, topic: str, options: JobOptions
    ) -> JobResult:
        result = JobResult()

        article: ArticleDraft = await self._run_step(
            db, job_id, STEP_ARTICLE, self._pipeline.generate_article, topic, required=True
        )
        result.article_title = article.title
        self._jobs.update_job(db, job_id, result=result.model_dump())

        if options.generate_image:
            result.image_path = await self._run_step(
                db, job_id, STEP_IMAGE, self._pipeline.generate_image, topic
            )
            if result.image_path is not None:
                self._jobs.update_job(db, job_id, result=result.model_dump())
        else:
            self._jobs.update_step(db, job_id, STEP_IMAGE, STEP_SKIPPED)

        if options.upload_to_wordpress:
            result.post_id = await self._run_step(
                db, job_id, STEP_WORDPRESS,
                self._pipeline.upload_to_wordpress, article, result.image_path,
            )
            if result.post_id is not None:
                self._jobs.update_job(db, job_id, result=result.model_dump())
        else:
            self._jobs.update_step(db, job_id, STEP_WORDPRESS, STEP_SKIPPED)

        if options.generate_pins:
            result.pins_generated = await self._run_step(
                db, job_id, STEP_PINS,
                self._pipeline.generate_pins, article, result.post_id, result.image_path,
            )
        else:
            self._jobs.update_step(db, job_id, STEP_PINS, STEP_SKIPPED)

        return result

    async def _run_step(
        self,
        db: Session,
        job_id: str,
        step: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        required: bool = False,
    ) -> Any:
        """Run one step, tracking its status. Optional steps swallow their errors and return None."""
        self._jobs.update_step(db, job_id, step, STEP_PROCESSING)
        logger.info("Step %s started", step)
        try:
            value = await func(*args)
        except SQLAlchemyError:
            raise
        except Exception as exc:
            self._jobs.update_step(db, job_id, step, STEP_FAILED)
            if required:
                raise
            logger.error("Step %s failed: %s", step, exc)
            return None
        self._jobs.update_step(db, job_id, step, STEP_COMPLETED)
        logger.info("Step %s completed", step)
        return value

    # ------------------------------------------------------------------
    # Outcome reporting
    # ------------------------------------------------------------------

    def _handle_success(self, db: Session, job_id: str, result: JobResult) -> None:
        self._jobs.update_job(
            db, job_id, status=JOB_STATUS_COMPLETED, result=result.model_dump()
        )
        self._retries.mark_retry_successful(db, job_id)
        logger.info("Job completed", extra={"article_title": result.article_title})

        entry = self._scheduler.get_by_job_id(db, job_id)
        if entry is not None and entry.status == SCHEDULE_STATUS_PROCESSING:
            self._scheduler.mark_as_completed(db, entry.id)

    def _handle_failure(self, db: Session, job_id: str, message: str) -> None:
        self._jobs.update_job(db, job_id, status=JOB_STATUS_FAILED, error=message)
        outcome = self._retries.queue_for_retry(db, job_id, message, self._retry_config)

        retry_entry = self._retries.get_retry_status(db, job_id)
        gave_up = not outcome.queued or (retry_entry is not None and retry_entry.is_exhausted)
        if not gave_up:
            return

        entry = self._scheduler.get_by_job_id(db, job_id)
        if entry is not None and entry.status == SCHEDULE_STATUS_PROCESSING:
            self._scheduler.mark_as_failed(db, entry.id, message)
