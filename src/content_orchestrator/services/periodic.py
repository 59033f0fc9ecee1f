"""Single-flight interval timer on the running asyncio loop, using APScheduler.

``max_instances=1`` means a tick that is still running when the next one is
due causes that next tick to be skipped (APScheduler logs a warning), never
re-entered. ``coalesce=True`` collapses a backlog of missed ticks into one.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class PeriodicRunner:
    """Owns one APScheduler instance running one coroutine at a fixed interval."""

    def __init__(self, name: str, func: Callable[[], Awaitable[Any]]) -> None:
        self.name = name
        self._func = func
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self, interval_seconds: float) -> bool:
        """Start ticking every ``interval_seconds``.

        Must be called from inside a running event loop. Returns False (and
        logs a warning) when this runner is already active.
        """
        if self.running:
            logger.warning("%s already running", self.name)
            return False

        scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        scheduler.add_job(
            self._func,
            trigger=IntervalTrigger(seconds=interval_seconds),
            id=self.name,
            name=self.name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Started %s", self.name, extra={"interval_seconds": interval_seconds})
        return True

    def stop(self) -> None:
        """Cancel the timer. Safe to call when not running."""
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Stopped %s", self.name)
