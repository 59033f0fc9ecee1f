"""Structured JSON logging configuration for the content orchestrator.

Call ``configure_logging()`` once at process startup. After that, every
``logging.getLogger(__name__)`` call produces one JSON object per line on
stdout.

``bind_job_id()`` binds the id of the job being executed to ``contextvars``
so all log records emitted while a job runs (including from inside the
content pipeline) automatically include ``job_id``. Each asyncio task gets
its own copy of the context, so concurrent jobs never see each other's id.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator

_job_id_var: ContextVar[str] = ContextVar("job_id", default="")

# Attributes every LogRecord carries; anything else came in through extra={}
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.NOTSET, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


def get_job_id() -> str:
    """Return the job ID bound to the current async context (empty string if none)."""
    return _job_id_var.get()


@contextmanager
def bind_job_id(job_id: str) -> Iterator[None]:
    """Bind ``job_id`` to every log record emitted inside the ``with`` block."""
    token = _job_id_var.set(job_id)
    try:
        yield
    finally:
        _job_id_var.reset(token)


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class _JsonFormatter(logging.Formatter):
    """One JSON object per record: level, logger, message, bound job id, extras."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        job_id = get_job_id()
        if job_id:
            payload["job_id"] = job_id
        payload.update(_extra_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO") -> None:
    """Replace the root logger's handlers with a single JSON-to-stdout handler.

    Args:
        level: Logging level name, e.g. ``"INFO"`` or ``"DEBUG"``. Unknown
            names fall back to INFO.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    # APScheduler logs every tick at INFO; keep its warnings (skipped runs) only
    for noisy in ("apscheduler.scheduler", "apscheduler.executors.default", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Structured JSON logging initialised",
        extra={"log_level": logging.getLevelName(numeric_level)},
    )
