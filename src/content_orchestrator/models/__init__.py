from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


# Import all models so that Base.metadata.create_all picks them up.
from content_orchestrator.models.job import Job  # noqa: E402, F401
from content_orchestrator.models.job_retry import JobRetry  # noqa: E402, F401
from content_orchestrator.models.scheduled_content import ScheduledContent  # noqa: E402, F401
