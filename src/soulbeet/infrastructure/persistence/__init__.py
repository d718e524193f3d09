"""Infrastructure persistence layer."""

from .database import Database
from .job_store import SqlAlchemyJobStore
from .models import Base, JobModel
from .retry import DatabaseLockMetrics, with_db_retry

__all__ = [
    "Base",
    "Database",
    "DatabaseLockMetrics",
    "JobModel",
    "SqlAlchemyJobStore",
    "with_db_retry",
]
