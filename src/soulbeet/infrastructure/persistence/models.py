"""SQLAlchemy ORM models for the job store."""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


# Hey future me - SQLite doesn't preserve timezone info! UTC datetimes come back naive.
# ALWAYS run DB datetimes through this before comparing with datetime.now(UTC).
def ensure_utc_aware(dt: datetime) -> datetime:
    """Ensure datetime is UTC-aware, assuming naive datetimes are UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Hey future me - the scalar columns are the ones we QUERY on (state, next_attempt_at,
# updated_at) or must update independently (cancel_requested, version). Everything
# nested (transfers, import groups, history, outcome) lives in JSON columns; it's only
# ever read and written together with the job.
#
# cancel_requested is written by request_cancel() WITHOUT bumping version, and
# job_store.update() never writes it back. That way a worker holding an older copy
# can't clear a cancel the user just asked for.
class JobModel(Base):
    """SQLAlchemy model for the acquisition Job entity."""

    __tablename__ = "acquisition_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    request_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    state: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    mode: Mapped[str] = mapped_column(String(16), nullable=False)
    target_folder: Mapped[str] = mapped_column(String(1024), nullable=False)
    requested_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    request_created_at: Mapped[datetime] = mapped_column(nullable=False)

    request_transfers: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    transfers: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    import_groups: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    outcome: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    history: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_attempt_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    unknown_polls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    integrity_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    __table_args__ = (
        # Recovery / scheduling query: non-terminal jobs that are due, oldest first
        Index("ix_acquisition_jobs_state_next_attempt", "state", "next_attempt_at"),
        Index("ix_acquisition_jobs_state_updated", "state", "updated_at"),
    )
