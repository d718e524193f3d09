"""SQLAlchemy implementation of the Job store."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import delete, or_, select, update

from soulbeet.domain.entities import (
    AcquisitionRequest,
    FileImportOutcome,
    GroupStatus,
    ImportGroup,
    ImportOutcome,
    Job,
    JobState,
    StateChange,
    TransferRecord,
    TransferState,
)
from soulbeet.domain.exceptions import (
    ConcurrentModificationError,
    EntityNotFoundException,
    ValidationException,
)
from soulbeet.domain.ports import IJobStore
from soulbeet.domain.value_objects import ImportMode, JobId, TransferSpec
from soulbeet.infrastructure.persistence.database import Database
from soulbeet.infrastructure.persistence.models import JobModel, ensure_utc_aware
from soulbeet.infrastructure.persistence.retry import with_db_retry

logger = logging.getLogger(__name__)

TERMINAL_STATES = [s.value for s in JobState if s.is_terminal]


class SqlAlchemyJobStore(IJobStore):
    """Job store backed by SQLAlchemy (SQLite via aiosqlite by default).

    Hey future me - every method opens its OWN session and commits before returning.
    That's the durability promise: when add()/update() return, the row is on disk.
    Don't pass a shared session in here, the worker runs many jobs concurrently.
    """

    def __init__(self, database: Database) -> None:
        """Initialize store with database."""
        self._db = database

    @with_db_retry(max_attempts=3)
    async def add(self, job: Job) -> None:
        """Add a new job."""
        async with self._db.session_scope() as session:
            model = JobModel(
                id=str(job.id),
                cancel_requested=job.cancel_requested,
                version=job.version,
                created_at=job.created_at,
                **_request_fields(job.request),
                **_mutable_fields(job),
            )
            session.add(model)
        logger.debug("Stored job %s (%s)", job.id, job.state.value)

    @with_db_retry(max_attempts=3)
    async def get(self, job_id: JobId) -> Job | None:
        """Get a job by ID."""
        async with self._db.session_scope() as session:
            model = await session.get(JobModel, str(job_id))
            return _to_entity(model) if model else None

    @with_db_retry(max_attempts=3)
    async def update(self, job: Job) -> None:
        """Persist job changes if job.version is still current, then bump it."""
        async with self._db.session_scope() as session:
            result = await session.execute(
                update(JobModel)
                .where(JobModel.id == str(job.id), JobModel.version == job.version)
                .values(version=job.version + 1, **_mutable_fields(job))
            )
            if result.rowcount == 0:  # type: ignore[attr-defined]
                exists = await session.scalar(
                    select(JobModel.id).where(JobModel.id == str(job.id))
                )
                if exists is None:
                    raise EntityNotFoundException("Job", job.id)
                raise ConcurrentModificationError(job.id, job.version)
        job.version += 1

    @with_db_retry(max_attempts=3)
    async def delete(self, job_id: JobId) -> None:
        """Delete a job."""
        async with self._db.session_scope() as session:
            result = await session.execute(
                delete(JobModel).where(JobModel.id == str(job_id))
            )
            if result.rowcount == 0:  # type: ignore[attr-defined]
                raise EntityNotFoundException("Job", job_id)

    @with_db_retry(max_attempts=3)
    async def list_active(
        self, due_before: datetime | None = None, limit: int | None = None
    ) -> list[Job]:
        """List non-terminal jobs, least recently updated first."""
        stmt = select(JobModel).where(JobModel.state.not_in(TERMINAL_STATES))
        if due_before is not None:
            stmt = stmt.where(
                or_(
                    JobModel.next_attempt_at.is_(None),
                    JobModel.next_attempt_at <= due_before,
                )
            )
        stmt = stmt.order_by(JobModel.updated_at.asc(), JobModel.created_at.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._db.session_scope() as session:
            result = await session.execute(stmt)
            return [_to_entity(m) for m in result.scalars().all()]

    @with_db_retry(max_attempts=3)
    async def list_jobs(
        self, state: JobState | None = None, limit: int = 100, offset: int = 0
    ) -> list[Job]:
        """List jobs, newest first, optionally filtered by state."""
        stmt = select(JobModel)
        if state is not None:
            stmt = stmt.where(JobModel.state == state.value)
        stmt = stmt.order_by(JobModel.created_at.desc()).limit(limit).offset(offset)
        async with self._db.session_scope() as session:
            result = await session.execute(stmt)
            return [_to_entity(m) for m in result.scalars().all()]

    @with_db_retry(max_attempts=3)
    async def request_cancel(self, job_id: JobId) -> bool:
        """Set the persisted cancel flag (does not touch version)."""
        async with self._db.session_scope() as session:
            result = await session.execute(
                update(JobModel)
                .where(JobModel.id == str(job_id))
                .values(cancel_requested=True)
            )
            return bool(result.rowcount)  # type: ignore[attr-defined]

    @with_db_retry(max_attempts=3)
    async def is_cancel_requested(self, job_id: JobId) -> bool:
        """Read the persisted cancel flag."""
        async with self._db.session_scope() as session:
            flag = await session.scalar(
                select(JobModel.cancel_requested).where(JobModel.id == str(job_id))
            )
            return bool(flag)


# =============================================================================
# Entity <-> row conversion
# =============================================================================


def _request_fields(request: AcquisitionRequest) -> dict[str, Any]:
    return {
        "request_id": request.id,
        "mode": request.mode.value,
        "target_folder": str(request.target_folder),
        "requested_by": request.requested_by,
        "request_created_at": request.created_at,
        "request_transfers": [_spec_to_dict(s) for s in request.transfers],
    }


# Hey future me - cancel_requested is NOT in here on purpose, see JobModel.
def _mutable_fields(job: Job) -> dict[str, Any]:
    return {
        "state": job.state.value,
        "transfers": [_transfer_to_dict(t) for t in job.transfers],
        "import_groups": [_group_to_dict(g) for g in job.import_groups],
        "outcome": _outcome_to_dict(job.outcome) if job.outcome else None,
        "history": [_change_to_dict(c) for c in job.history],
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "next_attempt_at": job.next_attempt_at,
        "last_error": job.last_error,
        "last_error_code": job.last_error_code,
        "unknown_polls": job.unknown_polls,
        "integrity_failures": job.integrity_failures,
        "updated_at": job.updated_at,
    }


def _to_entity(model: JobModel) -> Job:
    try:
        state = JobState(model.state)
        mode = ImportMode(model.mode)
    except ValueError as e:
        raise ValidationException(
            f"Invalid state/mode '{model.state}'/'{model.mode}' for job {model.id}"
        ) from e

    request = AcquisitionRequest(
        id=model.request_id,
        transfers=tuple(_spec_from_dict(d) for d in model.request_transfers),
        target_folder=Path(model.target_folder),
        mode=mode,
        requested_by=model.requested_by,
        created_at=ensure_utc_aware(model.request_created_at),
    )
    return Job(
        id=JobId.from_string(model.id),
        request=request,
        state=state,
        transfers=[_transfer_from_dict(d) for d in model.transfers],
        import_groups=[_group_from_dict(d) for d in model.import_groups or []],
        outcome=_outcome_from_dict(model.outcome) if model.outcome else None,
        history=[_change_from_dict(d) for d in model.history or []],
        retry_count=model.retry_count,
        max_retries=model.max_retries,
        next_attempt_at=ensure_utc_aware(model.next_attempt_at)
        if model.next_attempt_at
        else None,
        last_error=model.last_error,
        last_error_code=model.last_error_code,
        unknown_polls=model.unknown_polls,
        integrity_failures=model.integrity_failures,
        cancel_requested=model.cancel_requested,
        version=model.version,
        created_at=ensure_utc_aware(model.created_at),
        updated_at=ensure_utc_aware(model.updated_at),
    )


def _dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dt_from_str(value: str | None) -> datetime | None:
    return ensure_utc_aware(datetime.fromisoformat(value)) if value else None


def _spec_to_dict(spec: TransferSpec) -> dict[str, Any]:
    return {"username": spec.username, "filename": spec.filename, "size": spec.size}


def _spec_from_dict(data: dict[str, Any]) -> TransferSpec:
    return TransferSpec(
        username=data["username"], filename=data["filename"], size=data.get("size", 0)
    )


def _transfer_to_dict(transfer: TransferRecord) -> dict[str, Any]:
    return {
        "spec": _spec_to_dict(transfer.spec),
        "agent_id": transfer.agent_id,
        "state": transfer.state.value,
        "progress": transfer.progress,
        "error": transfer.error,
        "first_seen_at": _dt_to_str(transfer.first_seen_at),
        "reported_path": transfer.reported_path,
        "local_path": transfer.local_path,
        "dropped": transfer.dropped,
    }


def _transfer_from_dict(data: dict[str, Any]) -> TransferRecord:
    return TransferRecord(
        spec=_spec_from_dict(data["spec"]),
        agent_id=data.get("agent_id"),
        state=TransferState(data.get("state", TransferState.PENDING.value)),
        progress=data.get("progress", 0.0),
        error=data.get("error"),
        first_seen_at=_dt_from_str(data.get("first_seen_at")),
        reported_path=data.get("reported_path"),
        local_path=data.get("local_path"),
        dropped=data.get("dropped", False),
    )


def _group_to_dict(group: ImportGroup) -> dict[str, Any]:
    return {
        "key": group.key,
        "paths": list(group.paths),
        "mode": group.mode.value,
        "status": group.status.value,
        "started_at": _dt_to_str(group.started_at),
        "finished_at": _dt_to_str(group.finished_at),
        "detail": group.detail,
    }


def _group_from_dict(data: dict[str, Any]) -> ImportGroup:
    return ImportGroup(
        key=data["key"],
        paths=list(data["paths"]),
        mode=ImportMode(data["mode"]),
        status=GroupStatus(data.get("status", GroupStatus.PENDING.value)),
        started_at=_dt_from_str(data.get("started_at")),
        finished_at=_dt_from_str(data.get("finished_at")),
        detail=data.get("detail"),
    )


def _outcome_to_dict(outcome: ImportOutcome) -> dict[str, Any]:
    return {
        "success": outcome.success,
        "detail": outcome.detail,
        "per_file": {path: o.value for path, o in outcome.per_file.items()},
        "raw_output": outcome.raw_output,
    }


def _outcome_from_dict(data: dict[str, Any]) -> ImportOutcome:
    return ImportOutcome(
        success=data["success"],
        detail=data.get("detail", ""),
        per_file={p: FileImportOutcome(o) for p, o in (data.get("per_file") or {}).items()},
        raw_output=data.get("raw_output", ""),
    )


def _change_to_dict(change: StateChange) -> dict[str, Any]:
    return {
        "from": change.from_state.value if change.from_state else None,
        "to": change.to_state.value,
        "at": _dt_to_str(change.at),
        "reason": change.reason,
    }


def _change_from_dict(data: dict[str, Any]) -> StateChange:
    return StateChange(
        from_state=JobState(data["from"]) if data.get("from") else None,
        to_state=JobState(data["to"]),
        at=ensure_utc_aware(datetime.fromisoformat(data["at"])),
        reason=data.get("reason", ""),
    )
