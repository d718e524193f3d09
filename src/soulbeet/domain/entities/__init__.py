"""Domain entities."""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import ClassVar
from uuid import uuid4

from soulbeet.domain.exceptions import (
    AcquisitionError,
    DataIntegrityError,
    InvalidStateException,
    InvalidTransitionError,
    ValidationException,
)
from soulbeet.domain.value_objects import ImportMode, JobId, TransferSpec


def _now() -> datetime:
    return datetime.now(UTC)


# Hey future me - an AcquisitionRequest is what the user asked for and it NEVER changes.
# Everything the engine learns later (agent ids, local paths, importer output) lives on the Job.
# The expected files of a job are exactly request.transfers - best-effort album mode marks
# transfers as dropped, it never removes them from here.
@dataclass(frozen=True)
class AcquisitionRequest:
    """A user's request to download files and import them into a library folder."""

    transfers: tuple[TransferSpec, ...]
    target_folder: Path
    mode: ImportMode = ImportMode.SINGLETON
    requested_by: str | None = None
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=_now)

    def __post_init__(self) -> None:
        if not self.transfers:
            raise ValidationException("Acquisition request needs at least one transfer")
        if not str(self.target_folder).strip():
            raise ValidationException("Acquisition request needs a target folder")
        # Accept lists from callers, store a tuple so the request stays hashable/immutable
        if not isinstance(self.transfers, tuple):
            object.__setattr__(self, "transfers", tuple(self.transfers))
        if not isinstance(self.target_folder, Path):
            object.__setattr__(self, "target_folder", Path(self.target_folder))


class JobState(str, Enum):
    """Lifecycle state of an acquisition job."""

    CREATED = "created"  # Persisted, nothing sent to the agent yet
    QUEUED = "queued"  # Transfers enqueued, polling the agent
    DOWNLOADING = "downloading"  # Agent says done, waiting for stable local files
    VERIFYING = "verifying"  # Files stable, re-checking and planning import groups
    IMPORTING = "importing"  # Importer running group by group
    COMPLETED = "completed"
    FAILED = "failed"  # Waiting for retry (or about to be marked permanent)
    FAILED_PERMANENTLY = "failed_permanently"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Terminal states are never mutated again."""
        return self in (
            JobState.COMPLETED,
            JobState.FAILED_PERMANENTLY,
            JobState.CANCELLED,
        )


# The ONLY transitions the engine may perform. Anything else is a bug in the caller.
ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.CREATED: frozenset({JobState.QUEUED, JobState.FAILED, JobState.CANCELLED}),
    JobState.QUEUED: frozenset(
        {JobState.DOWNLOADING, JobState.FAILED, JobState.CANCELLED}
    ),
    JobState.DOWNLOADING: frozenset(
        {JobState.VERIFYING, JobState.FAILED, JobState.CANCELLED}
    ),
    JobState.VERIFYING: frozenset(
        {JobState.IMPORTING, JobState.FAILED, JobState.CANCELLED}
    ),
    JobState.IMPORTING: frozenset(
        {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED}
    ),
    JobState.FAILED: frozenset(
        {JobState.QUEUED, JobState.FAILED_PERMANENTLY, JobState.CANCELLED}
    ),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED_PERMANENTLY: frozenset(),
    JobState.CANCELLED: frozenset(),
}


class TransferState(str, Enum):
    """State of a single transfer as last seen on the agent."""

    PENDING = "pending"  # Not (or no longer) enqueued on the agent
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"
    UNKNOWN = "unknown"  # Agent unreachable or transfer not visible (yet)


@dataclass
class TransferRecord:
    """Engine-side view of one transfer of a job."""

    spec: TransferSpec
    agent_id: str | None = None
    state: TransferState = TransferState.PENDING
    progress: float = 0.0
    error: str | None = None
    first_seen_at: datetime | None = None
    # Path the agent reported for the finished file and where we found it locally
    reported_path: str | None = None
    local_path: str | None = None
    # Best-effort album mode: transfer failed and the job continues without it
    dropped: bool = False

    @property
    def is_open(self) -> bool:
        """True while the engine still waits for the agent on this transfer."""
        return not self.dropped and self.state not in (
            TransferState.COMPLETE,
            TransferState.FAILED,
        )

    def reset(self) -> None:
        """Forget agent-side progress so the transfer gets enqueued again."""
        self.agent_id = None
        self.state = TransferState.PENDING
        self.progress = 0.0
        self.error = None
        self.first_seen_at = None
        self.reported_path = None
        self.local_path = None


class GroupStatus(str, Enum):
    """Import status of one import group."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"  # Persisted BEFORE the importer is launched
    IMPORTED = "imported"
    SKIPPED = "skipped"
    FAILED = "failed"


class FileImportOutcome(str, Enum):
    """What the importer did with one file."""

    IMPORTED = "imported"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ImportGroup:
    """One importer invocation: a single file (singleton) or one directory (album)."""

    key: str
    paths: list[str]
    mode: ImportMode
    status: GroupStatus = GroupStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    detail: str | None = None

    @property
    def is_done(self) -> bool:
        return self.status in (GroupStatus.IMPORTED, GroupStatus.SKIPPED)


@dataclass
class ImportOutcome:
    """Aggregated result of all import groups of a job."""

    success: bool
    detail: str
    per_file: dict[str, FileImportOutcome] = field(default_factory=dict)
    raw_output: str = ""

    @property
    def imported_count(self) -> int:
        return sum(1 for o in self.per_file.values() if o == FileImportOutcome.IMPORTED)

    @property
    def skipped_files(self) -> list[str]:
        return [p for p, o in self.per_file.items() if o == FileImportOutcome.SKIPPED]


@dataclass(frozen=True)
class StateChange:
    """One entry of a job's state history."""

    from_state: JobState | None
    to_state: JobState
    at: datetime
    reason: str = ""


# Hey future me - Job is THE record of an acquisition. The orchestration loop is the only
# writer of state; it goes through the mark_* / record_failure / retry / cancel methods which
# enforce ALLOWED_TRANSITIONS and append to history. Don't set job.state directly - you'd skip
# the history entry and the wait window in the resolver is computed from that history!
#
# RETRY-FLOW:
# 1. Something fails -> record_failure() moves the job to FAILED with last_error(_code)
# 2. Retryable and retry_count < max_retries -> next_attempt_at = now + backoff, stays FAILED
# 3. Worker picks it up when due -> retry() moves FAILED -> QUEUED, retry_count++
# 4. Not retryable or ceiling reached -> FAILED -> FAILED_PERMANENTLY right away
#
# BACKOFF FORMULA: min(base * 2**retry_count, max)
@dataclass
class Job:
    """Acquisition job entity driven by the orchestration loop."""

    id: JobId
    request: AcquisitionRequest
    state: JobState = JobState.CREATED
    transfers: list[TransferRecord] = field(default_factory=list)
    import_groups: list[ImportGroup] = field(default_factory=list)
    outcome: ImportOutcome | None = None
    history: list[StateChange] = field(default_factory=list)
    retry_count: int = 0
    max_retries: int = 3
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    last_error_code: str | None = None
    unknown_polls: int = 0
    integrity_failures: int = 0
    cancel_requested: bool = False
    version: int = 0
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    # DataIntegrityError gets exactly one more chance, then it's permanent
    _MAX_INTEGRITY_RETRIES: ClassVar[int] = 1

    @classmethod
    def create(cls, request: AcquisitionRequest, max_retries: int = 3) -> "Job":
        """Create a new job for a request, in CREATED state."""
        if max_retries < 0:
            raise ValidationException("max_retries cannot be negative")
        now = _now()
        job = cls(
            id=JobId.generate(),
            request=request,
            transfers=[TransferRecord(spec=spec) for spec in request.transfers],
            max_retries=max_retries,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        job.history.append(StateChange(None, JobState.CREATED, now, "job created"))
        return job

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def expected_files(self) -> tuple[str, ...]:
        """Files the job was created for (fixed for the job's lifetime)."""
        return tuple(spec.filename for spec in self.request.transfers)

    @property
    def active_transfers(self) -> list[TransferRecord]:
        """Transfers that were not dropped by best-effort album mode."""
        return [t for t in self.transfers if not t.dropped]

    @property
    def resolved_paths(self) -> list[str]:
        """Local paths of active transfers that have been located on disk."""
        return [t.local_path for t in self.active_transfers if t.local_path]

    def is_due(self, now: datetime | None = None) -> bool:
        if self.is_terminal:
            return False
        if self.next_attempt_at is None:
            return True
        return self.next_attempt_at <= (now or _now())

    def entered_state_at(self, state: JobState) -> datetime | None:
        """When the job most recently entered the given state (from persisted history)."""
        for change in reversed(self.history):
            if change.to_state == state:
                return change.at
        return None

    def retry_delay(self, backoff_base: float, backoff_max: float) -> float:
        """Seconds to wait before the next retry attempt."""
        return float(min(backoff_base * (2**self.retry_count), backoff_max))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, to_state: JobState, reason: str, now: datetime | None) -> None:
        if to_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.id, self.state, to_state)
        at = now or _now()
        self.history.append(StateChange(self.state, to_state, at, reason))
        self.state = to_state
        self.updated_at = at

    def mark_queued(self, reason: str = "transfers enqueued", now: datetime | None = None) -> None:
        self._transition(JobState.QUEUED, reason, now)

    def mark_downloading(
        self, reason: str = "agent reports transfers complete", now: datetime | None = None
    ) -> None:
        self._transition(JobState.DOWNLOADING, reason, now)

    def mark_verifying(
        self, reason: str = "all files present and stable", now: datetime | None = None
    ) -> None:
        self._transition(JobState.VERIFYING, reason, now)

    def mark_importing(self, reason: str = "import planned", now: datetime | None = None) -> None:
        self._transition(JobState.IMPORTING, reason, now)

    def mark_completed(self, outcome: ImportOutcome, now: datetime | None = None) -> None:
        """Mark job as completed with the aggregated import outcome."""
        if outcome.imported_count == 0:
            raise InvalidStateException(
                f"Job {self.id}: cannot complete without any imported track"
            )
        self._transition(JobState.COMPLETED, outcome.detail, now)
        self.outcome = outcome
        self.next_attempt_at = None

    def record_failure(
        self,
        error: AcquisitionError,
        *,
        backoff_base: float = 30.0,
        backoff_max: float = 900.0,
        permanent: bool = False,
        now: datetime | None = None,
    ) -> bool:
        """Move the job to FAILED and decide between retry and permanent failure.

        Hey future me - this is the ONLY place that turns an AcquisitionError into
        job state. If the job is already FAILED (e.g. retry() itself blew up) we
        don't add another FAILED entry, we just re-decide.

        Args:
            error: Classified failure
            backoff_base: Base delay in seconds for the exponential backoff
            backoff_max: Cap for the backoff delay
            permanent: Force permanent failure regardless of error.retryable
            now: Current time (tests)

        Returns:
            True if a retry was scheduled, False if the job failed permanently
        """
        at = now or _now()
        if self.state != JobState.FAILED:
            self._transition(JobState.FAILED, f"{error.error_code}: {error.message}", at)
        self.last_error = error.message
        self.last_error_code = error.error_code

        if self._should_retry(error, permanent):
            if isinstance(error, DataIntegrityError):
                self.integrity_failures += 1
            self.next_attempt_at = at + timedelta(
                seconds=self.retry_delay(backoff_base, backoff_max)
            )
            self.updated_at = at
            return True

        reason = (
            f"retries exhausted ({self.retry_count}/{self.max_retries}): {error.message}"
            if error.retryable and not permanent
            else error.message
        )
        self._transition(JobState.FAILED_PERMANENTLY, reason, at)
        self.next_attempt_at = None
        return False

    def _should_retry(self, error: AcquisitionError, permanent: bool) -> bool:
        if permanent or not error.retryable:
            return False
        if self.retry_count >= self.max_retries:
            return False
        if isinstance(error, DataIntegrityError):
            return self.integrity_failures < self._MAX_INTEGRITY_RETRIES
        return True

    def retry(self, now: datetime | None = None) -> None:
        """FAILED -> QUEUED: re-enqueue what did not complete, keep what did.

        Completed transfers keep their local paths and imported groups are never
        touched again. Failed/skipped groups go back to PENDING so they get
        another importer run.
        """
        at = now or _now()
        self._transition(JobState.QUEUED, f"retry {self.retry_count + 1}/{self.max_retries}", at)
        self.retry_count += 1
        self.unknown_polls = 0
        self.next_attempt_at = at
        for transfer in self.transfers:
            if not transfer.dropped and transfer.state != TransferState.COMPLETE:
                transfer.reset()
        for group in self.import_groups:
            if group.status in (GroupStatus.FAILED, GroupStatus.SKIPPED):
                group.status = GroupStatus.PENDING
                group.detail = None

    def cancel(self, reason: str = "cancelled by user", now: datetime | None = None) -> None:
        """Cancel the job from any non-terminal state."""
        if self.is_terminal:
            raise InvalidStateException(
                f"Job {self.id} is {self.state.value} and cannot be cancelled"
            )
        self._transition(JobState.CANCELLED, reason, now)
        self.next_attempt_at = None

    def schedule_next(self, delay_seconds: float, now: datetime | None = None) -> None:
        """Set when the worker should look at this job again."""
        at = now or _now()
        self.next_attempt_at = at + timedelta(seconds=max(0.0, delay_seconds))
        self.updated_at = at


__all__ = [
    "ALLOWED_TRANSITIONS",
    "AcquisitionRequest",
    "FileImportOutcome",
    "GroupStatus",
    "ImportGroup",
    "ImportOutcome",
    "Job",
    "JobState",
    "StateChange",
    "TransferRecord",
    "TransferState",
]
