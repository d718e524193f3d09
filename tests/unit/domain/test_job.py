"""Tests for the Job entity and its state machine."""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from soulbeet.domain.entities import (
    ALLOWED_TRANSITIONS,
    AcquisitionRequest,
    FileImportOutcome,
    GroupStatus,
    ImportGroup,
    ImportOutcome,
    Job,
    JobState,
    TransferState,
)
from soulbeet.domain.exceptions import (
    DataIntegrityError,
    InvalidStateException,
    InvalidTransitionError,
    PermanentImportRejection,
    TransientLocalError,
    TransientRemoteError,
    ValidationException,
)
from soulbeet.domain.value_objects import ImportMode, JobId, TransferSpec

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def _request(*names: str, mode: ImportMode = ImportMode.SINGLETON) -> AcquisitionRequest:
    return AcquisitionRequest(
        transfers=tuple(TransferSpec("peer", n, 100) for n in names or ("a\\b\\01.flac",)),
        target_folder=Path("/music/library"),
        mode=mode,
    )


def _imported(*paths: str) -> ImportOutcome:
    return ImportOutcome(
        success=True,
        detail="ok",
        per_file={p: FileImportOutcome.IMPORTED for p in paths},
    )


def _walk_to(job: Job, state: JobState) -> Job:
    """Drive a fresh job along the happy path until it reaches state."""
    steps = [
        (JobState.QUEUED, job.mark_queued),
        (JobState.DOWNLOADING, job.mark_downloading),
        (JobState.VERIFYING, job.mark_verifying),
        (JobState.IMPORTING, job.mark_importing),
    ]
    for target, step in steps:
        if job.state == state:
            break
        step(now=NOW)
        if target == state:
            break
    return job


class TestAcquisitionRequest:
    """Test request validation."""

    def test_requires_transfers(self) -> None:
        with pytest.raises(ValidationException):
            AcquisitionRequest(transfers=(), target_folder=Path("/music"))

    def test_requires_target_folder(self) -> None:
        with pytest.raises(ValidationException):
            AcquisitionRequest(transfers=(TransferSpec("peer", "x.flac"),), target_folder="  ")

    def test_coerces_list_and_str(self) -> None:
        request = AcquisitionRequest(
            transfers=[TransferSpec("peer", "x.flac")],  # type: ignore[arg-type]
            target_folder="/music",  # type: ignore[arg-type]
        )
        assert isinstance(request.transfers, tuple)
        assert request.target_folder == Path("/music")

    def test_transfer_spec_validation(self) -> None:
        with pytest.raises(ValidationException):
            TransferSpec("", "x.flac")
        with pytest.raises(ValidationException):
            TransferSpec("peer", "x.flac", size=-1)

    def test_basename_handles_windows_separators(self) -> None:
        assert TransferSpec("peer", "@@music\\Artist\\Album\\01.flac").basename == "01.flac"


class TestJobId:
    def test_round_trip(self) -> None:
        job_id = JobId.generate()
        assert JobId.from_string(str(job_id)) == job_id

    def test_invalid(self) -> None:
        with pytest.raises(ValidationException):
            JobId.from_string("not-a-uuid")


class TestJobCreation:
    """Test Job.create."""

    def test_created_state_with_history(self) -> None:
        job = Job.create(_request("a\\01.flac", "a\\02.flac"))

        assert job.state == JobState.CREATED
        assert len(job.transfers) == 2
        assert all(t.state == TransferState.PENDING for t in job.transfers)
        assert job.history[0].from_state is None
        assert job.history[0].to_state == JobState.CREATED
        assert job.is_due()

    def test_expected_files_fixed_by_request(self) -> None:
        job = Job.create(_request("a\\01.flac", "a\\02.flac"))
        job.transfers[0].dropped = True

        assert job.expected_files == ("a\\01.flac", "a\\02.flac")
        assert len(job.active_transfers) == 1

    def test_negative_max_retries_rejected(self) -> None:
        with pytest.raises(ValidationException):
            Job.create(_request(), max_retries=-1)


class TestTransitions:
    """Test that only the transition table is allowed."""

    def test_happy_path_records_history(self) -> None:
        job = _walk_to(Job.create(_request()), JobState.IMPORTING)
        job.mark_completed(_imported("/dl/a/01.flac"), now=NOW)

        assert job.state == JobState.COMPLETED
        assert [c.to_state for c in job.history] == [
            JobState.CREATED,
            JobState.QUEUED,
            JobState.DOWNLOADING,
            JobState.VERIFYING,
            JobState.IMPORTING,
            JobState.COMPLETED,
        ]
        assert job.next_attempt_at is None
        assert job.is_terminal

    def test_skipping_a_state_is_rejected(self) -> None:
        job = Job.create(_request())

        with pytest.raises(InvalidTransitionError) as exc_info:
            job.mark_importing(now=NOW)

        assert exc_info.value.current == JobState.CREATED
        assert job.state == JobState.CREATED
        assert len(job.history) == 1

    def test_terminal_states_have_no_exits(self) -> None:
        for state in (JobState.COMPLETED, JobState.FAILED_PERMANENTLY, JobState.CANCELLED):
            assert state.is_terminal
            assert ALLOWED_TRANSITIONS[state] == frozenset()

    def test_completed_requires_an_imported_file(self) -> None:
        job = _walk_to(Job.create(_request()), JobState.IMPORTING)
        outcome = ImportOutcome(
            success=False, detail="x", per_file={"/a": FileImportOutcome.SKIPPED}
        )

        with pytest.raises(InvalidStateException):
            job.mark_completed(outcome, now=NOW)
        assert job.state == JobState.IMPORTING

    def test_entered_state_at_uses_latest_entry(self) -> None:
        job = _walk_to(Job.create(_request()), JobState.DOWNLOADING)
        later = NOW + timedelta(minutes=5)
        job.record_failure(TransientLocalError("disk"), now=later)
        job.retry(now=later)
        job.mark_downloading(now=later + timedelta(seconds=1))

        assert job.entered_state_at(JobState.DOWNLOADING) == later + timedelta(seconds=1)


class TestFailureAndRetry:
    """Test record_failure / retry bookkeeping."""

    def test_transient_failure_schedules_backoff(self) -> None:
        job = _walk_to(Job.create(_request(), max_retries=3), JobState.QUEUED)

        will_retry = job.record_failure(
            TransientRemoteError("slskd down"), backoff_base=30, backoff_max=900, now=NOW
        )

        assert will_retry is True
        assert job.state == JobState.FAILED
        assert job.last_error == "slskd down"
        assert job.last_error_code == "remote_transient"
        assert job.next_attempt_at == NOW + timedelta(seconds=30)

    def test_backoff_grows_exponentially_and_is_capped(self) -> None:
        job = Job.create(_request(), max_retries=10)
        job.retry_count = 2
        assert job.retry_delay(30, 900) == 120
        job.retry_count = 8
        assert job.retry_delay(30, 900) == 900

    def test_permanent_error_skips_retry(self) -> None:
        job = _walk_to(Job.create(_request()), JobState.IMPORTING)

        will_retry = job.record_failure(PermanentImportRejection("all skipped"), now=NOW)

        assert will_retry is False
        assert job.state == JobState.FAILED_PERMANENTLY
        assert [c.to_state for c in job.history][-2:] == [
            JobState.FAILED,
            JobState.FAILED_PERMANENTLY,
        ]
        assert job.last_error_code == "import_rejected"

    def test_retry_ceiling(self) -> None:
        """max_retries=2 allows 2 retries; the third failure is permanent."""
        job = _walk_to(Job.create(_request(), max_retries=2), JobState.QUEUED)

        outcomes = []
        for _ in range(3):
            outcomes.append(job.record_failure(TransientRemoteError("down"), now=NOW))
            if job.state == JobState.FAILED:
                job.retry(now=NOW)

        assert outcomes == [True, True, False]
        assert job.retry_count == 2
        assert job.state == JobState.FAILED_PERMANENTLY
        assert "retries exhausted" in job.history[-1].reason

    def test_data_integrity_error_retried_once(self) -> None:
        job = _walk_to(Job.create(_request(), max_retries=5), JobState.VERIFYING)

        assert job.record_failure(DataIntegrityError("vanished"), now=NOW) is True
        job.retry(now=NOW)
        job.mark_downloading(now=NOW)
        job.mark_verifying(now=NOW)

        assert job.record_failure(DataIntegrityError("vanished again"), now=NOW) is False
        assert job.state == JobState.FAILED_PERMANENTLY

    def test_failure_while_failed_does_not_duplicate_history(self) -> None:
        job = _walk_to(Job.create(_request()), JobState.QUEUED)
        job.record_failure(TransientRemoteError("a"), now=NOW)
        entries = len(job.history)

        job.record_failure(TransientRemoteError("b"), now=NOW)

        assert len(job.history) == entries
        assert job.last_error == "b"

    def test_retry_keeps_completed_work(self) -> None:
        job = _walk_to(
            Job.create(_request("a\\01.flac", "a\\02.flac"), max_retries=3), JobState.IMPORTING
        )
        done, pending = job.transfers
        done.state = TransferState.COMPLETE
        done.local_path = "/dl/a/01.flac"
        done.agent_id = "peer/a\\01.flac"
        pending.state = TransferState.FAILED
        pending.agent_id = "peer/a\\02.flac"
        job.import_groups = [
            ImportGroup("/dl/a/01.flac", ["/dl/a/01.flac"], ImportMode.SINGLETON, GroupStatus.IMPORTED),
            ImportGroup("/dl/a/02.flac", ["/dl/a/02.flac"], ImportMode.SINGLETON, GroupStatus.FAILED),
        ]
        job.unknown_polls = 4
        job.record_failure(TransientLocalError("beets crashed"), now=NOW)

        job.retry(now=NOW)

        assert job.state == JobState.QUEUED
        assert job.retry_count == 1
        assert job.unknown_polls == 0
        assert done.local_path == "/dl/a/01.flac"
        assert done.agent_id is not None
        assert pending.agent_id is None
        assert pending.state == TransferState.PENDING
        assert [g.status for g in job.import_groups] == [GroupStatus.IMPORTED, GroupStatus.PENDING]


class TestCancel:
    def test_cancel_from_any_active_state(self) -> None:
        for state in (JobState.CREATED, JobState.QUEUED, JobState.IMPORTING):
            job = _walk_to(Job.create(_request()), state)
            job.cancel(now=NOW)
            assert job.state == JobState.CANCELLED
            assert job.next_attempt_at is None

    def test_cancel_terminal_job_rejected(self) -> None:
        job = _walk_to(Job.create(_request()), JobState.IMPORTING)
        job.mark_completed(_imported("/a"), now=NOW)

        with pytest.raises(InvalidStateException):
            job.cancel(now=NOW)


class TestScheduling:
    def test_is_due(self) -> None:
        job = Job.create(_request())
        job.schedule_next(10, now=NOW)

        assert not job.is_due(NOW)
        assert job.is_due(NOW + timedelta(seconds=10))

    def test_terminal_job_never_due(self) -> None:
        job = Job.create(_request())
        job.cancel(now=NOW)
        assert not job.is_due(NOW + timedelta(days=1))
