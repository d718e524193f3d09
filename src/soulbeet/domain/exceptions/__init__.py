"""Domain exceptions."""

from typing import Any


class DomainException(Exception):
    """Base exception for all domain exceptions."""

    # Hey future me, we store message as an attribute so code can inspect it without parsing
    # str(exception). Don't raise this directly - use a specific subclass so callers can
    # catch precisely.
    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message


class EntityNotFoundException(DomainException):
    """Raised when an entity is not found."""

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} with id {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ValidationException(DomainException):
    """Raised when entity validation fails."""

    pass


class ConfigurationError(DomainException):
    """Raised when the configuration makes startup impossible (bad paths, URLs)."""

    pass


class InvalidStateException(DomainException):
    """Raised when an entity is in an invalid state for the requested operation.

    Example: cancelling a job that already completed.
    """

    pass


class InvalidTransitionError(InvalidStateException):
    """Raised when the job state machine is asked for a transition it does not allow.

    This is a programming error, not a user error - the orchestration code
    must only request transitions from the transition table.
    """

    def __init__(self, job_id: Any, current: Any, requested: Any) -> None:
        super().__init__(
            f"Job {job_id}: invalid transition {getattr(current, 'value', current)} "
            f"-> {getattr(requested, 'value', requested)}"
        )
        self.job_id = job_id
        self.current = current
        self.requested = requested


class ConcurrentModificationError(InvalidStateException):
    """Raised when a job write is based on a stale version of the record."""

    def __init__(self, job_id: Any, expected_version: int) -> None:
        super().__init__(
            f"Job {job_id} was modified concurrently (expected version {expected_version})"
        )
        self.job_id = job_id
        self.expected_version = expected_version


# =============================================================================
# Acquisition error taxonomy
# Hey future me - the orchestration loop ONLY looks at `retryable` and
# `error_code` to decide between "retry with backoff" and "fail permanently".
# Raise the most specific class you can, the codes end up on the job record!
# =============================================================================


class AcquisitionError(DomainException):
    """Base class for failures while advancing an acquisition job."""

    error_code: str = "acquisition_error"
    retryable: bool = False

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        # Extra diagnostic text (importer output, agent response body, ...)
        self.detail = detail


class TransientRemoteError(AcquisitionError):
    """Download agent unreachable, timed out, or not (yet) showing the transfer."""

    error_code = "remote_transient"
    retryable = True


class TransientLocalError(AcquisitionError):
    """Local condition that may clear up on its own (file not there yet, importer timeout)."""

    error_code = "local_transient"
    retryable = True


class PathNotFoundError(TransientLocalError):
    """A file reported complete by the agent never appeared on disk."""

    error_code = "path_not_found"

    def __init__(self, paths: list[str], waited_seconds: float) -> None:
        super().__init__(
            f"{len(paths)} file(s) not found after {waited_seconds:.0f}s: "
            + ", ".join(paths[:5])
        )
        self.paths = paths
        self.waited_seconds = waited_seconds


class ImporterTimeoutError(TransientLocalError):
    """Importer process exceeded its timeout and was killed."""

    error_code = "import_timeout"


class ImporterLaunchError(TransientLocalError):
    """Importer process could not be started."""

    error_code = "import_launch_failed"


class PermanentRemoteFailure(AcquisitionError):
    """The agent reports the transfer failed and will not retry it itself."""

    error_code = "remote_failed"


class PermanentImportRejection(AcquisitionError):
    """The importer definitively rejected the files."""

    error_code = "import_rejected"


class DataIntegrityError(AcquisitionError):
    """Files vanished or changed underneath us after being reported complete.

    Retried at most once (see Job.record_failure) - repeated integrity errors
    mean something else is touching the download area.
    """

    error_code = "data_integrity"
    retryable = True


__all__ = [
    "AcquisitionError",
    "ConcurrentModificationError",
    "ConfigurationError",
    "DataIntegrityError",
    "DomainException",
    "EntityNotFoundException",
    "ImporterLaunchError",
    "ImporterTimeoutError",
    "InvalidStateException",
    "InvalidTransitionError",
    "PathNotFoundError",
    "PermanentImportRejection",
    "PermanentRemoteFailure",
    "TransientLocalError",
    "TransientRemoteError",
    "ValidationException",
]
