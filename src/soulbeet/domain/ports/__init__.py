"""Domain ports (interfaces) for dependency inversion."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from soulbeet.domain.entities import FileImportOutcome, Job, JobState
from soulbeet.domain.ports.agent_client import IAgentClient, TransferStatus
from soulbeet.domain.value_objects import ImportConfig, ImportMode, JobId


# Hey future me - the resolver is the ONLY component that touches the download area on disk
# before import. It translates agent paths to local paths and decides when a file is "done".
class IFileResolver(ABC):
    """Port for locating downloaded files and judging their stability."""

    @abstractmethod
    def to_local(self, reported_path: str) -> Path:
        """Map a path reported by the agent to where the engine sees it."""
        pass

    @abstractmethod
    def locate(self, reported_path: str) -> Path | None:
        """Return the local path if the file exists, None otherwise."""
        pass

    @abstractmethod
    def is_stable(self, path: Path) -> bool:
        """True once size and mtime stayed unchanged over the quiet interval."""
        pass

    @abstractmethod
    def forget(self, path: Path) -> None:
        """Drop cached observations for a path (file vanished or got re-downloaded)."""
        pass


@dataclass
class ImportResult:
    """Result of one importer invocation."""

    success: bool
    exit_code: int | None
    timed_out: bool = False
    per_file_outcome: dict[str, FileImportOutcome] = field(default_factory=dict)
    raw_output: str = ""

    @property
    def imported_files(self) -> list[str]:
        return [
            p for p, o in self.per_file_outcome.items() if o == FileImportOutcome.IMPORTED
        ]

    @property
    def skipped_files(self) -> list[str]:
        return [
            p for p, o in self.per_file_outcome.items() if o == FileImportOutcome.SKIPPED
        ]


class IImporter(ABC):
    """Port for the external tagging/import tool."""

    @abstractmethod
    async def import_files(
        self,
        paths: list[Path],
        mode: ImportMode,
        target_folder: Path,
        config: ImportConfig,
    ) -> ImportResult:
        """Import files into the library at target_folder.

        Raises:
            DataIntegrityError: A source path does not exist
            ImporterLaunchError: The importer process could not be started

        A timeout does NOT raise - it comes back as ImportResult(timed_out=True).
        """
        pass


class IJobStore(ABC):
    """Repository interface for Job entities.

    Every write is durable when the coroutine returns. update() uses
    optimistic concurrency on Job.version and bumps it on success.
    """

    @abstractmethod
    async def add(self, job: Job) -> None:
        """Add a new job."""
        pass

    @abstractmethod
    async def get(self, job_id: JobId) -> Job | None:
        """Get a job by ID."""
        pass

    @abstractmethod
    async def update(self, job: Job) -> None:
        """Persist job changes.

        Raises:
            EntityNotFoundException: Job does not exist
            ConcurrentModificationError: job.version is stale
        """
        pass

    @abstractmethod
    async def delete(self, job_id: JobId) -> None:
        """Delete a job (retention is handled outside the engine)."""
        pass

    @abstractmethod
    async def list_active(
        self, due_before: datetime | None = None, limit: int | None = None
    ) -> list[Job]:
        """List non-terminal jobs, least recently updated first.

        Args:
            due_before: Only jobs whose next_attempt_at is unset or <= this time
            limit: Maximum number of jobs
        """
        pass

    @abstractmethod
    async def list_jobs(
        self, state: JobState | None = None, limit: int = 100, offset: int = 0
    ) -> list[Job]:
        """List jobs, newest first, optionally filtered by state."""
        pass

    @abstractmethod
    async def request_cancel(self, job_id: JobId) -> bool:
        """Set the persisted cancel flag. Returns False if the job does not exist."""
        pass

    @abstractmethod
    async def is_cancel_requested(self, job_id: JobId) -> bool:
        """Read the persisted cancel flag."""
        pass


__all__ = [
    "IAgentClient",
    "IFileResolver",
    "IImporter",
    "IJobStore",
    "ImportResult",
    "TransferStatus",
]
