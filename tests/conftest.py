"""Shared fixtures and in-memory fakes for the engine tests.

Hey future me - the fakes here implement the domain ports for real (no MagicMock
magic), so the processor/worker tests exercise the same contracts the slskd, beets
and SQLAlchemy adapters have to honor: version checks on update, UNKNOWN instead of
exceptions on poll, timed_out instead of exceptions on importer timeouts.
"""

import asyncio
import copy
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from soulbeet.config.settings import BeetsSettings, EngineSettings
from soulbeet.domain.entities import (
    AcquisitionRequest,
    FileImportOutcome,
    Job,
    JobState,
    TransferState,
)
from soulbeet.domain.exceptions import (
    ConcurrentModificationError,
    EntityNotFoundException,
    PermanentRemoteFailure,
)
from soulbeet.domain.ports import (
    IAgentClient,
    IImporter,
    IJobStore,
    ImportResult,
    TransferStatus,
)
from soulbeet.domain.value_objects import ImportConfig, ImportMode, JobId, TransferSpec


class InMemoryJobStore(IJobStore):
    """IJobStore keeping deep copies, with the same version semantics as the SQL store."""

    def __init__(self) -> None:
        self.jobs: dict[str, Job] = {}
        self.cancel_flags: dict[str, bool] = {}
        self.update_calls = 0

    async def add(self, job: Job) -> None:
        self.jobs[str(job.id)] = copy.deepcopy(job)
        self.cancel_flags[str(job.id)] = job.cancel_requested

    async def get(self, job_id: JobId) -> Job | None:
        stored = self.jobs.get(str(job_id))
        if stored is None:
            return None
        job = copy.deepcopy(stored)
        job.cancel_requested = self.cancel_flags.get(str(job_id), False)
        return job

    async def update(self, job: Job) -> None:
        self.update_calls += 1
        stored = self.jobs.get(str(job.id))
        if stored is None:
            raise EntityNotFoundException("Job", job.id)
        if stored.version != job.version:
            raise ConcurrentModificationError(job.id, job.version)
        job.version += 1
        self.jobs[str(job.id)] = copy.deepcopy(job)

    async def delete(self, job_id: JobId) -> None:
        self.jobs.pop(str(job_id), None)
        self.cancel_flags.pop(str(job_id), None)

    async def list_active(
        self, due_before: datetime | None = None, limit: int | None = None
    ) -> list[Job]:
        result = []
        for key in list(self.jobs):
            job = await self.get(JobId.from_string(key))
            if job is None or job.is_terminal:
                continue
            if due_before is not None and job.next_attempt_at and job.next_attempt_at > due_before:
                continue
            result.append(job)
        result.sort(key=lambda j: j.updated_at)
        return result[:limit] if limit else result

    async def list_jobs(
        self, state: JobState | None = None, limit: int = 100, offset: int = 0
    ) -> list[Job]:
        jobs = [copy.deepcopy(j) for j in self.jobs.values() if state is None or j.state == state]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[offset : offset + limit]

    async def request_cancel(self, job_id: JobId) -> bool:
        if str(job_id) not in self.jobs:
            return False
        self.cancel_flags[str(job_id)] = True
        return True

    async def is_cancel_requested(self, job_id: JobId) -> bool:
        return self.cancel_flags.get(str(job_id), False)


class FakeAgent(IAgentClient):
    """Agent whose transfers finish on the first poll unless told otherwise."""

    def __init__(self) -> None:
        self.enqueued: list[TransferSpec] = []
        self.cancelled: list[str] = []
        # filename -> status returned by poll_status
        self.statuses: dict[str, TransferStatus] = {}
        self.reject: set[str] = set()
        self.enqueue_errors: dict[str, Exception] = {}
        self.cancel_error: Exception | None = None
        self.available = True

    async def enqueue(self, spec: TransferSpec) -> str:
        if spec.filename in self.enqueue_errors:
            raise self.enqueue_errors[spec.filename]
        if spec.filename in self.reject:
            raise PermanentRemoteFailure(f"{spec.basename} rejected by peer")
        self.enqueued.append(spec)
        return f"{spec.username}/{spec.filename}"

    async def poll_status(self, agent_job_id: str) -> TransferStatus:
        _, _, filename = agent_job_id.partition("/")
        return self.statuses.get(filename, TransferStatus(state=TransferState.COMPLETE))

    async def cancel_transfer(self, agent_job_id: str) -> None:
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(agent_job_id)

    async def is_available(self) -> bool:
        return self.available


class FakeImporter(IImporter):
    """Importer recording every call; imports everything unless given other results.

    `results` is consumed one entry per call. An entry may be an ImportResult, an
    exception to raise, or a callable(paths) -> ImportResult.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.calls: list[dict] = []
        self.results: list = []
        self.delay = delay

    async def import_files(
        self,
        paths: list[Path],
        mode: ImportMode,
        target_folder: Path,
        config: ImportConfig,
    ) -> ImportResult:
        call = {
            "paths": [str(p) for p in paths],
            "mode": mode,
            "target": target_folder,
            "started": time.monotonic(),
        }
        self.calls.append(call)
        if self.delay:
            await asyncio.sleep(self.delay)
        call["finished"] = time.monotonic()

        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            if callable(result):
                return result(paths)
            return result
        return ImportResult(
            success=True,
            exit_code=0,
            per_file_outcome={str(p): FileImportOutcome.IMPORTED for p in paths},
            raw_output="imported",
        )


class FakeClock:
    """Settable UTC clock for the processor and worker.

    Starts slightly ahead of the wall clock so jobs created by Job.create() during
    a test are already due.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(UTC) + timedelta(seconds=1)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def _skip_everything(paths: list[Path]) -> ImportResult:
    return ImportResult(
        success=False,
        exit_code=0,
        per_file_outcome={str(p): FileImportOutcome.SKIPPED for p in paths},
        raw_output="Skipping.",
    )


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def importer() -> FakeImporter:
    return FakeImporter()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def download_root(tmp_path: Path) -> Path:
    root = tmp_path / "downloads"
    root.mkdir()
    return root


@pytest.fixture
def library(tmp_path: Path) -> Path:
    return tmp_path / "library"


@pytest.fixture
def engine_settings() -> EngineSettings:
    return EngineSettings(
        poll_interval=2.0,
        max_retries=3,
        backoff_base=30.0,
        backoff_max=900.0,
        stability_quiet_interval=0.0,
        file_wait_window=300.0,
        transfer_timeout=3600.0,
        max_unknown_polls=5,
    )


@pytest.fixture
def beets_settings(tmp_path: Path) -> BeetsSettings:
    return BeetsSettings(config=tmp_path / "beets.yaml", strict=True)


@pytest.fixture
def make_request(library: Path):
    """Factory for acquisition requests from remote share paths."""

    def _make(
        *filenames: str,
        mode: ImportMode = ImportMode.SINGLETON,
        username: str = "peer",
    ) -> AcquisitionRequest:
        return AcquisitionRequest(
            transfers=tuple(TransferSpec(username=username, filename=f, size=1000) for f in filenames),
            target_folder=library,
            mode=mode,
        )

    return _make


@pytest.fixture
def place_file(download_root: Path):
    """Create the local file slskd would write for a remote path (last dir + name)."""

    def _place(remote: str, content: bytes = b"audio-data") -> Path:
        parts = remote.replace("\\", "/").split("/")
        local = download_root / parts[-2] / parts[-1] if len(parts) > 1 else download_root / parts[-1]
        local.parent.mkdir(parents=True, exist_ok=True)
        local.write_bytes(content)
        return local

    return _place


@pytest.fixture
def skip_everything():
    """Importer result factory: beets skipped every file (exit code 0)."""
    return _skip_everything


@pytest.fixture
def resolver(download_root: Path):
    from soulbeet.infrastructure.filesystem import FileResolver, PathMapper, StabilityTracker

    return FileResolver(
        PathMapper(agent_root=Path("/downloads"), local_root=download_root),
        StabilityTracker(quiet_interval=0.0),
    )


@pytest.fixture
def processor(
    store, agent, resolver, importer, engine_settings, beets_settings, download_root, clock
):
    from soulbeet.application.services.folder_locks import FolderLockRegistry
    from soulbeet.application.services.job_processor import JobProcessor

    return JobProcessor(
        store=store,
        agent=agent,
        resolver=resolver,
        importer=importer,
        folder_locks=FolderLockRegistry(max_concurrent=2),
        engine_settings=engine_settings,
        beets_settings=beets_settings,
        download_root=download_root,
        clock=clock,
    )
