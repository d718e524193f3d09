"""Acquisition service - the entry point for callers (UI, CLI, API)."""

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from soulbeet.domain.entities import AcquisitionRequest, Job, JobState
from soulbeet.domain.exceptions import EntityNotFoundException, InvalidStateException
from soulbeet.domain.ports import IJobStore
from soulbeet.domain.value_objects import ImportMode, JobId, TransferSpec

logger = logging.getLogger(__name__)


class AcquisitionService:
    """Submit, inspect, cancel and retry acquisition jobs.

    Hey future me - this service never talks to slskd or beets itself. It only
    writes to the job store; the OrchestrationWorker picks the changes up on its
    next tick. That's what keeps "durable before we answer" trivially true: when
    submit() returns, the job row is committed.
    """

    def __init__(
        self,
        store: IJobStore,
        default_album_mode: bool = False,
        max_retries: int = 3,
    ) -> None:
        """Initialize service.

        Args:
            store: Job store
            default_album_mode: Import mode when the caller doesn't choose one
            max_retries: Retry ceiling for new jobs
        """
        self._store = store
        self._default_mode = ImportMode.ALBUM if default_album_mode else ImportMode.SINGLETON
        self._max_retries = max_retries

    async def submit(
        self,
        transfers: Iterable[TransferSpec],
        target_folder: Path | str,
        mode: ImportMode | None = None,
        requested_by: str | None = None,
    ) -> Job:
        """Create a durable job for the given search results.

        Raises:
            ValidationException: No transfers or no target folder
        """
        request = AcquisitionRequest(
            transfers=tuple(transfers),
            target_folder=Path(target_folder),
            mode=mode or self._default_mode,
            requested_by=requested_by,
        )
        job = Job.create(request, max_retries=self._max_retries)
        await self._store.add(job)
        logger.info(
            "Submitted job %s: %d file(s) -> %s (%s)",
            job.id,
            len(request.transfers),
            request.target_folder,
            request.mode.value,
        )
        return job

    async def get(self, job_id: JobId) -> Job:
        """Get a job.

        Raises:
            EntityNotFoundException: Unknown job id
        """
        job = await self._store.get(job_id)
        if job is None:
            raise EntityNotFoundException("Job", job_id)
        return job

    async def list_jobs(
        self, state: JobState | None = None, limit: int = 100, offset: int = 0
    ) -> list[Job]:
        return await self._store.list_jobs(state=state, limit=limit, offset=offset)

    async def cancel(self, job_id: JobId) -> Job:
        """Request cancellation. The worker performs it on its next visit.

        Raises:
            EntityNotFoundException: Unknown job id
            InvalidStateException: Job already finished
        """
        job = await self.get(job_id)
        if job.is_terminal:
            raise InvalidStateException(
                f"Job {job_id} is {job.state.value} and cannot be cancelled"
            )
        await self._store.request_cancel(job_id)
        job.cancel_requested = True
        logger.info("Cancellation requested for job %s", job_id)
        return job

    async def retry(self, job_id: JobId) -> Job:
        """Retry a failed job.

        A job in FAILED (waiting for its backoff) is made due right away. A
        FAILED_PERMANENTLY job is terminal and never mutated again, so a NEW job
        is created from the same request and returned.

        Raises:
            EntityNotFoundException: Unknown job id
            InvalidStateException: Job is not failed
            ConcurrentModificationError: The worker updated the job meanwhile
        """
        job = await self.get(job_id)

        if job.state == JobState.FAILED:
            job.next_attempt_at = datetime.now(UTC)
            await self._store.update(job)
            logger.info("Job %s scheduled for immediate retry", job_id)
            return job

        if job.state == JobState.FAILED_PERMANENTLY:
            new_job = Job.create(job.request, max_retries=job.max_retries)
            await self._store.add(new_job)
            logger.info("Created job %s as retry of failed job %s", new_job.id, job_id)
            return new_job

        raise InvalidStateException(
            f"Job {job_id} is {job.state.value}; only failed jobs can be retried"
        )
