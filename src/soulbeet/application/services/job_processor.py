"""Job processor - performs one state-machine step for an acquisition job.

Hey future me - this is THE heart of the engine. The worker decides WHEN a job is
looked at, this class decides WHAT happens:

    CREATED     → enqueue every transfer on the agent            → QUEUED
    QUEUED      → poll the agent until every transfer is done    → DOWNLOADING
    DOWNLOADING → wait until every file is on disk and stable    → VERIFYING
    VERIFYING   → re-check the files, plan import groups         → IMPORTING
    IMPORTING   → run the importer group by group                → COMPLETED
    FAILED      → (when due) re-enqueue what did not finish      → QUEUED

Every step ends with store.update(job). Importing additionally persists each group
as IN_FLIGHT before the importer starts and with its result after it finished, so a
crash can never lead to the same group being imported twice.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path

from soulbeet.application.services.folder_locks import FolderLockRegistry
from soulbeet.application.services.import_planner import plan_import_groups
from soulbeet.config.settings import BeetsSettings, EngineSettings
from soulbeet.domain.entities import (
    GroupStatus,
    ImportGroup,
    ImportOutcome,
    Job,
    JobState,
    TransferRecord,
    TransferState,
)
from soulbeet.domain.exceptions import (
    AcquisitionError,
    DataIntegrityError,
    ImporterTimeoutError,
    PathNotFoundError,
    PermanentImportRejection,
    PermanentRemoteFailure,
    TransientLocalError,
    TransientRemoteError,
)
from soulbeet.domain.ports import (
    IAgentClient,
    IFileResolver,
    IImporter,
    IJobStore,
    ImportResult,
)
from soulbeet.domain.value_objects import AlbumPolicy, ImportConfig, ImportMode
from soulbeet.infrastructure.observability.log_messages import LogMessages

logger = logging.getLogger(__name__)

# Raw importer output kept on the job (the tail is what matters for debugging)
_MAX_RAW_OUTPUT = 20_000


def _utc_now() -> datetime:
    return datetime.now(UTC)


class JobProcessor:
    """Advance acquisition jobs one state at a time."""

    def __init__(
        self,
        store: IJobStore,
        agent: IAgentClient,
        resolver: IFileResolver,
        importer: IImporter,
        folder_locks: FolderLockRegistry,
        engine_settings: EngineSettings,
        beets_settings: BeetsSettings,
        download_root: Path,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize processor.

        Args:
            store: Job store (single source of truth)
            agent: Download agent client
            resolver: Maps agent paths to local files, checks stability
            importer: Importer invoker
            folder_locks: Per-target-folder import serialization
            engine_settings: Polling, retry and concurrency tuning
            beets_settings: Importer options and strictness
            download_root: Local download root (files directly in it import as singletons)
            clock: Current time source (tests)
        """
        self._store = store
        self._agent = agent
        self._resolver = resolver
        self._importer = importer
        self._folder_locks = folder_locks
        self._engine = engine_settings
        self._beets = beets_settings
        self._download_root = download_root
        self._now = clock
        self._import_config = ImportConfig(
            config_path=beets_settings.config,
            library_db_name=beets_settings.library_db_name,
            timeout=beets_settings.import_timeout,
        )
        self._handlers: dict[JobState, Callable[[Job], Awaitable[None]]] = {
            JobState.CREATED: self._handle_created,
            JobState.QUEUED: self._handle_queued,
            JobState.DOWNLOADING: self._handle_downloading,
            JobState.VERIFYING: self._handle_verifying,
            JobState.IMPORTING: self._handle_importing,
            JobState.FAILED: self._handle_failed,
        }

    async def advance(self, job: Job) -> bool:
        """Perform one state step for a job and persist it.

        Returns:
            True if the job changed state (the caller may advance it again right away),
            False if it is waiting (next_attempt_at tells when to look again) or terminal.

        Raises:
            ConcurrentModificationError: The job was written by someone else meanwhile
        """
        if job.is_terminal:
            return False

        state_before = job.state

        if await self._store.is_cancel_requested(job.id):
            job.cancel_requested = True
            await self._cancel(job, "cancelled by user")
        else:
            try:
                await self._handlers[job.state](job)
            except AcquisitionError as e:
                self._fail(job, e)

        if job.is_terminal:
            self._forget_files(t.local_path for t in job.transfers)

        await self._store.update(job)

        if job.state != state_before:
            logger.info(
                "Job %s: %s -> %s (%s)",
                job.id,
                state_before.value,
                job.state.value,
                job.history[-1].reason if job.history else "",
            )
        return job.state != state_before

    # ------------------------------------------------------------------
    # CREATED / QUEUED: talk to the agent
    # ------------------------------------------------------------------

    async def _handle_created(self, job: Job) -> None:
        await self._enqueue_pending(job)
        job.mark_queued(now=self._now())
        job.schedule_next(self._engine.poll_interval, self._now())

    async def _enqueue_pending(self, job: Job) -> None:
        """Enqueue every active transfer that has no agent id yet."""
        for transfer in job.active_transfers:
            if transfer.agent_id is not None or transfer.state == TransferState.COMPLETE:
                continue
            try:
                transfer.agent_id = await self._agent.enqueue(transfer.spec)
            except PermanentRemoteFailure as e:
                if not self._best_effort(job):
                    raise
                self._drop(transfer, e.message)
                continue
            transfer.state = TransferState.QUEUED
            transfer.error = None
            transfer.first_seen_at = None

        if not job.active_transfers:
            raise PermanentRemoteFailure("Every transfer of the album was rejected by the agent")

    async def _handle_queued(self, job: Job) -> None:
        await self._enqueue_pending(job)

        waiting = [t for t in job.active_transfers if t.state != TransferState.COMPLETE]
        statuses = await asyncio.gather(
            *(self._agent.poll_status(t.agent_id or "") for t in waiting)
        )
        now = self._now()

        for transfer, status in zip(waiting, statuses, strict=True):
            if transfer.first_seen_at is None:
                transfer.first_seen_at = now
            transfer.state = status.state
            transfer.progress = status.progress
            if status.state == TransferState.COMPLETE:
                transfer.reported_path = (
                    status.files[0] if status.files else transfer.spec.filename
                )
                transfer.error = None
            elif status.state == TransferState.FAILED:
                transfer.error = status.reason or "transfer failed on agent"

        failed = [t for t in waiting if t.state == TransferState.FAILED]
        if failed:
            if not self._best_effort(job):
                raise PermanentRemoteFailure(
                    f"{len(failed)} transfer(s) failed on the agent: "
                    + "; ".join(f"{t.spec.basename}: {t.error}" for t in failed[:3])
                )
            for transfer in failed:
                self._drop(transfer, transfer.error or "transfer failed")
            if not job.active_transfers:
                raise PermanentRemoteFailure("Every transfer of the album failed on the agent")

        still_open = [t for t in job.active_transfers if t.state != TransferState.COMPLETE]
        if not still_open:
            job.unknown_polls = 0
            job.mark_downloading(now=now)
            return

        if all(t.state == TransferState.UNKNOWN for t in still_open):
            job.unknown_polls += 1
        else:
            job.unknown_polls = 0

        if job.unknown_polls >= self._engine.max_unknown_polls:
            raise TransientRemoteError(
                f"Agent did not report {len(still_open)} transfer(s) "
                f"after {job.unknown_polls} polls"
            )

        for transfer in still_open:
            if transfer.first_seen_at is None:
                continue
            elapsed = (now - transfer.first_seen_at).total_seconds()
            if elapsed > self._engine.transfer_timeout:
                raise TransientRemoteError(
                    f"{transfer.spec.basename} not finished after {elapsed:.0f}s"
                )

        job.schedule_next(self._poll_delay(job), now)

    def _poll_delay(self, job: Job) -> float:
        if job.unknown_polls == 0:
            return self._engine.poll_interval
        return min(
            self._engine.poll_interval * (2**job.unknown_polls),
            self._engine.unknown_backoff_max,
        )

    def _best_effort(self, job: Job) -> bool:
        return (
            job.request.mode == ImportMode.ALBUM
            and self._engine.album_policy == AlbumPolicy.BEST_EFFORT.value
        )

    @staticmethod
    def _drop(transfer: TransferRecord, reason: str) -> None:
        transfer.dropped = True
        transfer.error = reason
        logger.warning("Dropping %s from album (%s)", transfer.spec.basename, reason)

    # ------------------------------------------------------------------
    # DOWNLOADING / VERIFYING: local files
    # ------------------------------------------------------------------

    async def _handle_downloading(self, job: Job) -> None:
        now = self._now()
        missing: list[str] = []
        unstable: list[str] = []

        for transfer in self._not_yet_imported(job):
            reported = transfer.reported_path or transfer.spec.filename
            path = self._resolver.locate(reported)
            if path is None:
                transfer.local_path = None
                missing.append(str(self._resolver.to_local(reported)))
                continue
            transfer.local_path = str(path)
            if not self._resolver.is_stable(path):
                unstable.append(str(path))

        if not missing and not unstable:
            job.mark_verifying(now=now)
            return

        # The wait window starts when the job entered DOWNLOADING - from persisted
        # history, so a restart doesn't give the files a fresh window.
        entered = job.entered_state_at(JobState.DOWNLOADING) or job.updated_at
        waited = (now - entered).total_seconds()
        if waited >= self._engine.file_wait_window:
            if missing:
                raise PathNotFoundError(missing, waited)
            raise TransientLocalError(
                f"{len(unstable)} file(s) still changing after {waited:.0f}s: "
                + ", ".join(unstable[:5])
            )

        logger.debug(
            "Waiting for files: %d missing, %d not yet stable", len(missing), len(unstable)
        )
        job.schedule_next(
            min(self._engine.stability_quiet_interval, self._engine.poll_interval), now
        )

    async def _handle_verifying(self, job: Job) -> None:
        self._check_files_present(job)

        job.import_groups = plan_import_groups(
            job.resolved_paths,
            job.request.mode,
            self._download_root,
            existing=job.import_groups,
        )
        job.mark_importing(
            f"{len(job.import_groups)} import group(s) planned", now=self._now()
        )

    # Hey future me - beets MOVES files out of the download area when it imports them.
    # After a retry, files of already IMPORTED groups are legitimately gone, so they're
    # excluded from every "is the file there" check.
    @staticmethod
    def _not_yet_imported(job: Job) -> list[TransferRecord]:
        imported = {
            p
            for g in job.import_groups
            if g.status == GroupStatus.IMPORTED
            for p in g.paths
        }
        return [
            t for t in job.active_transfers if not t.local_path or t.local_path not in imported
        ]

    def _reset_vanished(self, job: Job) -> list[str]:
        """Reset transfers whose file disappeared so a retry downloads them again."""
        vanished = [
            t
            for t in self._not_yet_imported(job)
            if not t.local_path or not Path(t.local_path).is_file()
        ]
        names = [t.local_path or t.spec.basename for t in vanished]
        for transfer in vanished:
            if transfer.local_path:
                self._resolver.forget(Path(transfer.local_path))
            transfer.reset()
        return names

    def _forget_files(self, paths: Iterable[str | None]) -> None:
        """Drop stability state for paths the engine is done with."""
        for path in paths:
            if path:
                self._resolver.forget(Path(path))

    def _check_files_present(self, job: Job) -> None:
        """Raise DataIntegrityError if a resolved file disappeared from disk."""
        names = self._reset_vanished(job)
        if names:
            raise DataIntegrityError(
                f"{len(names)} file(s) vanished after download: {', '.join(names[:5])}"
            )

    # ------------------------------------------------------------------
    # IMPORTING
    # ------------------------------------------------------------------

    async def _handle_importing(self, job: Job) -> None:
        in_flight = [g for g in job.import_groups if g.status == GroupStatus.IN_FLIGHT]
        if in_flight:
            # We crashed (or were killed) while beets was running. Whether it imported
            # anything is unknown - running it again could import twice.
            self._fail(
                job,
                DataIntegrityError(
                    "Import was interrupted for "
                    + ", ".join(g.key for g in in_flight)
                    + "; verify the library before retrying"
                ),
                permanent=True,
            )
            return

        target = job.request.target_folder
        for group in job.import_groups:
            if group.status != GroupStatus.PENDING:
                continue
            if await self._store.is_cancel_requested(job.id):
                job.cancel_requested = True
                await self._cancel(job, "cancelled by user during import")
                return
            if self._folder_locks.closed:
                # Shutting down. The job stays IMPORTING with PENDING groups and the
                # next start continues with them.
                logger.info("Not starting import of %s, engine is shutting down", group.key)
                return
            async with self._folder_locks.hold(target):
                # Shutdown may have begun while we waited for the lock
                if self._folder_locks.closed:
                    logger.info("Not starting import of %s, engine is shutting down", group.key)
                    return
                await self._run_group(job, group, target)

        self._finish_import(job)

    async def _run_group(self, job: Job, group: ImportGroup, target: Path) -> None:
        group.status = GroupStatus.IN_FLIGHT
        group.started_at = self._now()
        group.detail = None
        await self._store.update(job)

        try:
            result = await self._importer.import_files(
                [Path(p) for p in group.paths], group.mode, target, self._import_config
            )
        except AcquisitionError as e:
            self._forget_files(group.paths)
            group.status = GroupStatus.FAILED
            group.detail = e.message
            group.finished_at = self._now()
            if isinstance(e, DataIntegrityError):
                self._reset_vanished(job)
            raise

        # beets moved (or at least touched) these files; a later look starts over
        self._forget_files(group.paths)
        group.finished_at = self._now()
        self._merge_result(job, group, result)

        if result.timed_out:
            group.status = GroupStatus.FAILED
            group.detail = "importer timed out"
            raise ImporterTimeoutError(
                f"Import of {group.key} timed out after {self._import_config.timeout:.0f}s"
            )
        if result.imported_files:
            group.status = GroupStatus.IMPORTED
        elif result.exit_code == 0:
            group.status = GroupStatus.SKIPPED
        else:
            group.status = GroupStatus.FAILED
        group.detail = result.raw_output[-500:] if result.raw_output else None
        await self._store.update(job)

    @staticmethod
    def _merge_result(job: Job, group: ImportGroup, result: ImportResult) -> None:
        outcome = job.outcome or ImportOutcome(success=False, detail="")
        outcome.per_file.update(result.per_file_outcome)
        section = f"--- {group.key} (exit {result.exit_code}) ---\n{result.raw_output}"
        combined = f"{outcome.raw_output}\n{section}" if outcome.raw_output else section
        outcome.raw_output = combined[-_MAX_RAW_OUTPUT:]
        job.outcome = outcome

    def _finish_import(self, job: Job) -> None:
        outcome = job.outcome or ImportOutcome(success=False, detail="")
        job.outcome = outcome
        imported = outcome.imported_count
        skipped = len(outcome.skipped_files)
        failed_groups = [g for g in job.import_groups if g.status == GroupStatus.FAILED]

        logger.info(
            LogMessages.import_result(
                job_id=str(job.id),
                target=str(job.request.target_folder),
                imported=imported,
                skipped=skipped,
                failed=sum(len(g.paths) for g in failed_groups),
            )
        )

        if failed_groups or imported == 0:
            reason = (
                f"importer failed for {len(failed_groups)} group(s)"
                if failed_groups
                else f"importer skipped all {skipped} file(s)"
            )
            outcome.success = False
            outcome.detail = reason
            if self._beets.strict:
                raise PermanentImportRejection(reason, detail=outcome.raw_output)
            raise TransientLocalError(reason, detail=outcome.raw_output)

        outcome.success = True
        outcome.detail = f"{imported} file(s) imported" + (
            f", {skipped} rejected by importer" if skipped else ""
        )
        job.mark_completed(outcome, now=self._now())

    # ------------------------------------------------------------------
    # FAILED / CANCELLED
    # ------------------------------------------------------------------

    async def _handle_failed(self, job: Job) -> None:
        job.retry(now=self._now())

    def _fail(self, job: Job, error: AcquisitionError, permanent: bool = False) -> None:
        if job.outcome is not None and error.detail and not job.outcome.success:
            job.outcome.detail = error.message

        will_retry = job.record_failure(
            error,
            backoff_base=self._engine.backoff_base,
            backoff_max=self._engine.backoff_max,
            permanent=permanent,
            now=self._now(),
        )
        if will_retry:
            delay = (
                (job.next_attempt_at - self._now()).total_seconds()
                if job.next_attempt_at
                else 0.0
            )
            logger.warning(
                LogMessages.retry_scheduled(
                    job_id=str(job.id),
                    attempt=job.retry_count + 1,
                    max_retries=job.max_retries,
                    delay_seconds=delay,
                    error_code=error.error_code,
                    error=error.message,
                )
            )
        else:
            logger.error(
                LogMessages.retries_exhausted(
                    job_id=str(job.id),
                    error_code=error.error_code,
                    error=error.message,
                    retryable=error.retryable and not permanent,
                    hint="Retry the job manually once the cause is fixed"
                    if error.retryable
                    else None,
                )
            )

    async def _cancel(self, job: Job, reason: str) -> None:
        """Cancel the job; remote cancellation is best-effort."""
        for transfer in job.transfers:
            if not transfer.agent_id or transfer.state == TransferState.COMPLETE:
                continue
            try:
                await self._agent.cancel_transfer(transfer.agent_id)
            except TransientRemoteError as e:
                logger.warning(
                    "Could not cancel %s on agent (ignored): %s", transfer.agent_id, e
                )
        job.cancel(reason, now=self._now())
