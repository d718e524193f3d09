"""Orchestration Worker - drives every active acquisition job through its states.

Hey future me - this worker owns the WHEN, JobProcessor owns the WHAT. Every tick:

1. Ask the store for non-terminal jobs that are due (next_attempt_at <= now)
2. Skip jobs that already have a task running in this process
3. Spawn a task per job (bounded by max_workers) that calls processor.advance()
   until the job stops changing state or is scheduled for later

There is NO in-memory queue. The job store is the only source of truth, which is
why restart recovery is just "the first tick": every job that was mid-flight when
the process died is non-terminal and due, so it gets picked up again.

One misbehaving job must never take the loop down. Every exception inside a job
task is caught, logged with the job id and converted into a short in-memory
backoff for that job (so a buggy job doesn't spin the CPU).
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from soulbeet.application.services.folder_locks import FolderLockRegistry
from soulbeet.application.services.job_processor import JobProcessor
from soulbeet.domain.entities import Job
from soulbeet.domain.exceptions import ConcurrentModificationError
from soulbeet.domain.ports import IAgentClient, IJobStore
from soulbeet.infrastructure.observability.log_messages import LogMessages
from soulbeet.infrastructure.observability.logging import job_context
from soulbeet.infrastructure.persistence.retry import DatabaseLockMetrics

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class OrchestrationWorker:
    """Background loop that advances acquisition jobs.

    Error Recovery Features:
    - Per-job failure isolation (one crash never stops the loop)
    - Exponential in-memory backoff for jobs that keep raising
    - Optimistic-lock conflicts are retried on the next tick with fresh data
    - Graceful shutdown that waits for running steps
    """

    # Cap for the in-memory backoff after unexpected exceptions (seconds)
    MAX_ERROR_BACKOFF = 300.0

    def __init__(
        self,
        store: IJobStore,
        processor: JobProcessor,
        agent: IAgentClient | None = None,
        folder_locks: FolderLockRegistry | None = None,
        tick_interval: float = 1.0,
        max_workers: int = 4,
        error_backoff_base: float = 5.0,
        import_grace: float = 0.0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize the worker.

        Args:
            store: Job store
            processor: Performs the state steps
            agent: Download agent (only used for health reporting)
            folder_locks: Import lock registry (health reporting, closed on stop)
            tick_interval: Seconds between scans for due jobs
            max_workers: Maximum number of jobs advanced concurrently
            error_backoff_base: First delay after an unexpected job error
            import_grace: Extra seconds stop() waits while an import is running
            clock: Current time source (tests)
        """
        self._store = store
        self._processor = processor
        self._agent = agent
        self._folder_locks = folder_locks
        self._tick_interval = tick_interval
        self._max_workers = max_workers
        self._error_backoff_base = error_backoff_base
        self._import_grace = import_grace
        self._now = clock

        self._running = False
        self._stop_event = asyncio.Event()
        self._slots = asyncio.Semaphore(max_workers)
        self._tasks: dict[str, asyncio.Task[None]] = {}
        # job id -> (consecutive unexpected errors, not before)
        self._error_backoff: dict[str, tuple[int, datetime]] = {}

        self._ticks = 0
        self._total_errors = 0
        self._conflicts = 0
        self._recovered = 0
        self._last_tick: datetime | None = None
        self._started_at: datetime | None = None

    async def start(self) -> None:
        """Run the loop until stop() is called.

        The first tick doubles as crash recovery: all non-terminal jobs are due.
        """
        self._running = True
        self._stop_event.clear()
        self._started_at = self._now()

        try:
            active = await self._store.list_active()
            self._recovered = len(active)
        except Exception as e:
            logger.exception("Could not count active jobs on startup: %s", e)
            active = []

        logger.info(
            LogMessages.worker_started(
                worker="Orchestration Worker",
                interval=self._tick_interval,
                config={
                    "max_workers": self._max_workers,
                    "active_jobs": len(active),
                },
            )
        )

        while self._running:
            try:
                await self.tick()
            except Exception as e:
                # Store unreachable etc. The loop itself keeps going.
                self._total_errors += 1
                logger.error(
                    LogMessages.worker_failed(worker="Orchestration Worker", error=str(e)),
                    exc_info=True,
                )

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._tick_interval)
            except TimeoutError:
                pass

        logger.info("Orchestration Worker stopped")

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop the loop and wait for running job steps.

        Steps still running after `timeout` are cancelled. That's safe for every step
        except a running import: every step persists before and after its side
        effects, so the next start picks the job up where the store says it is.

        Hey future me - a cancelled import is NOT safe. Killing beets mid-import
        leaves its group IN_FLIGHT and the job fails permanently on the next start.
        So the folder lock registry is closed first (no new import starts) and, while
        imports are still running, we keep waiting up to `import_grace` seconds more.
        """
        self._running = False
        self._stop_event.set()
        if self._folder_locks is not None:
            self._folder_locks.close()

        pending = [t for t in self._tasks.values() if not t.done()]
        if not pending:
            return

        logger.info("Waiting for %d running job(s) to finish", len(pending))
        _done, still_running = await asyncio.wait(pending, timeout=timeout)
        importing = self._folder_locks.active_folders if self._folder_locks else []
        if still_running and importing and self._import_grace > 0:
            logger.info(
                "Waiting up to %.0fs more for running import(s) in %s",
                self._import_grace,
                ", ".join(importing),
            )
            _done, still_running = await asyncio.wait(
                still_running, timeout=self._import_grace
            )
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(
                "Cancelled %d job step(s) that did not finish within %.0fs",
                len(still_running),
                timeout,
            )
            await asyncio.gather(*still_running, return_exceptions=True)

    async def tick(self) -> int:
        """Scan for due jobs and spawn a task for each one not already running.

        Returns:
            Number of tasks spawned
        """
        now = self._now()
        self._ticks += 1
        self._last_tick = now

        # Drop finished tasks from earlier ticks
        self._tasks = {k: t for k, t in self._tasks.items() if not t.done()}

        jobs = await self._store.list_active(due_before=now)
        spawned = 0
        for job in jobs:
            key = str(job.id)
            task = self._tasks.get(key)
            if task is not None and not task.done():
                continue
            backoff = self._error_backoff.get(key)
            if backoff is not None and backoff[1] > now:
                continue

            self._tasks[key] = asyncio.create_task(self._drive(job), name=f"job-{key[:8]}")
            spawned += 1

        return spawned

    async def wait_idle(self) -> None:
        """Wait until every spawned job task has finished (tests, shutdown)."""
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _drive(self, job: Job) -> None:
        """Advance one job until it waits or finishes."""
        key = str(job.id)
        async with self._slots:
            with job_context(job.id):
                try:
                    # Keep stepping while the job moves AND is still due. A step that
                    # schedules the job later (poll wait, retry backoff) ends the task.
                    while await self._processor.advance(job):
                        if self._stop_event.is_set() or not job.is_due(self._now()):
                            break
                    self._error_backoff.pop(key, None)
                except ConcurrentModificationError as e:
                    # Someone else (a manual retry, another process) wrote the job.
                    # Our copy is stale, the next tick reloads it.
                    self._conflicts += 1
                    logger.warning("%s - reloading on next tick", e.message)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._total_errors += 1
                    failures = self._error_backoff.get(key, (0, self._now()))[0] + 1
                    delay = min(
                        self._error_backoff_base * 2 ** (failures - 1), self.MAX_ERROR_BACKOFF
                    )
                    self._error_backoff[key] = (
                        failures,
                        self._now() + timedelta(seconds=delay),
                    )
                    logger.exception(
                        "Unexpected error advancing job %s (attempt %d, next try in %.0fs): %s",
                        key,
                        failures,
                        delay,
                        e,
                    )

    @property
    def in_flight(self) -> list[str]:
        """Ids of jobs with a running task."""
        return [k for k, t in self._tasks.items() if not t.done()]

    async def get_status(self) -> dict[str, Any]:
        """Get worker status for monitoring/UI.

        Returns:
            Dict with running state, loop statistics and dependency health
        """
        agent_available: bool | None = None
        if self._agent is not None:
            agent_available = await self._agent.is_available()

        return {
            "name": "Orchestration Worker",
            "running": self._running,
            "status": "active" if self._running else "stopped",
            "tick_interval_seconds": self._tick_interval,
            "max_workers": self._max_workers,
            "in_flight": len(self.in_flight),
            "ticks": self._ticks,
            "recovered_jobs": self._recovered,
            "total_errors": self._total_errors,
            "conflicts": self._conflicts,
            "jobs_in_backoff": len(self._error_backoff),
            "last_tick": self._last_tick.isoformat() if self._last_tick else None,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "agent_available": agent_available,
            "active_import_folders": (
                self._folder_locks.active_folders if self._folder_locks else []
            ),
            "db_lock_stats": DatabaseLockMetrics.get_instance().get_stats(),
        }
