"""Engine lifecycle management for startup and shutdown.

Everything the engine needs is built here, in dependency order:

    Database → job store → slskd client/agent → resolver → beets importer
             → folder locks → processor → worker

`lifespan()` is an async context manager: everything before `yield` is startup,
everything after is shutdown. Callers (the CLI, an API server, tests) get an
`Engine` with the service they talk to and the worker that runs in the background.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass

from soulbeet.application.services.acquisition_service import AcquisitionService
from soulbeet.application.services.folder_locks import FolderLockRegistry
from soulbeet.application.services.job_processor import JobProcessor
from soulbeet.application.workers.orchestration_worker import OrchestrationWorker
from soulbeet.config.settings import Settings
from soulbeet.domain.exceptions import ConfigurationError
from soulbeet.infrastructure.filesystem import FileResolver, PathMapper, StabilityTracker
from soulbeet.infrastructure.importers import BeetsImporter
from soulbeet.infrastructure.integrations import SlskdClient
from soulbeet.infrastructure.observability.log_messages import LogMessages
from soulbeet.infrastructure.persistence import Database, SqlAlchemyJobStore
from soulbeet.infrastructure.providers import SlskdAgentClient

logger = logging.getLogger(__name__)

# On top of BEETS_IMPORT_TIMEOUT: the importer kills beets at the timeout, then the
# result still has to be written to the job store.
IMPORT_GRACE_MARGIN = 15.0


@dataclass
class Engine:
    """Wired engine components."""

    settings: Settings
    database: Database
    store: SqlAlchemyJobStore
    slskd_client: SlskdClient
    agent: SlskdAgentClient
    processor: JobProcessor
    worker: OrchestrationWorker
    service: AcquisitionService
    worker_task: asyncio.Task[None] | None = None


# Hey future me, this validates SQLite paths BEFORE we try creating the DB engine! SQLite
# needs to create -wal/-shm files next to the .db file, so the whole directory must be
# writable. We DON'T pre-create the .db file - SQLite initializes it on first connect.
# If this fails the engine doesn't start, which beats a cryptic SQLAlchemy error later.
def _validate_sqlite_path(settings: Settings) -> None:
    """Ensure the SQLite database directory exists and is writable."""
    db_path = settings.database.sqlite_db_path()
    if db_path is None:
        return

    try:
        if db_path.parent and str(db_path.parent) != ".":
            db_path.parent.mkdir(parents=True, exist_ok=True)
            logger.debug("Ensured SQLite parent directory exists: %s", db_path.parent)
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to create SQLite database directory '{db_path.parent}': {exc}. "
            "Update DATABASE_URL or adjust directory permissions."
        ) from exc

    try:
        test_file = db_path.parent / f".{db_path.stem}_write_test"
        test_file.write_bytes(b"test")
        test_file.unlink()
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to write files in database directory '{db_path.parent}': {exc}. "
            "SQLite requires write permissions to create database and journal files."
        ) from exc


def build_engine(settings: Settings) -> Engine:
    """Construct all components without starting anything."""
    database = Database(settings.database)
    store = SqlAlchemyJobStore(database)

    slskd_client = SlskdClient(settings.slskd)
    agent = SlskdAgentClient(slskd_client)

    local_root = settings.slskd.effective_local_path
    resolver = FileResolver(
        PathMapper(agent_root=settings.slskd.download_path, local_root=local_root),
        StabilityTracker(quiet_interval=settings.engine.stability_quiet_interval),
    )
    importer = BeetsImporter(executable=settings.beets.executable)
    folder_locks = FolderLockRegistry(max_concurrent=settings.engine.max_concurrent_imports)

    processor = JobProcessor(
        store=store,
        agent=agent,
        resolver=resolver,
        importer=importer,
        folder_locks=folder_locks,
        engine_settings=settings.engine,
        beets_settings=settings.beets,
        download_root=local_root,
    )
    worker = OrchestrationWorker(
        store=store,
        processor=processor,
        agent=agent,
        folder_locks=folder_locks,
        tick_interval=settings.engine.tick_interval,
        max_workers=settings.engine.max_workers,
        import_grace=settings.beets.import_timeout + IMPORT_GRACE_MARGIN,
    )
    service = AcquisitionService(
        store=store,
        default_album_mode=settings.beets.album_mode,
        max_retries=settings.engine.max_retries,
    )
    return Engine(
        settings=settings,
        database=database,
        store=store,
        slskd_client=slskd_client,
        agent=agent,
        processor=processor,
        worker=worker,
        service=service,
    )


@asynccontextmanager
async def lifespan(settings: Settings, run_worker: bool = True) -> AsyncGenerator[Engine, None]:
    """Start the engine and shut it down cleanly on exit.

    Args:
        settings: Engine settings
        run_worker: Start the orchestration loop in the background
    """
    _validate_sqlite_path(settings)
    engine = build_engine(settings)

    try:
        await engine.database.create_tables()
        logger.info("Job store ready: %s", settings.database.url)

        connection = await engine.slskd_client.test_connection()
        if connection.get("success"):
            logger.info("Connected to slskd %s", connection.get("version", "?"))
        else:
            # Not fatal: jobs wait in QUEUED with UNKNOWN polls until slskd is back
            logger.warning(
                LogMessages.connection_failed(
                    service="slskd",
                    target=settings.slskd.url,
                    error=str(connection.get("error")),
                )
            )

        if run_worker:
            engine.worker_task = asyncio.create_task(engine.worker.start(), name="orchestration")

        yield engine

    finally:
        logger.info("Shutting down engine")
        await engine.worker.stop(timeout=settings.observability.shutdown_timeout)
        if engine.worker_task is not None:
            engine.worker_task.cancel()
            with suppress(asyncio.CancelledError):
                await engine.worker_task
        await engine.slskd_client.close()
        await engine.database.close()
        logger.info("Engine stopped")
