"""Per-target-folder import serialization."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class FolderLockRegistry:
    """Hands out one asyncio.Lock per normalized target folder.

    Hey future me - beets keeps a library database per target folder
    (<target>/.beets_library.db). Two `beet import` runs into the same folder would
    fight over that SQLite file and over the files they move, so imports into one
    folder run strictly one after another. Different folders may import in parallel,
    up to `max_concurrent` at once (beets is CPU and disk hungry).
    """

    def __init__(self, max_concurrent: int | None = None) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._semaphore = asyncio.Semaphore(max_concurrent) if max_concurrent else None
        self._active: set[str] = set()
        self._closed = False

    @staticmethod
    def normalize(folder: Path | str) -> str:
        """Canonical key for a folder ("/music/./a/" and "/music/a" are the same)."""
        return str(Path(folder).expanduser().resolve(strict=False))

    def lock_for(self, folder: Path | str) -> asyncio.Lock:
        key = self.normalize(folder)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, folder: Path | str) -> AsyncIterator[None]:
        """Hold the folder lock (and a global import slot) for the block."""
        key = self.normalize(folder)
        lock = self.lock_for(key)
        if lock.locked():
            logger.debug("Waiting for import lock on %s", key)
        async with lock:
            if self._semaphore is not None:
                await self._semaphore.acquire()
            self._active.add(key)
            try:
                yield
            finally:
                self._active.discard(key)
                if self._semaphore is not None:
                    self._semaphore.release()

    @property
    def active_folders(self) -> list[str]:
        """Folders with an import currently running."""
        return sorted(self._active)

    @property
    def closed(self) -> bool:
        """True once shutdown began; no new import may start."""
        return self._closed

    def close(self) -> None:
        """Refuse new imports. Imports already running are left alone."""
        if not self._closed:
            logger.info("Import lock registry closed, %d import(s) running", len(self._active))
        self._closed = True
