"""Download area path mapping and file stability detection."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from soulbeet.domain.ports import IFileResolver

logger = logging.getLogger(__name__)


class PathMapper:
    """Translate paths reported by the agent into paths the engine can open.

    Hey future me - there are TWO kinds of reported paths:
    1. Paths under the agent's own download root (agent_root). Docker setups mount the
       same volume at different places, so we just swap the prefix.
    2. Remote share paths as the PEER sees them ("@@music\\Artist\\Album\\01.flac").
       slskd saves those as <download root>/<last directory>/<file>, so we keep only
       the last directory and the file name.
    """

    def __init__(self, agent_root: Path, local_root: Path) -> None:
        self._agent_root = PurePosixPath(_normalize(str(agent_root)))
        self._local_root = Path(local_root)

    @property
    def local_root(self) -> Path:
        return self._local_root

    def to_local(self, reported_path: str) -> Path:
        normalized = PurePosixPath(_normalize(reported_path))

        if normalized.is_relative_to(self._agent_root) and normalized != self._agent_root:
            return self._local_root.joinpath(*normalized.relative_to(self._agent_root).parts)

        parts = [p for p in normalized.parts if p not in ("/", "")]
        if not parts:
            return self._local_root
        if len(parts) == 1:
            return self._local_root / parts[0]
        return self._local_root / parts[-2] / parts[-1]


def _normalize(path: str) -> str:
    """Windows separators to '/', collapse duplicate slashes."""
    normalized = path.replace("\\", "/")
    while "//" in normalized:
        normalized = normalized.replace("//", "/")
    return normalized


@dataclass(frozen=True)
class _Observation:
    size: int
    mtime: float
    observed_at: float


class StabilityTracker:
    """Decide whether a file has stopped changing.

    A file is stable when two observations with identical size and mtime are at
    least `quiet_interval` seconds apart. Any change restarts the clock.

    Hey future me - a stable verdict is NOT a free pass. Every call stats the file
    again and compares it with the signature it had when it was classified. A file
    that got replaced (peer re-sent it, user deleted and re-queued it) drops back to
    "not stable" and has to sit quiet for a full interval again. The "stable" log
    line is only emitted the first time.
    """

    def __init__(
        self,
        quiet_interval: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._quiet_interval = quiet_interval
        self._clock = clock
        self._observations: dict[Path, _Observation] = {}
        # path -> (size, mtime) at the moment it was classified stable
        self._stable: dict[Path, tuple[int, float]] = {}

    def observe(self, path: Path) -> bool:
        """Take an observation of path and return whether it is stable."""
        try:
            stat = path.stat()
        except FileNotFoundError:
            self.forget(path)
            return False

        signature = (stat.st_size, stat.st_mtime)
        known = self._stable.get(path)
        if known is not None:
            if known == signature:
                return True
            logger.debug("File changed after it was stable: %s", path)
            del self._stable[path]

        # Zero-byte files are placeholders slskd creates before the first chunk arrives
        if stat.st_size <= 0:
            self._observations.pop(path, None)
            return False

        now = self._clock()
        previous = self._observations.get(path)
        if (
            previous is None
            or previous.size != stat.st_size
            or previous.mtime != stat.st_mtime
        ):
            self._observations[path] = _Observation(stat.st_size, stat.st_mtime, now)
            return False

        if now - previous.observed_at < self._quiet_interval:
            return False

        self._stable[path] = signature
        self._observations.pop(path, None)
        logger.debug("File stable after %.1fs: %s", now - previous.observed_at, path)
        return True

    def forget(self, path: Path) -> None:
        self._observations.pop(path, None)
        self._stable.pop(path, None)

    @property
    def tracked(self) -> int:
        """Number of paths with an observation or a stable verdict."""
        return len(self._observations.keys() | self._stable.keys())


class FileResolver(IFileResolver):
    """IFileResolver backed by the local filesystem."""

    def __init__(self, mapper: PathMapper, tracker: StabilityTracker) -> None:
        self._mapper = mapper
        self._tracker = tracker

    def to_local(self, reported_path: str) -> Path:
        return self._mapper.to_local(reported_path)

    def locate(self, reported_path: str) -> Path | None:
        path = self.to_local(reported_path)
        return path if path.is_file() else None

    def is_stable(self, path: Path) -> bool:
        return self._tracker.observe(path)

    def forget(self, path: Path) -> None:
        self._tracker.forget(path)
