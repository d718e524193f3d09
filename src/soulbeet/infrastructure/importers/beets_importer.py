"""beets importer invoker.

Runs `beet import` as a subprocess and turns its exit status and output into an
ImportResult. The command line is:

    beet -c <config> -l <target>/.beets_library.db -d <target> import -q [-s] <sources...>

Each target folder gets its own library database so beets' duplicate detection
works per library.
"""

import asyncio
import logging
from pathlib import Path

from soulbeet.domain.entities import FileImportOutcome
from soulbeet.domain.exceptions import DataIntegrityError, ImporterLaunchError
from soulbeet.domain.ports import IImporter, ImportResult
from soulbeet.domain.value_objects import ImportConfig, ImportMode

logger = logging.getLogger(__name__)


class BeetsImporter(IImporter):
    """IImporter implementation that shells out to beets."""

    def __init__(self, executable: str = "beet") -> None:
        self._executable = executable

    def build_command(
        self,
        sources: list[Path],
        mode: ImportMode,
        target_folder: Path,
        config: ImportConfig,
    ) -> list[str]:
        """Build the beet command line for one invocation."""
        cmd = [
            self._executable,
            "-c",
            str(config.config_path),
            "-l",  # library database path (duplicate detection per target)
            str(target_folder / config.library_db_name),
            "-d",  # destination directory
            str(target_folder),
            "import",
            "-q",  # quiet: never prompt, skip what would need a decision
        ]
        if mode == ImportMode.SINGLETON:
            cmd.append("-s")
        cmd.extend(str(source) for source in sources)
        return cmd

    async def import_files(
        self,
        paths: list[Path],
        mode: ImportMode,
        target_folder: Path,
        config: ImportConfig,
    ) -> ImportResult:
        """Import files with beets.

        In album mode beets wants directories, so the files are collapsed to
        their parent directories. Outcomes are still reported per file.
        """
        missing = [str(p) for p in paths if not p.is_file()]
        if missing:
            raise DataIntegrityError(
                f"Import source(s) missing: {', '.join(missing[:5])}"
            )

        sources = _album_sources(paths) if mode == ImportMode.ALBUM else list(paths)
        target_folder.mkdir(parents=True, exist_ok=True)
        cmd = self.build_command(sources, mode, target_folder, config)

        logger.info(
            "Starting beet import of %d file(s) to %s (mode: %s)",
            len(paths),
            target_folder,
            mode.value,
        )
        logger.debug("beet command: %s", cmd)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ImporterLaunchError(f"Could not start {self._executable}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=config.timeout
            )
        except TimeoutError:
            # Hey future me - kill, then WAIT, otherwise we leave a zombie behind
            process.kill()
            await process.wait()
            logger.warning(
                "beet import timed out after %.0fs for %d file(s) in %s",
                config.timeout,
                len(paths),
                target_folder,
            )
            return ImportResult(
                success=False,
                exit_code=None,
                timed_out=True,
                per_file_outcome={str(p): FileImportOutcome.FAILED for p in paths},
                raw_output=f"timed out after {config.timeout:.0f}s",
            )

        output = _combine_output(stdout, stderr)
        exit_code = process.returncode

        if exit_code != 0:
            logger.info("beet import failed with exit code %s", exit_code)
            return ImportResult(
                success=False,
                exit_code=exit_code,
                per_file_outcome={str(p): FileImportOutcome.FAILED for p in paths},
                raw_output=output or f"beet exited with code {exit_code}",
            )

        per_file = classify_output(output, paths)
        imported = sum(1 for o in per_file.values() if o == FileImportOutcome.IMPORTED)
        logger.info(
            "beet import finished: %d imported, %d skipped",
            imported,
            len(per_file) - imported,
        )
        return ImportResult(
            success=imported > 0,
            exit_code=exit_code,
            per_file_outcome=per_file,
            raw_output=output,
        )


def _album_sources(paths: list[Path]) -> list[Path]:
    """Unique parent directories, in first-seen order."""
    seen: dict[Path, None] = {}
    for path in paths:
        seen.setdefault(path.parent, None)
    return list(seen)


def _combine_output(stdout: bytes | None, stderr: bytes | None) -> str:
    # beets writes to either stream depending on version/config
    out = (stdout or b"").decode("utf-8", errors="replace")
    err = (stderr or b"").decode("utf-8", errors="replace")
    if out and err:
        return f"{out.rstrip()}\n{err}"
    return out or err


def classify_output(output: str, paths: list[Path]) -> dict[str, FileImportOutcome]:
    """Work out which files beets skipped.

    beets prints the item (file or album directory) on one line and "Skipping."
    on the next, or both on one line. When skip lines name specific files (or
    their directory), only those are skipped. A skip nobody can be matched to
    means the whole invocation was skipped.
    """
    lines = output.splitlines()
    skip_context: list[str] = []
    for i, line in enumerate(lines):
        if "skip" in line.lower():
            previous = lines[i - 1] if i > 0 else ""
            skip_context.append(f"{previous}\n{line}".lower())

    if not skip_context:
        return {str(p): FileImportOutcome.IMPORTED for p in paths}

    named = {
        str(p)
        for p in paths
        if any(_mentions(text, p) for text in skip_context)
    }
    if not named:
        return {str(p): FileImportOutcome.SKIPPED for p in paths}
    return {
        str(p): FileImportOutcome.SKIPPED if str(p) in named else FileImportOutcome.IMPORTED
        for p in paths
    }


def _mentions(text: str, path: Path) -> bool:
    candidates = (str(path), str(path.parent), path.name)
    return any(c and c.lower() in text for c in candidates)
