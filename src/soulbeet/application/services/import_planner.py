"""Import planning - decide how resolved files are handed to the importer."""

import logging
from pathlib import Path

from soulbeet.domain.entities import GroupStatus, ImportGroup
from soulbeet.domain.value_objects import ImportMode

logger = logging.getLogger(__name__)


# Hey future me - grouping rules:
# - SINGLETON: one group per file.
# - ALBUM: one group per parent directory (A/1, A/2, B/1 -> groups A and B).
#   A file sitting directly in the download root has no album directory of its
#   own, importing the whole root as an album would sweep up unrelated files, so
#   it becomes a singleton group.
# Groups that already left PENDING are kept as they are. Re-planning after a
# retry must never re-run an IMPORTED group or forget an IN_FLIGHT one.
def plan_import_groups(
    paths: list[str],
    mode: ImportMode,
    download_root: Path,
    existing: list[ImportGroup] | None = None,
) -> list[ImportGroup]:
    """Build import groups for the resolved local paths of a job.

    Args:
        paths: Resolved local file paths, in job order
        mode: Import mode of the request
        download_root: Local download root (files directly in it become singletons)
        existing: Groups from an earlier planning round

    Returns:
        Groups in deterministic order (order of first file)
    """
    planned: dict[str, ImportGroup] = {}
    root = _normalize(download_root)

    for raw in paths:
        path = Path(raw)
        if mode == ImportMode.SINGLETON or _normalize(path.parent) == root:
            key, group_mode = str(path), ImportMode.SINGLETON
        else:
            key, group_mode = str(path.parent), ImportMode.ALBUM

        group = planned.get(key)
        if group is None:
            planned[key] = ImportGroup(key=key, paths=[str(path)], mode=group_mode)
        elif str(path) not in group.paths:
            group.paths.append(str(path))

    previous = {g.key: g for g in existing or []}
    result: list[ImportGroup] = []
    for key, group in planned.items():
        old = previous.get(key)
        if old is not None and old.status != GroupStatus.PENDING:
            result.append(old)
        else:
            result.append(group)

    # Keep groups we planned earlier but whose files are no longer in `paths`
    # if they already ran - their outcome is part of the job's history.
    for key, old in previous.items():
        if key not in planned and old.status != GroupStatus.PENDING:
            result.append(old)

    logger.debug(
        "Planned %d import group(s) for %d file(s) in %s mode",
        len(result),
        len(paths),
        mode.value,
    )
    return result


def _normalize(path: Path) -> Path:
    return Path(path).expanduser().resolve(strict=False)
