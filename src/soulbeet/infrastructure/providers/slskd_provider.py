"""slskd Agent Client implementation.

This adapter implements IAgentClient for the slskd daemon. It translates
slskd's transfer records into TransferStatus and slskd/HTTP failures into
the acquisition error taxonomy.

slskd States Mapping (states are comma separated flag lists, e.g. "Completed, Succeeded"):
- Succeeded → COMPLETE
- Errored, Rejected, TimedOut, Failed → FAILED
- Cancelled, Aborted → FAILED (reason says it was cancelled on the agent)
- InProgress, Initializing → IN_PROGRESS
- Queued, Requested, None → QUEUED
- anything else → UNKNOWN
"""

import logging
from typing import Any

import httpx

from soulbeet.domain.entities import TransferState
from soulbeet.domain.exceptions import PermanentRemoteFailure, TransientRemoteError
from soulbeet.domain.ports.agent_client import IAgentClient, TransferStatus
from soulbeet.domain.value_objects import TransferSpec
from soulbeet.infrastructure.integrations.slskd_client import (
    SlskdApiError,
    SlskdClient,
    flatten_user_transfers,
)

logger = logging.getLogger(__name__)


# Hey future me - slskd download states are NOT documented well!
# The API returns a flags enum serialized as "Completed, Succeeded" etc.
# We lowercase and split on commas, then check flags in THIS order:
# failure flags win over "completed" (a "Completed, Errored" transfer is dead).
_FAILED_FLAGS = frozenset({"errored", "rejected", "timedout", "failed", "forbidden"})
_CANCELLED_FLAGS = frozenset({"cancelled", "aborted", "removed"})
_ACTIVE_FLAGS = frozenset({"inprogress", "initializing", "downloading"})
_QUEUED_FLAGS = frozenset({"queued", "requested", "none", "locally", "remotely"})

# HTTP statuses that are "try again later" even though they are 4xx
_TRANSIENT_CLIENT_STATUSES = frozenset({408, 409, 423, 429})


def parse_state_flags(state: str | None) -> set[str]:
    """Split a slskd state string into lowercase flags."""
    if not state:
        return set()
    return {flag.strip().lower() for flag in str(state).split(",") if flag.strip()}


def map_slskd_transfer(entry: dict[str, Any]) -> TransferStatus:
    """Convert one slskd transfer record into a TransferStatus."""
    raw_state = entry.get("state")
    flags = parse_state_flags(raw_state)
    progress = float(entry.get("percentComplete") or 0.0)
    filename = entry.get("filename") or ""

    if "succeeded" in flags:
        return TransferStatus(
            state=TransferState.COMPLETE, progress=100.0, files=(filename,)
        )
    if flags & _FAILED_FLAGS:
        reason = entry.get("exception") or f"slskd state: {raw_state}"
        return TransferStatus(state=TransferState.FAILED, progress=progress, reason=reason)
    if flags & _CANCELLED_FLAGS:
        return TransferStatus(
            state=TransferState.FAILED,
            progress=progress,
            reason=f"transfer cancelled on agent ({raw_state})",
        )
    if "completed" in flags:
        # Completed without Succeeded/failure flag - only trust it when all bytes arrived
        if progress >= 100.0 or entry.get("bytesRemaining") == 0:
            return TransferStatus(
                state=TransferState.COMPLETE, progress=100.0, files=(filename,)
            )
        return TransferStatus.unknown(f"ambiguous slskd state: {raw_state}")
    if flags & _ACTIVE_FLAGS:
        return TransferStatus(state=TransferState.IN_PROGRESS, progress=progress)
    if flags & _QUEUED_FLAGS:
        return TransferStatus(state=TransferState.QUEUED, progress=progress)
    return TransferStatus.unknown(f"unrecognized slskd state: {raw_state}")


def normalize_filename(filename: str) -> str:
    """Normalize Windows/Unix separators and case for comparison."""
    return filename.replace("\\", "/").lower()


def match_rank(expected: str, reported: str) -> int:
    """Rate how well a filename reported by slskd matches the file we asked for.

    Peers report paths with either separator and slskd sometimes returns a
    shortened path. Ranks, best first:

        3  same path
        2  one path is a trailing part of the other
        1  same file name in a directory of the same name
        0  no match

    A bare file name match is never enough: two albums can both contain
    "01 - Intro.flac".
    """
    a = normalize_filename(expected)
    b = normalize_filename(reported)
    if not a or not b:
        return 0
    if a == b:
        return 3
    if a.endswith("/" + b) or b.endswith("/" + a):
        return 2
    a_parts = a.rsplit("/", 2)
    b_parts = b.rsplit("/", 2)
    if len(a_parts) >= 2 and len(b_parts) >= 2 and a_parts[-2:] == b_parts[-2:]:
        return 1
    return 0


def filenames_match(expected: str, reported: str) -> bool:
    """Check whether a filename reported by slskd is the file we asked for."""
    return match_rank(expected, reported) > 0


def make_agent_id(username: str, filename: str) -> str:
    """Build the agent job id for a transfer."""
    return f"{username}/{filename}"


def split_agent_id(agent_job_id: str) -> tuple[str, str] | None:
    """Split "username/filename" on the FIRST slash (filenames contain slashes too)."""
    username, sep, filename = agent_job_id.partition("/")
    if not sep or not username or not filename:
        return None
    return username, filename


class SlskdAgentClient(IAgentClient):
    """IAgentClient implementation for slskd (Soulseek).

    Stateless: every call goes to slskd. The agent job id is "username/filename",
    which is stable across retries and lets us find the transfer again after a restart.
    """

    def __init__(self, slskd_client: SlskdClient) -> None:
        """Initialize with slskd client.

        Args:
            slskd_client: HTTP client for the slskd API
        """
        self._client = slskd_client

    async def is_available(self) -> bool:
        """Check if slskd is reachable and authenticated."""
        result = await self._client.test_connection()
        if not result.get("success", False):
            logger.debug("slskd availability check failed: %s", result.get("error"))
        return bool(result.get("success", False))

    async def enqueue(self, spec: TransferSpec) -> str:
        """Enqueue one file on slskd and return its agent job id."""
        payload = [{"filename": spec.filename, "size": spec.size}]
        try:
            response = await self._client.enqueue_downloads(spec.username, payload)
        except httpx.HTTPError as e:
            raise TransientRemoteError(
                f"slskd unreachable while enqueuing {spec.basename}: {e}"
            ) from e
        except SlskdApiError as e:
            if e.is_client_error and e.status_code not in _TRANSIENT_CLIENT_STATUSES:
                raise PermanentRemoteFailure(
                    f"slskd rejected {spec.basename} (HTTP {e.status_code})",
                    detail=e.body,
                ) from e
            raise TransientRemoteError(
                f"slskd error while enqueuing {spec.basename} (HTTP {e.status_code})",
                detail=e.body,
            ) from e

        failure = self._find_enqueue_failure(response, spec.filename)
        if failure is not None:
            raise PermanentRemoteFailure(
                f"slskd could not enqueue {spec.basename}: {failure}"
            )

        agent_id = make_agent_id(spec.username, spec.filename)
        logger.info("Enqueued %s from %s", spec.basename, spec.username)
        return agent_id

    # Hey future me - slskd's enqueue answer has changed shape across versions:
    # empty body, a single transfer object, a list of transfers, or
    # {"enqueued": [...], "failed": [...]}. Only the last one can tell us about
    # failures, everything else means "accepted".
    @staticmethod
    def _find_enqueue_failure(response: Any, filename: str) -> str | None:
        if not isinstance(response, dict) or "failed" not in response:
            return None
        for item in response.get("failed") or []:
            if isinstance(item, str):
                failed_name, reason = item, "download failed"
            elif isinstance(item, dict):
                failed_name = item.get("filename") or ""
                reason = item.get("error") or item.get("reason") or "download failed"
            else:
                logger.warning("slskd reported unparseable failed item: %r", item)
                continue
            if failed_name and filenames_match(filename, failed_name):
                return str(reason)
        return None

    async def poll_status(self, agent_job_id: str) -> TransferStatus:
        """Get the current status of a transfer (never raises)."""
        entry_or_status = await self._find_transfer(agent_job_id)
        if isinstance(entry_or_status, TransferStatus):
            return entry_or_status
        try:
            return map_slskd_transfer(entry_or_status)
        except (ValueError, TypeError, AttributeError) as e:
            # e.g. "percentComplete": "n/a" from a patched slskd build
            logger.warning("Unexpected slskd transfer record for %s: %s", agent_job_id, e)
            return TransferStatus.unknown("unexpected agent payload")

    async def cancel_transfer(self, agent_job_id: str) -> None:
        """Cancel a transfer on slskd (no-op if slskd doesn't know it)."""
        parts = split_agent_id(agent_job_id)
        if parts is None:
            return
        username, _ = parts
        try:
            entry_or_status = await self._find_transfer(agent_job_id, strict=True)
            if isinstance(entry_or_status, TransferStatus):
                logger.debug("Nothing to cancel for %s (%s)", agent_job_id, entry_or_status.reason)
                return
            transfer_id = entry_or_status.get("id")
            if not transfer_id:
                return
            await self._client.cancel_download(username, str(transfer_id), remove=False)
        except (httpx.HTTPError, SlskdApiError) as e:
            raise TransientRemoteError(f"Failed to cancel {agent_job_id} on slskd: {e}") from e
        logger.info("Cancelled transfer %s on slskd", agent_job_id)

    async def _find_transfer(
        self, agent_job_id: str, strict: bool = False
    ) -> dict[str, Any] | TransferStatus:
        """Look up the slskd record for an agent job id.

        Returns the raw transfer dict, or an UNKNOWN TransferStatus explaining why
        it could not be found. With strict=True, HTTP/transport errors propagate.
        """
        parts = split_agent_id(agent_job_id)
        if parts is None:
            return TransferStatus.unknown(f"malformed agent id: {agent_job_id!r}")
        username, filename = parts

        try:
            user = await self._client.get_user_downloads(username)
        except (httpx.HTTPError, SlskdApiError) as e:
            if strict:
                raise
            logger.debug("slskd poll for %s failed: %s", agent_job_id, e)
            return TransferStatus.unknown(str(e))
        except ValueError as e:
            # Garbage JSON
            logger.warning("slskd returned unparseable transfer list for %s: %s", username, e)
            return TransferStatus.unknown("unparseable agent response")

        if user is None:
            return TransferStatus.unknown("transfer not found on agent")

        try:
            ranked = [
                (match_rank(filename, entry.get("filename") or ""), entry)
                for entry in flatten_user_transfers(user)
            ]
        except (AttributeError, TypeError) as e:
            logger.warning("Unexpected slskd payload for %s: %s", username, e)
            return TransferStatus.unknown("unexpected agent payload")
        best = max((rank for rank, _ in ranked), default=0)
        if best == 0:
            return TransferStatus.unknown("transfer not found on agent")

        # Only the best kind of match counts: an exact path beats a shortened one,
        # which beats "same directory and file name". Re-enqueued files show up
        # several times, the newest request wins.
        return max(
            (entry for rank, entry in ranked if rank == best),
            key=lambda e: str(e.get("requestedAt") or ""),
        )
