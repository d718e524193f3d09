"""Agent Client Port (Interface) for the remote download agent.

This module defines what the orchestration engine needs from a download
agent (slskd today). Following Hexagonal Architecture (Ports & Adapters),
this is a PORT in the domain layer; the slskd adapter lives in
infrastructure/providers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from soulbeet.domain.entities import TransferState
from soulbeet.domain.value_objects import TransferSpec


@dataclass(frozen=True)
class TransferStatus:
    """One poll result for an agent transfer.

    `files` is filled for COMPLETE (paths as the agent reports them), `reason`
    for FAILED, `progress` (0-100) for IN_PROGRESS.
    """

    state: TransferState
    progress: float = 0.0
    files: tuple[str, ...] = field(default_factory=tuple)
    reason: str | None = None

    @classmethod
    def unknown(cls, reason: str | None = None) -> "TransferStatus":
        return cls(state=TransferState.UNKNOWN, reason=reason)


class IAgentClient(ABC):
    """Interface for the remote download agent.

    Implementations must be idempotent on retry and have no side effects
    beyond the remote call. State (what was enqueued, first-seen timestamps,
    ...) belongs to the Job, not to the client.
    """

    @abstractmethod
    async def enqueue(self, spec: TransferSpec) -> str:
        """Ask the agent to download one file.

        Args:
            spec: Peer username, remote filename and size

        Returns:
            Agent job id used for later polling

        Raises:
            TransientRemoteError: Agent unreachable/timeout/5xx
            PermanentRemoteFailure: Agent rejected the transfer
        """
        pass

    @abstractmethod
    async def poll_status(self, agent_job_id: str) -> TransferStatus:
        """Get the current status of a transfer.

        Hey future me - this must NEVER raise. Network errors, timeouts,
        garbage payloads and "not found" all come back as UNKNOWN; the
        orchestration loop decides how long it tolerates UNKNOWN.
        """
        pass

    @abstractmethod
    async def cancel_transfer(self, agent_job_id: str) -> None:
        """Cancel a transfer on the agent.

        Raises:
            TransientRemoteError: Agent unreachable or request failed
        """
        pass

    @abstractmethod
    async def is_available(self) -> bool:
        """Check whether the agent answers at all (health reporting)."""
        pass
