"""Worker system - Background job processing."""

from soulbeet.application.workers.orchestration_worker import OrchestrationWorker

__all__ = ["OrchestrationWorker"]
