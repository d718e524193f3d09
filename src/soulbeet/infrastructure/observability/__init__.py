"""Observability infrastructure for structured logging."""

from soulbeet.infrastructure.observability.log_messages import LogMessages, LogTemplate
from soulbeet.infrastructure.observability.logging import (
    configure_logging,
    get_job_id,
    job_context,
)

__all__ = [
    "LogMessages",
    "LogTemplate",
    "configure_logging",
    "get_job_id",
    "job_context",
]
