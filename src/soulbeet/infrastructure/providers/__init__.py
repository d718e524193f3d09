"""Agent client implementations of the domain ports."""

from soulbeet.infrastructure.providers.slskd_provider import (
    SlskdAgentClient,
    filenames_match,
)

__all__ = [
    "SlskdAgentClient",
    "filenames_match",
]
