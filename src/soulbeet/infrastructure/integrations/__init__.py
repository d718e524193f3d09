"""External integration client implementations."""

from soulbeet.infrastructure.integrations.slskd_client import SlskdApiError, SlskdClient

__all__ = [
    "SlskdApiError",
    "SlskdClient",
]
