"""Filesystem access to the download area."""

from soulbeet.infrastructure.filesystem.resolver import (
    FileResolver,
    PathMapper,
    StabilityTracker,
)

__all__ = [
    "FileResolver",
    "PathMapper",
    "StabilityTracker",
]
