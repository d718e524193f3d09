"""Domain value objects."""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from uuid import UUID, uuid4

from soulbeet.domain.exceptions import ValidationException


@dataclass(frozen=True)
class JobId:
    """Unique identifier of an acquisition job."""

    value: UUID

    @classmethod
    def generate(cls) -> "JobId":
        """Generate a new random id."""
        return cls(uuid4())

    @classmethod
    def from_string(cls, value: str) -> "JobId":
        """Parse an id from its string form.

        Raises:
            ValidationException: If value is not a valid UUID
        """
        try:
            return cls(UUID(value))
        except (ValueError, AttributeError, TypeError) as e:
            raise ValidationException(f"Invalid job id: {value!r}") from e

    def __str__(self) -> str:
        return str(self.value)


# Hey future me - the import mode is decided ONCE when the request is made.
# The engine never guesses it later from folder contents.
class ImportMode(str, Enum):
    """How completed files are handed to the importer."""

    SINGLETON = "singleton"  # one import per file (beet import -s)
    ALBUM = "album"  # one import per parent directory


class AlbumPolicy(str, Enum):
    """What to do when some transfers of an album fail."""

    ALL_OR_NOTHING = "all_or_nothing"
    BEST_EFFORT = "best_effort"


@dataclass(frozen=True)
class TransferSpec:
    """One file to fetch from a peer, as reported by the agent's search."""

    username: str
    filename: str
    size: int = 0

    def __post_init__(self) -> None:
        if not self.username:
            raise ValidationException("Transfer username cannot be empty")
        if not self.filename:
            raise ValidationException("Transfer filename cannot be empty")
        if self.size < 0:
            raise ValidationException("Transfer size cannot be negative")

    @property
    def basename(self) -> str:
        """File name without the remote directory (handles Windows separators)."""
        return self.filename.replace("\\", "/").rsplit("/", 1)[-1]


@dataclass(frozen=True)
class ImportConfig:
    """Importer options that travel with one invocation."""

    config_path: Path
    library_db_name: str = ".beets_library.db"
    timeout: float = 300.0


__all__ = [
    "AlbumPolicy",
    "ImportConfig",
    "ImportMode",
    "JobId",
    "TransferSpec",
]
