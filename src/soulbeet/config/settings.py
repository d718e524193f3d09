"""Application settings loaded from environment variables.

Hey future me - every knob the engine has lives here. Each group has its own
env prefix (SLSKD_, BEETS_, DATABASE_, ENGINE_, LOG_) so docker-compose files
stay readable. Nothing else in the code base should read os.environ directly!
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SlskdSettings(BaseSettings):
    """slskd (Soulseek daemon) connection settings."""

    model_config = SettingsConfigDict(env_prefix="SLSKD_", extra="ignore")

    url: str = Field(default="http://localhost:5030", description="slskd base URL")
    api_key: str | None = Field(default=None, description="slskd API key")
    timeout: float = Field(default=15.0, gt=0, description="Per-request timeout (s)")
    # Where slskd itself writes completed files (its own view of the storage).
    download_path: Path = Field(default=Path("/app/downloads"))
    # Where the engine sees the same storage. Defaults to download_path when
    # both run on the same host / mount.
    local_download_path: Path | None = Field(default=None)

    @field_validator("url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("SLSKD_URL must start with http:// or https://")
        return value.rstrip("/")

    @property
    def effective_local_path(self) -> Path:
        """Download root as seen by the engine."""
        return self.local_download_path or self.download_path


class BeetsSettings(BaseSettings):
    """beets importer settings."""

    model_config = SettingsConfigDict(env_prefix="BEETS_", extra="ignore")

    executable: str = "beet"
    config: Path = Path("beets_config.yaml")
    import_timeout: float = Field(default=300.0, gt=0)
    # Default grouping mode for new requests (per request override allowed)
    album_mode: bool = False
    # Strict: "nothing imported" or a non-zero exit is a permanent rejection
    strict: bool = True
    # Per-target library DB, used by beets for duplicate detection
    library_db_name: str = ".beets_library.db"


class DatabaseSettings(BaseSettings):
    """Job store database settings."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_", extra="ignore")

    url: str = "sqlite+aiosqlite:///./soulbeet.db"
    echo: bool = False
    pool_pre_ping: bool = True
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 3600

    def sqlite_db_path(self) -> Path | None:
        """File path of a SQLite database URL, None for other backends or :memory:."""
        if not self.url.startswith("sqlite"):
            return None
        _, _, path = self.url.partition(":///")
        if not path or path.startswith(":memory:"):
            return None
        return Path(path.split("?", 1)[0])


class EngineSettings(BaseSettings):
    """Orchestration loop tuning."""

    model_config = SettingsConfigDict(env_prefix="ENGINE_", extra="ignore")

    poll_interval: float = Field(default=2.0, gt=0)
    tick_interval: float = Field(default=1.0, gt=0)
    max_workers: int = Field(default=4, ge=1)
    # Global cap across folders; per-folder serialization is always on
    max_concurrent_imports: int = Field(default=2, ge=1)
    max_retries: int = Field(default=3, ge=0)
    backoff_base: float = Field(default=30.0, gt=0)
    backoff_max: float = Field(default=900.0, gt=0)
    unknown_backoff_max: float = Field(default=60.0, gt=0)
    stability_quiet_interval: float = Field(default=5.0, ge=0)
    file_wait_window: float = Field(default=300.0, gt=0)
    transfer_timeout: float = Field(default=3600.0, gt=0)
    max_unknown_polls: int = Field(default=15, ge=1)
    album_policy: Literal["all_or_nothing", "best_effort"] = "all_or_nothing"

    @model_validator(mode="after")
    def _check_backoff(self) -> "EngineSettings":
        if self.backoff_max < self.backoff_base:
            raise ValueError("ENGINE_BACKOFF_MAX must be >= ENGINE_BACKOFF_BASE")
        return self


class ObservabilitySettings(BaseSettings):
    """Logging settings."""

    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_format: bool = False
    # Wait for running job steps on shutdown. A running beets import additionally
    # gets up to BEETS_IMPORT_TIMEOUT before it is cancelled.
    shutdown_timeout: float = Field(default=30.0, ge=0)

    @field_validator("level", mode="before")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper() if isinstance(value, str) else value


class Settings(BaseSettings):
    """Root settings object."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    app_name: str = "soulbeet"
    slskd: SlskdSettings = Field(default_factory=SlskdSettings)
    beets: BeetsSettings = Field(default_factory=BeetsSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)


# Cached so every module sees the same instance. Tests call
# get_settings.cache_clear() after monkeypatching env vars.
@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings."""
    return Settings()
