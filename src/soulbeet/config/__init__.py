"""Configuration module for SoulBeet."""

from .settings import (
    BeetsSettings,
    DatabaseSettings,
    EngineSettings,
    ObservabilitySettings,
    Settings,
    SlskdSettings,
    get_settings,
)

__all__ = [
    "BeetsSettings",
    "DatabaseSettings",
    "EngineSettings",
    "ObservabilitySettings",
    "Settings",
    "SlskdSettings",
    "get_settings",
]
