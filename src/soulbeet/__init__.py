"""SoulBeet - Soulseek download-to-beets import orchestration engine."""

__version__ = "0.4.0"
