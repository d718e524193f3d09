"""Importer implementations."""

from soulbeet.infrastructure.importers.beets_importer import BeetsImporter

__all__ = ["BeetsImporter"]
