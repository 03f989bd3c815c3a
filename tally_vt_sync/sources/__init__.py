"""Legacy accessors for the flat Tally export tables."""
from __future__ import annotations
from typing import Optional

from ..config import VtSyncConfig
from ..errors import ConfigurationError
from .base import LegacyBatch, LegacySource
from .http import HttpLegacySource
from .memory import MemoryLegacySource
from .postgres import PostgresLegacySource


def build_source(config: Optional[VtSyncConfig] = None) -> LegacySource:
    """Create the legacy source selected by LEGACY_SOURCE."""
    config = config or VtSyncConfig.from_env()
    if config.legacy_source == "postgres":
        return PostgresLegacySource(config)
    if config.legacy_source == "http":
        return HttpLegacySource(config)
    raise ConfigurationError(f"Unknown legacy source: {config.legacy_source!r}")


__all__ = [
    "LegacyBatch",
    "LegacySource",
    "HttpLegacySource",
    "MemoryLegacySource",
    "PostgresLegacySource",
    "build_source",
]
