# logsieve/core/__init__.py
"""
Core modules for LogSieve
"""

from .models import (
    RawLine,
    ScoredLine,
    AnomalyChunk,
    IndexReport,
    SourceReport,
    Report,
)

from .config import settings, Settings, get_settings, reload_settings, configure_logging

__all__ = [
    # Models
    "RawLine",
    "ScoredLine",
    "AnomalyChunk",
    "IndexReport",
    "SourceReport",
    "Report",
    # Config
    "settings",
    "Settings",
    "get_settings",
    "reload_settings",
    "configure_logging",
]
