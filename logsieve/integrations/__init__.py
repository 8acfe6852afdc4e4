# logsieve/integrations/__init__.py
"""
Line sources that feed RawLines into the detection engine.

Supported sources:
- Local: log files and directory trees on disk (plain, .gz, .bz2, .xz)

Each source resolves the generalized source identity of its lines, so
the engine never has to know where a line came from.
"""

from .base import BaseLineSource, IntegrationError
from .local import LocalFileSource, source_identity

__all__ = [
    "BaseLineSource",
    "IntegrationError",
    "LocalFileSource",
    "source_identity",
]
