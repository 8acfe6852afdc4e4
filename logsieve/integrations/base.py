# logsieve/integrations/base.py
"""
Base class for line sources.

A line source turns some external log location (a local directory, a
CI artifact listing, ...) into a stream of RawLines whose source identity
is already resolved. The detection engine doesn't care which adapter
produced the stream.

All line sources inherit from BaseLineSource and implement:
- iter_lines(): Yield RawLines, grouped per file, in file order
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterator, List, Optional

from ..core.models import RawLine

logger = logging.getLogger(__name__)


class IntegrationError(Exception):
    """Base exception for line source errors."""

    def __init__(self, message: str, service: str, details: Optional[Dict] = None):
        self.message = message
        self.service = service
        self.details = details or {}
        super().__init__(f"[{service}] {message}")


class BaseLineSource(ABC):
    """
    Abstract base class for line sources.

    Subclasses set SERVICE_NAME and implement iter_lines().
    """

    SERVICE_NAME: str = "base"

    @property
    def name(self) -> str:
        """Human-readable name of this source (used in logs and errors)"""
        return self.SERVICE_NAME

    @abstractmethod
    def iter_lines(self) -> Iterator[RawLine]:
        """
        Yield every line of this source.

        Returns:
            Iterator of RawLine with source identity and ordinal set

        Raises:
            IntegrationError: If the underlying location can't be read
        """
        pass

    def read_lines(self) -> List[RawLine]:
        """Collect iter_lines() into a list."""
        lines = list(self.iter_lines())
        logger.info(f"Read {len(lines)} lines from {self.name}")
        return lines

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(service={self.SERVICE_NAME})>"
