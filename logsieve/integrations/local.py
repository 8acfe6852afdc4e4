# logsieve/integrations/local.py
"""
Local file line source.

Walks a log file or a directory of logs (e.g. a downloaded CI job
artifact tree) and yields RawLines with a generalized source identity,
so the same logical log file from two different runs lands in the same
source:

    run-1/job-1234/logs/2024-01-15/app.log.gz  → job-{id}/logs/{date}/app.log
    run-2/job-5678/logs/2024-02-03/app.log     → job-{id}/logs/{date}/app.log

(paths are taken relative to the root passed in)
"""

import bz2
import gzip
import logging
import lzma
import re
from pathlib import Path
from typing import IO, Iterator, List, Optional, Sequence, Union

from ..core.config import get_settings
from ..core.models import RawLine
from .base import BaseLineSource, IntegrationError

logger = logging.getLogger(__name__)

COMPRESSED_SUFFIXES = (".gz", ".bz2", ".xz")

# Bytes sniffed to tell binary files apart from text
_SNIFF_BYTES = 8192

# ===== SOURCE IDENTITY =====
_UUID_RE = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")
# Separated dates (2024-01-15, 2024-01-15T10-30-00) or compact date-times
# (20240115T103000, 20240115_103000); a bare digit run is never a date
_DATE_RE = re.compile(
    r"(?<!\d)(?:"
    r"\d{4}-\d{2}-\d{2}(?:[T_]\d{2}[:.-]\d{2}(?:[:.-]\d{2})?(?:\.\d+)?Z?)?"
    r"|\d{8}[T_]\d{6}Z?"
    r")(?!\d)"
)
# A whole alphanumeric token made of hex digits: any length with a digit
# (1234, 1234567, abc1234) or 7+ chars without one (a letter-only short sha)
_ID_RE = re.compile(
    r"(?<![0-9A-Za-z])(?:(?=[0-9a-fA-F]*\d)[0-9a-fA-F]+|[0-9a-fA-F]{7,})(?![0-9A-Za-z])"
)
_DIGITS_RE = re.compile(r"\d+")


def source_identity(path: Union[str, Path]) -> str:
    """
    Generalize a log path into a source identity

    Rules, in order:
    - compression suffixes (.gz, .bz2, .xz) are dropped
    - UUIDs → {uuid}
    - separated dates and date-times → {date}
    - whole numeric or hex tokens (counters, build numbers, commit ids) → {id}
    - digit runs left inside words → {n}

    Run numbers and commit ids map to the same placeholder whatever their
    length or alphabet, so two runs of one job always share a source.

    Example:
        >>> source_identity("job-1234/logs/2024-01-15/app.log.gz")
        'job-{id}/logs/{date}/app.log'
        >>> source_identity("builds/4f3a9c2e1b/output.txt")
        'builds/{id}/output.txt'
        >>> source_identity("node3/journal.xz")
        'node{n}/journal'
    """
    text = Path(path).as_posix()

    for suffix in COMPRESSED_SUFFIXES:
        if text.endswith(suffix):
            text = text[:-len(suffix)]
            break

    text = _UUID_RE.sub("{uuid}", text)
    text = _DATE_RE.sub("{date}", text)
    text = _ID_RE.sub("{id}", text)
    text = _DIGITS_RE.sub("{n}", text)
    return text


def compile_excludes(patterns: Sequence[str]) -> List[re.Pattern]:
    """Compile exclude regexes, raising IntegrationError on a bad pattern"""
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            raise IntegrationError(f"Invalid exclude pattern {pattern!r}: {e}", "local") from e
    return compiled


def open_log(path: Path) -> IO[bytes]:
    """Open a log file for binary reading, decompressing by suffix"""
    if path.suffix == ".gz":
        return gzip.open(path, "rb")
    if path.suffix == ".bz2":
        return bz2.open(path, "rb")
    if path.suffix == ".xz":
        return lzma.open(path, "rb")
    return open(path, "rb")


class LocalFileSource(BaseLineSource):
    """
    Read RawLines from a local file or directory tree

    Usage:
        source = LocalFileSource("~/Downloads/job-1234")
        for line in source.iter_lines():
            ...
    """

    SERVICE_NAME = "local"

    def __init__(
        self,
        root: Union[str, Path],
        exclude_patterns: Optional[Sequence[str]] = None,
        max_file_size_mb: Optional[int] = None
    ):
        """
        Args:
            root: A log file or a directory of logs
            exclude_patterns: Regexes matched against the relative path (defaults to settings)
            max_file_size_mb: Skip larger files (defaults to settings)
        """
        cfg = get_settings()
        self.root = Path(root).expanduser()
        self.excludes = compile_excludes(
            exclude_patterns if exclude_patterns is not None else cfg.exclude_patterns
        )
        self.max_file_size_mb = max_file_size_mb if max_file_size_mb is not None else cfg.max_file_size_mb

    @property
    def name(self) -> str:
        return f"local:{self.root}"

    def is_excluded(self, relative: str) -> bool:
        return any(pattern.search(relative) for pattern in self.excludes)

    def _too_large(self, path: Path) -> bool:
        try:
            return path.stat().st_size > self.max_file_size_mb * 1024 * 1024
        except OSError:
            return False

    def iter_files(self) -> Iterator[Path]:
        """
        Yield the files to read, in sorted path order

        Raises:
            IntegrationError: If root doesn't exist
        """
        if not self.root.exists():
            raise IntegrationError(f"Path not found: {self.root}", self.SERVICE_NAME)

        if self.root.is_file():
            yield self.root
            return

        for path in sorted(self.root.rglob("*")):
            if not path.is_file():
                continue
            relative = path.relative_to(self.root).as_posix()
            if self.is_excluded(relative):
                logger.debug(f"Excluded {relative}")
                continue
            if self._too_large(path):
                logger.warning(f"Skipping {relative}: larger than {self.max_file_size_mb}MB")
                continue
            yield path

    def _relative(self, path: Path) -> str:
        if self.root.is_file():
            return path.name
        return path.relative_to(self.root).as_posix()

    def iter_file_lines(self, path: Path, source: str) -> Iterator[RawLine]:
        """Yield the lines of one file (1-based ordinals, byte offsets)"""
        with open_log(path) as f:
            head = f.read(_SNIFF_BYTES)
            if b"\x00" in head:
                logger.debug(f"Skipping binary file {path}")
                return

            offset = 0
            ordinal = 0
            pending = head
            while True:
                # Read in blocks, split on b"\n", carry the partial last line
                parts = pending.split(b"\n")
                pending = parts.pop()
                for raw in parts:
                    ordinal += 1
                    yield RawLine(
                        text=raw.rstrip(b"\r"),
                        source=source,
                        ordinal=ordinal,
                        byte_offset=offset
                    )
                    offset += len(raw) + 1

                block = f.read(1024 * 1024)
                if not block:
                    break
                pending += block

            if pending:
                ordinal += 1
                yield RawLine(
                    text=pending.rstrip(b"\r"),
                    source=source,
                    ordinal=ordinal,
                    byte_offset=offset
                )

    def iter_lines(self) -> Iterator[RawLine]:
        """
        Yield every line of every readable file under root

        A file that fails mid-read is logged and skipped; the rest are read.
        """
        file_count = 0
        for path in self.iter_files():
            relative = self._relative(path)
            source = source_identity(relative)
            try:
                yield from self.iter_file_lines(path, source)
                file_count += 1
            except (OSError, EOFError, lzma.LZMAError) as e:
                logger.error(f"Failed to read {relative}: {e}", exc_info=True)

        logger.info(f"✅ Read {file_count} files from {self.root}")

    def __repr__(self) -> str:
        return f"<LocalFileSource(root={self.root})>"
