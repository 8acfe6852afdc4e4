# logsieve/services/model.py
"""
Baseline Model: one Sparse Index per log source

## The Flow

    train():  baseline RawLines → group by source → tokenize → build_index
              (one unit of work per source, on a bounded thread pool)

    score():  target RawLines → group by source → tokenize → distance
              → threshold → merge anomalous lines into context chunks
              → Report

A Model is immutable once train() returns. It is safe to share between
threads and it is what the ModelCache memoizes, keyed by the baseline
fingerprint.

## Source outcomes when scoring

    known source, trained       → lines scored, chunks emitted
    known source, empty index   → every line scores 1.0, degenerate_baseline=True
    known source, train failed  → SourceReport.error, lines unscored
    unknown source              → coverage_gap=True, lines unscored
                                  (or scored 1.0 with score_unknown_sources)
"""

import gzip
import hashlib
import logging
import pickle
import time
from concurrent.futures import Executor, ThreadPoolExecutor, as_completed
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from ..core.config import get_settings
from ..core.models import AnomalyChunk, IndexReport, RawLine, Report, ScoredLine, SourceReport
from .index import SparseIndex, build_index
from .report import assemble_report
from .tokenizer import Tokens, tokenize

logger = logging.getLogger(__name__)

# Bump when the serialized layout changes; older files are rejected, not migrated
MODEL_FORMAT_VERSION = 1

LinesBySource = Mapping[str, Sequence[RawLine]]


# ===== GROUPING & FINGERPRINT =====

def group_by_source(lines: Iterable[RawLine]) -> Dict[str, List[RawLine]]:
    """
    Group lines by source identity, each group sorted by ordinal

    Args:
        lines: RawLines in any order, from any number of sources

    Returns:
        {source: [RawLine, ...]} with sources in first-seen order
    """
    grouped: Dict[str, List[RawLine]] = {}
    for line in lines:
        grouped.setdefault(line.source, []).append(line)

    for source_lines in grouped.values():
        source_lines.sort(key=lambda line: line.ordinal)

    return grouped


def _content_hash(lines: Sequence[RawLine]) -> str:
    hasher = hashlib.sha256()
    for line in lines:
        data = line.text.encode("utf-8", errors="replace")
        # Length prefix keeps line boundaries unambiguous
        hasher.update(len(data).to_bytes(8, "big"))
        hasher.update(data)
    return hasher.hexdigest()


def compute_fingerprint(baseline: Union[LinesBySource, Iterable[RawLine]]) -> str:
    """
    Content hash identifying a baseline set (the cache key)

    sha256 over the sorted (source identity, content hash) pairs, where the
    content hash is the sha256 of the source's line texts in ordinal order.
    Same baseline content → same fingerprint, whatever the input order.

    Example:
        >>> fp = compute_fingerprint([RawLine(text="ok", source="job.log", ordinal=1)])
        >>> len(fp)
        64
    """
    if isinstance(baseline, Mapping):
        grouped = {
            source: sorted(lines, key=lambda line: line.ordinal)
            for source, lines in baseline.items()
        }
    else:
        grouped = group_by_source(baseline)

    pairs = sorted((source, _content_hash(lines)) for source, lines in grouped.items())

    hasher = hashlib.sha256()
    for source, content_hash in pairs:
        hasher.update(source.encode("utf-8", errors="replace"))
        hasher.update(b"\x00")
        hasher.update(content_hash.encode("ascii"))
        hasher.update(b"\n")
    return hasher.hexdigest()


# ===== MODEL =====

class Model:
    """
    Trained baseline: {source → SparseIndex} for one fingerprint

    Attributes:
        fingerprint: Baseline fingerprint this model was trained from
        indexes: Read-only mapping source → SparseIndex
        index_reports: Training stats, sorted by source
        failed_sources: {source: error message} for sources that failed to train
    """

    def __init__(
        self,
        indexes: Mapping[str, SparseIndex],
        fingerprint: str,
        index_reports: Optional[List[IndexReport]] = None,
        failed_sources: Optional[Mapping[str, str]] = None
    ):
        self._indexes = MappingProxyType(dict(indexes))
        self._failed = MappingProxyType(dict(failed_sources or {}))
        self.fingerprint = fingerprint
        self.index_reports = sorted(index_reports or [], key=lambda r: r.source)

    @property
    def indexes(self) -> Mapping[str, SparseIndex]:
        return self._indexes

    @property
    def failed_sources(self) -> Mapping[str, str]:
        return self._failed

    @property
    def sources(self) -> List[str]:
        return sorted(self._indexes)

    def get_index(self, source: str) -> Optional[SparseIndex]:
        return self._indexes.get(source)

    def has_source(self, source: str) -> bool:
        return source in self._indexes

    # ===== SERIALIZATION =====

    def to_bytes(self) -> bytes:
        """
        Serialize to a gzip-compressed pickle of plain arrays

        Only numpy arrays, ints and strings are pickled (no live objects),
        so a file stays loadable as long as MODEL_FORMAT_VERSION matches.
        """
        payload = {
            "version": MODEL_FORMAT_VERSION,
            "fingerprint": self.fingerprint,
            "indexes": {source: index.to_state() for source, index in self._indexes.items()},
            "index_reports": [report.model_dump() for report in self.index_reports],
            "failed_sources": dict(self._failed),
        }
        return gzip.compress(pickle.dumps(payload, protocol=pickle.HIGHEST_PROTOCOL))

    @classmethod
    def from_bytes(cls, data: bytes) -> "Model":
        """
        Rebuild a Model from to_bytes() output

        Raises:
            ValueError: Format version mismatch or unreadable payload
        """
        try:
            payload = pickle.loads(gzip.decompress(data))
        except Exception as e:
            raise ValueError(f"Not a serialized model: {e}") from e

        version = payload.get("version") if isinstance(payload, dict) else None
        if version != MODEL_FORMAT_VERSION:
            raise ValueError(
                f"❌ Model format mismatch!\n"
                f"   File version: {version}\n"
                f"   Supported version: {MODEL_FORMAT_VERSION}\n"
                f"   Retrain the baseline to get a compatible model."
            )

        try:
            indexes = {
                source: SparseIndex.from_state(state)
                for source, state in payload["indexes"].items()
            }
            reports = [IndexReport(**report) for report in payload.get("index_reports", [])]
            return cls(
                indexes,
                fingerprint=payload["fingerprint"],
                index_reports=reports,
                failed_sources=payload.get("failed_sources", {})
            )
        except (KeyError, TypeError, AttributeError, IndexError, ValueError) as e:
            raise ValueError(f"Malformed model payload: {e!r}") from e

    def save(self, path: Path):
        """Write the serialized model to disk (parent directories are created)"""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.to_bytes())
        logger.info(f"✅ Saved model {self.fingerprint[:12]} ({len(self._indexes)} sources) to {path}")

    @classmethod
    def load(cls, path: Path) -> "Model":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Model file not found: {path}")

        logger.info(f"Loading model from {path}")
        return cls.from_bytes(path.read_bytes())

    def get_stats(self) -> dict:
        return {
            "fingerprint": self.fingerprint,
            "sources": len(self._indexes),
            "failed_sources": len(self._failed),
            "lines": sum(index.line_count for index in self._indexes.values()),
            "unique_lines": sum(index.unique_count for index in self._indexes.values()),
        }

    def __repr__(self):
        return f"<Model(fingerprint={self.fingerprint[:12]}, sources={len(self._indexes)})>"


# ===== TRAINING =====

def _train_source(source: str, lines: Sequence[RawLine]) -> Tuple[SparseIndex, IndexReport]:
    start = time.time()
    index = build_index(tokenize(line.text) for line in lines)
    report = IndexReport(
        source=source,
        line_count=index.line_count,
        unique_count=index.unique_count,
        byte_count=sum(line.byte_count for line in lines),
        train_time=time.time() - start
    )
    return index, report


def train(
    baseline_lines: Union[LinesBySource, Iterable[RawLine]],
    max_workers: int = None,
    fingerprint: str = None
) -> Model:
    """
    Train a Model from baseline lines

    Args:
        baseline_lines: RawLines (any order) or an already grouped {source: lines}
        max_workers: Thread pool size for sources and for distance batches (defaults to settings)
        fingerprint: Precomputed fingerprint (computed from the lines if omitted)

    Returns:
        Model with one index per source. A source that fails to train is
        logged and recorded in failed_sources; the others still train.

    Example:
        >>> model = train([RawLine(text="service started on port 8080", source="app.log", ordinal=1)])
        >>> model.sources
        ['app.log']
    """
    if isinstance(baseline_lines, Mapping):
        grouped = {
            source: sorted(lines, key=lambda line: line.ordinal)
            for source, lines in baseline_lines.items()
        }
    else:
        grouped = group_by_source(baseline_lines)

    fingerprint = fingerprint or compute_fingerprint(grouped)
    max_workers = max_workers or get_settings().max_workers

    logger.info(f"Training model {fingerprint[:12]} on {len(grouped)} sources")
    start = time.time()

    indexes: Dict[str, SparseIndex] = {}
    reports: List[IndexReport] = []
    failed: Dict[str, str] = {}

    if grouped:
        with ThreadPoolExecutor(max_workers=min(max_workers, len(grouped))) as executor:
            futures = {
                executor.submit(_train_source, source, lines): source
                for source, lines in grouped.items()
            }
            for future in as_completed(futures):
                source = futures[future]
                try:
                    index, report = future.result()
                except Exception as e:
                    logger.error(f"Training failed for {source}: {e}", exc_info=True)
                    failed[source] = str(e)
                    continue

                indexes[source] = index
                reports.append(report)
                if index.is_empty:
                    logger.warning(f"Baseline for {source} has no tokens, every line will score 1.0")

    model = Model(indexes, fingerprint=fingerprint, index_reports=reports, failed_sources=failed)
    logger.info(f"✅ Trained {model} in {time.time() - start:.2f}s")
    return model


# ===== CHUNK MERGING =====

def merge_chunks(
    source: str,
    lines: Sequence[ScoredLine],
    context_lines: int = None
) -> List[AnomalyChunk]:
    """
    Group anomalous lines with their surrounding context

    Each anomalous line opens a window of context_lines before and after.
    Overlapping or adjacent windows merge into one chunk. Anomalous lines
    keep their score; context lines are reset to score 0.0, unflagged.

    Args:
        source: Source identity stamped on every chunk
        lines: All scored lines of the source, in ordinal order
        context_lines: Window size on each side (defaults to settings)

    Returns:
        Chunks in ordinal order

    Example (context_lines=1, X = anomaly):
        lines:  a b X c d e X f
        chunks: [b X c]  [e X f]

        lines:  a X b c X d
        chunks: [a X b c X d]   (windows touch, so they merge)
    """
    if context_lines is None:
        context_lines = get_settings().context_lines

    windows: List[List[int]] = []
    for position, line in enumerate(lines):
        if not line.is_anomaly:
            continue
        start = max(0, position - context_lines)
        end = min(len(lines), position + context_lines + 1)
        if windows and start <= windows[-1][1]:
            windows[-1][1] = max(windows[-1][1], end)
        else:
            windows.append([start, end])

    chunks = []
    for start, end in windows:
        chunk_lines = [
            line if line.is_anomaly else ScoredLine(ordinal=line.ordinal, text=line.text)
            for line in lines[start:end]
        ]
        chunks.append(AnomalyChunk(source=source, lines=chunk_lines))
    return chunks


# ===== SCORING =====

def _apply_stop_markers(lines: Sequence[RawLine], markers: Sequence[str]) -> Sequence[RawLine]:
    """Cut the lines at the first one containing a stop marker"""
    if not markers:
        return lines
    for position, line in enumerate(lines):
        if any(marker in line.text for marker in markers):
            return lines[:position]
    return lines


def _score_source(
    model: Model,
    source: str,
    lines: Sequence[RawLine],
    threshold: float,
    context_lines: int,
    batch_executor: Optional[Executor] = None
) -> SourceReport:
    cfg = get_settings()
    start = time.time()

    lines = _apply_stop_markers(lines, cfg.stop_markers)
    byte_count = sum(line.byte_count for line in lines)
    index = model.get_index(source)

    if index is None:
        if source in model.failed_sources:
            return SourceReport(
                source=source,
                line_count=len(lines),
                byte_count=byte_count,
                unscored_count=len(lines),
                error=f"Baseline training failed: {model.failed_sources[source]}",
                test_time=time.time() - start
            )
        if not cfg.score_unknown_sources:
            logger.debug(f"No baseline for {source}, {len(lines)} lines unscored")
            return SourceReport(
                source=source,
                line_count=len(lines),
                byte_count=byte_count,
                unscored_count=len(lines),
                coverage_gap=True,
                test_time=time.time() - start
            )

    tokens: List[Tokens] = [tokenize(line.text) for line in lines]

    # Each distinct pattern is scored once
    unique: Dict[Tokens, None] = {}
    for line_tokens in tokens:
        if line_tokens:
            unique.setdefault(line_tokens, None)
    patterns = list(unique)

    if index is None:
        distances = np.ones(len(patterns), dtype=np.float64)
    else:
        distances = index.distances(
            patterns,
            batch_size=cfg.score_batch_size,
            executor=batch_executor
        )
    scores = dict(zip(patterns, distances.tolist()))

    flagged = set()
    scored: List[ScoredLine] = []
    for line, line_tokens in zip(lines, tokens):
        if not line_tokens:
            # Empty lines are never anomalous on their own
            scored.append(ScoredLine(ordinal=line.ordinal, text=line.text))
            continue

        line_score = scores[line_tokens]
        is_anomaly = line_score > threshold
        if is_anomaly and not cfg.report_repeated_anomalies:
            if line_tokens in flagged:
                is_anomaly = False
            else:
                flagged.add(line_tokens)

        scored.append(ScoredLine(
            ordinal=line.ordinal,
            text=line.text,
            score=line_score,
            is_anomaly=is_anomaly
        ))

    chunks = merge_chunks(source, scored, context_lines)

    return SourceReport(
        source=source,
        chunks=chunks,
        line_count=len(lines),
        byte_count=byte_count,
        anomaly_count=sum(1 for line in scored if line.is_anomaly),
        max_score=max((line.score for line in scored), default=0.0),
        test_time=time.time() - start,
        coverage_gap=index is None,
        degenerate_baseline=index is not None and index.is_empty
    )


def score(
    model: Model,
    target_lines: Union[LinesBySource, Iterable[RawLine]],
    threshold: float = None,
    context_lines: int = None,
    max_workers: int = None
) -> Report:
    """
    Score target lines against a trained Model

    Args:
        model: Trained baseline model
        target_lines: RawLines (any order) or an already grouped {source: lines}
        threshold: Anomaly threshold; overrides settings for every source
        context_lines: Context window size (defaults to settings)
        max_workers: Thread pool size for sources and for distance batches (defaults to settings)

    Returns:
        Report with one SourceReport per target source, sorted by source.
        A failure while scoring one source is recorded on that source only.
    """
    cfg = get_settings()
    if context_lines is None:
        context_lines = cfg.context_lines
    max_workers = max_workers or cfg.max_workers

    if isinstance(target_lines, Mapping):
        grouped = {
            source: sorted(lines, key=lambda line: line.ordinal)
            for source, lines in target_lines.items()
        }
    else:
        grouped = group_by_source(target_lines)

    logger.info(f"Scoring {len(grouped)} sources against {model}")
    source_reports: List[SourceReport] = []

    if grouped:
        # Separate pools: a source task blocks on its own distance batches
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="score-batch") as batch_executor, \
                ThreadPoolExecutor(max_workers=min(max_workers, len(grouped))) as executor:
            futures = {}
            for source, lines in grouped.items():
                source_threshold = threshold if threshold is not None else cfg.threshold_for(source)
                future = executor.submit(
                    _score_source, model, source, lines, source_threshold, context_lines,
                    batch_executor
                )
                futures[future] = source

            for future in as_completed(futures):
                source = futures[future]
                try:
                    source_reports.append(future.result())
                except Exception as e:
                    logger.error(f"Scoring failed for {source}: {e}", exc_info=True)
                    lines = grouped[source]
                    source_reports.append(SourceReport(
                        source=source,
                        line_count=len(lines),
                        unscored_count=len(lines),
                        error=str(e)
                    ))

    report = assemble_report(
        source_reports,
        fingerprint=model.fingerprint,
        index_reports=model.index_reports,
        threshold=threshold if threshold is not None else cfg.anomaly_threshold,
        context_lines=context_lines
    )
    logger.info(
        f"✅ Scored {report.total_lines} lines: {report.anomaly_count} anomalies, "
        f"{len(report.coverage_gaps)} coverage gaps"
    )
    return report
