# logsieve/core/models.py
"""
Core data models for LogSieve
These are the building blocks that flow through the entire system
"""

from datetime import datetime
from typing import Optional, List, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator


class RawLine(BaseModel):
    """
    A single captured log line
    This is what line-source adapters produce and what the engine consumes.
    Never mutated after capture.
    """
    model_config = ConfigDict(frozen=True)

    text: str  # The untouched line (kept for display)
    source: str  # Generalized source identity (see integrations.local.source_identity)
    ordinal: int  # Position within the source (adapters use 1-based line numbers)
    byte_offset: Optional[int] = None  # Offset of the line start in the source file

    @field_validator("text", mode="before")
    @classmethod
    def decode_bytes(cls, v: Any):
        """Malformed bytes are decoded lossily, never rejected"""
        if isinstance(v, (bytes, bytearray)):
            return bytes(v).decode("utf-8", errors="replace")
        return v

    @property
    def byte_count(self) -> int:
        return len(self.text.encode("utf-8", errors="replace"))


class ScoredLine(BaseModel):
    """One line of an anomaly chunk, with its distance score"""
    ordinal: int
    text: str
    score: float = 0.0  # 0.0 for context lines
    is_anomaly: bool = False


class AnomalyChunk(BaseModel):
    """
    A contiguous run of target lines from one source
    At least one line is anomalous; the rest is surrounding context.
    """
    source: str
    lines: List[ScoredLine]

    @property
    def start(self) -> int:
        return self.lines[0].ordinal

    @property
    def end(self) -> int:
        return self.lines[-1].ordinal

    @property
    def anomalies(self) -> List[ScoredLine]:
        return [line for line in self.lines if line.is_anomaly]

    @property
    def anomaly_count(self) -> int:
        return len(self.anomalies)

    @property
    def max_score(self) -> float:
        return max((line.score for line in self.lines), default=0.0)


class IndexReport(BaseModel):
    """Training statistics for one source index"""
    source: str
    line_count: int = 0  # Baseline lines seen
    unique_count: int = 0  # Distinct non-empty token sequences (index rows)
    byte_count: int = 0
    train_time: float = 0.0  # Seconds


class SourceReport(BaseModel):
    """
    Scoring outcome for one target source

    coverage_gap: the model has no index for this source, lines are unscored
    degenerate_baseline: the index exists but is empty, every line scores 1.0
    error: scoring or training failed for this source only
    """
    source: str
    chunks: List[AnomalyChunk] = Field(default_factory=list)
    line_count: int = 0
    byte_count: int = 0
    anomaly_count: int = 0
    unscored_count: int = 0
    max_score: float = 0.0
    test_time: float = 0.0  # Seconds
    coverage_gap: bool = False
    degenerate_baseline: bool = False
    error: Optional[str] = None


class Report(BaseModel):
    """
    The result of comparing a target against a baseline model
    Built once, read-only thereafter. model_dump(mode="json") is the
    hand-off format for renderers.
    """
    fingerprint: str  # Baseline fingerprint of the model used
    sources: List[SourceReport] = Field(default_factory=list)  # Sorted by source
    index_reports: List[IndexReport] = Field(default_factory=list)
    threshold: float
    context_lines: int
    total_lines: int = 0
    anomaly_count: int = 0
    unscored_count: int = 0
    max_score: float = 0.0
    coverage_gaps: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def chunks(self) -> List[AnomalyChunk]:
        """All chunks, grouped by source in report order"""
        return [chunk for src in self.sources for chunk in src.chunks]

    def get_source(self, source: str) -> Optional[SourceReport]:
        for src in self.sources:
            if src.source == source:
                return src
        return None

    def has_anomalies(self) -> bool:
        return self.anomaly_count > 0


# Type aliases for clarity
SourceID = str
Fingerprint = str
