# logsieve/services/report.py
"""
Report assembly: merge per-source results into one Report
"""

import logging
from typing import Iterable, List, Optional

from ..core.config import get_settings
from ..core.models import IndexReport, Report, SourceReport

logger = logging.getLogger(__name__)


def assemble_report(
    source_reports: Iterable[SourceReport],
    fingerprint: str,
    index_reports: Optional[Iterable[IndexReport]] = None,
    threshold: float = None,
    context_lines: int = None
) -> Report:
    """
    Build the final Report from per-source outcomes

    Sources are ordered by identity so repeated runs on the same input give
    the same Report. Unscored lines (coverage gaps, failed sources) count
    toward total_lines but never toward anomaly_count.

    Args:
        source_reports: One SourceReport per target source, any order
        fingerprint: Fingerprint of the baseline model used
        index_reports: Training stats of that model
        threshold: Global threshold used (defaults to settings)
        context_lines: Context window used (defaults to settings)

    Returns:
        Report
    """
    cfg = get_settings()
    sources: List[SourceReport] = sorted(source_reports, key=lambda r: r.source)

    report = Report(
        fingerprint=fingerprint,
        sources=sources,
        index_reports=sorted(index_reports or [], key=lambda r: r.source),
        threshold=threshold if threshold is not None else cfg.anomaly_threshold,
        context_lines=context_lines if context_lines is not None else cfg.context_lines,
        total_lines=sum(src.line_count for src in sources),
        anomaly_count=sum(src.anomaly_count for src in sources),
        unscored_count=sum(src.unscored_count for src in sources),
        max_score=max((src.max_score for src in sources), default=0.0),
        coverage_gaps=[src.source for src in sources if src.coverage_gap]
    )

    for src in sources:
        if src.error:
            logger.warning(f"Source {src.source} completed with error: {src.error}")

    return report
