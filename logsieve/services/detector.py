# logsieve/services/detector.py
"""
Detector service: the end-to-end compare flow

    baseline lines ─→ fingerprint ─→ cache.get_or_build(fp, train) ─→ Model
    target lines   ─────────────────────────────────────────────────→ score ─→ Report

compare_lazy() is for callers that know the baseline fingerprint up front
(e.g. from the provenance of remote build artifacts). The baseline is
only fetched inside the builder, so a cache hit skips the fetch entirely
and a fetch failure reaches every waiter as BuildFailed.
"""

import logging
from typing import Callable, Iterable, Optional

from ..core.models import RawLine, Report
from .cache import ModelCache, get_model_cache
from .model import Model, compute_fingerprint, group_by_source, score, train

logger = logging.getLogger(__name__)


class DetectorService:
    """
    Compare target logs against a baseline, with trained models cached

    Usage:
        detector = get_detector_service()
        report = detector.compare(baseline_lines, target_lines)
        for chunk in report.chunks:
            ...
    """

    def __init__(self, cache: ModelCache = None):
        """
        Args:
            cache: Model cache to use (defaults to the process-wide cache)
        """
        self._cache = cache

    @property
    def cache(self) -> ModelCache:
        # Resolved lazily so reset_model_cache() is picked up
        return self._cache or get_model_cache()

    def get_model(self, baseline_lines: Iterable[RawLine], timeout: Optional[float] = None) -> Model:
        """Fingerprint the baseline and return its (cached) Model"""
        grouped = group_by_source(baseline_lines)
        fingerprint = compute_fingerprint(grouped)
        return self.cache.get_or_build(
            fingerprint,
            lambda: train(grouped, fingerprint=fingerprint),
            timeout=timeout
        )

    def compare(
        self,
        baseline_lines: Iterable[RawLine],
        target_lines: Iterable[RawLine],
        threshold: float = None,
        timeout: Optional[float] = None
    ) -> Report:
        """
        Score target lines against a baseline

        Args:
            baseline_lines: Known-good lines (any order, any sources)
            target_lines: Lines to check
            threshold: Override the configured anomaly threshold
            timeout: Seconds to wait for a model build

        Returns:
            Report

        Raises:
            BuildFailed: Training the baseline failed
        """
        model = self.get_model(baseline_lines, timeout=timeout)
        return score(model, target_lines, threshold=threshold)

    def compare_lazy(
        self,
        fingerprint: str,
        load_baseline: Callable[[], Iterable[RawLine]],
        target_lines: Iterable[RawLine],
        threshold: float = None,
        timeout: Optional[float] = None
    ) -> Report:
        """
        Score target lines against a baseline identified by fingerprint

        Args:
            fingerprint: Precomputed baseline fingerprint
            load_baseline: Fetches the baseline lines; only called on a cache miss
            target_lines: Lines to check
            threshold: Override the configured anomaly threshold
            timeout: Seconds to wait for a model build

        Raises:
            BuildFailed: Fetching or training the baseline failed
        """
        def builder() -> Model:
            logger.info(f"Fetching baseline for {fingerprint[:12]}")
            lines = list(load_baseline())
            if not lines:
                raise ValueError("Baseline is empty")
            return train(lines, fingerprint=fingerprint)

        model = self.cache.get_or_build(fingerprint, builder, timeout=timeout)
        return score(model, target_lines, threshold=threshold)

    def __repr__(self):
        return f"<DetectorService(cache={self.cache})>"


_detector_service = None


def get_detector_service() -> DetectorService:
    """
    Get the global detector service instance
    Lazy-loads on first call
    """
    global _detector_service
    if _detector_service is None:
        _detector_service = DetectorService()
    return _detector_service
