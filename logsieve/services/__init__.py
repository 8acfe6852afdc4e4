# logsieve/services/__init__.py
"""
Detection engine services: tokenizer, sparse index, model, cache, report
"""

from .tokenizer import tokenize
from .index import SparseIndex, build_index
from .model import Model, train, score, merge_chunks, compute_fingerprint, group_by_source
from .cache import ModelCache, BuildFailed, get_model_cache, reset_model_cache
from .report import assemble_report
from .detector import DetectorService, get_detector_service

__all__ = [
    "tokenize",
    "SparseIndex",
    "build_index",
    "Model",
    "train",
    "score",
    "merge_chunks",
    "compute_fingerprint",
    "group_by_source",
    "ModelCache",
    "BuildFailed",
    "get_model_cache",
    "reset_model_cache",
    "assemble_report",
    "DetectorService",
    "get_detector_service",
]
