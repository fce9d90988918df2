"""Confidence module: bounded per-witness confidence scoring."""

from targum.confidence.scoring import (
    DEFAULT_AUTHORITY,
    WitnessConfidence,
    clamp01,
    clarity_from_ocr,
    completeness_for_status,
    recompute_source_confidence,
    score_witness_confidence,
)

__all__ = [
    "DEFAULT_AUTHORITY",
    "WitnessConfidence",
    "clamp01",
    "clarity_from_ocr",
    "completeness_for_status",
    "recompute_source_confidence",
    "score_witness_confidence",
]
