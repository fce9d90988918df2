"""Batch stop rule: a quality circuit breaker checked at batch boundaries.

The rule never raises. It returns a ``StopDecision`` whose reasons are
human-readable, and the batch runner halts on ``stop=True``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

MAX_OCR_FAILURE_RATE = 0.15
MAX_SPLIT_PARTIAL_RATE = 0.30
MAX_REMAP_AMBIGUOUS_RATE = 0.25


def _rate(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator > 0 else 0.0


@dataclass
class BatchCounts:
    """Rolling counts for a batch run."""

    ocr_completed: int = 0
    ocr_failed: int = 0
    split_success: int = 0
    split_partial: int = 0
    remap_total: int = 0
    remap_ambiguous: int = 0

    @property
    def ocr_failure_rate(self) -> float:
        return _rate(self.ocr_failed, self.ocr_failed + self.ocr_completed)

    @property
    def split_partial_rate(self) -> float:
        return _rate(self.split_partial, self.split_success + self.split_partial)

    @property
    def remap_ambiguous_rate(self) -> float:
        return _rate(self.remap_ambiguous, self.remap_total)

    def add(self, other: "BatchCounts") -> "BatchCounts":
        return BatchCounts(
            ocr_completed=self.ocr_completed + other.ocr_completed,
            ocr_failed=self.ocr_failed + other.ocr_failed,
            split_success=self.split_success + other.split_success,
            split_partial=self.split_partial + other.split_partial,
            remap_total=self.remap_total + other.remap_total,
            remap_ambiguous=self.remap_ambiguous + other.remap_ambiguous,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ocr_completed": self.ocr_completed,
            "ocr_failed": self.ocr_failed,
            "split_success": self.split_success,
            "split_partial": self.split_partial,
            "remap_total": self.remap_total,
            "remap_ambiguous": self.remap_ambiguous,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchCounts":
        return cls(**{k: int(v) for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class StopDecision:
    stop: bool
    ocr_failure_rate: float
    split_partial_rate: float
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stop": self.stop,
            "ocr_failure_rate": self.ocr_failure_rate,
            "split_partial_rate": self.split_partial_rate,
            "reasons": list(self.reasons),
        }


def evaluate_stop_rule(
    counts: BatchCounts,
    max_ocr_failure_rate: float = MAX_OCR_FAILURE_RATE,
    max_split_partial_rate: float = MAX_SPLIT_PARTIAL_RATE,
) -> StopDecision:
    """Halt when OCR failures or partial splits exceed their thresholds."""
    reasons: list[str] = []
    ocr_rate = counts.ocr_failure_rate
    split_rate = counts.split_partial_rate
    if ocr_rate > max_ocr_failure_rate:
        reasons.append(
            f"OCR failure rate {ocr_rate * 100:.1f}% > {max_ocr_failure_rate * 100:.0f}%"
        )
    if split_rate > max_split_partial_rate:
        reasons.append(
            f"Split partial rate {split_rate * 100:.1f}% > {max_split_partial_rate * 100:.0f}%"
        )
    return StopDecision(
        stop=bool(reasons),
        ocr_failure_rate=ocr_rate,
        split_partial_rate=split_rate,
        reasons=reasons,
    )


def calibration_block_reasons(
    counts: BatchCounts,
    max_ocr_failure_rate: float = MAX_OCR_FAILURE_RATE,
    max_split_partial_rate: float = MAX_SPLIT_PARTIAL_RATE,
    max_remap_ambiguous_rate: float = MAX_REMAP_AMBIGUOUS_RATE,
) -> list[str]:
    """Per-witness calibration reasons, including remap ambiguity."""
    reasons = evaluate_stop_rule(
        counts, max_ocr_failure_rate, max_split_partial_rate
    ).reasons
    rate = counts.remap_ambiguous_rate
    if rate > max_remap_ambiguous_rate:
        reasons.append(
            f"Remap ambiguous rate {rate * 100:.1f}% > {max_remap_ambiguous_rate * 100:.0f}%"
        )
    return reasons
