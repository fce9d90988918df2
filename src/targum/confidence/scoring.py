"""Per-witness confidence scoring.

A witness's confidence for a verse blends four observations:

    authority     * 0.35   fixed weight of the witness
    clarity       * 0.30   OCR mean confidence and coverage
    match         * 0.25   agreement with the digital baseline
    completeness  * 0.10   region status (ok / partial / other)

Every input and the result are clamped to [0, 1].
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

from targum.store.models import RegionStatus, WitnessVerseArtifacts

if TYPE_CHECKING:
    from targum.store.repository import ManuscriptStore

logger = logging.getLogger(__name__)

AUTHORITY_WEIGHT = 0.35
CLARITY_WEIGHT = 0.30
MATCH_WEIGHT = 0.25
COMPLETENESS_WEIGHT = 0.10

# Used when a witness row refers to a witness the store does not know.
DEFAULT_AUTHORITY = 0.4


def clamp01(value: float) -> float:
    value = float(value)
    if math.isnan(value):
        return 0.0
    return min(max(value, 0.0), 1.0)


def clarity_from_ocr(mean_confidence: float, coverage: float) -> float:
    """OCR clarity: mean confidence weighted 0.7, coverage 0.3."""
    return clamp01(clamp01(mean_confidence) * 0.7 + clamp01(coverage) * 0.3)


def completeness_for_status(status: RegionStatus | str) -> float:
    status = RegionStatus(status)
    if status == RegionStatus.OK:
        return 1.0
    if status == RegionStatus.PARTIAL:
        return 0.6
    return 0.2


@dataclass
class WitnessConfidence:
    """Bounded confidence for one witness observation, with its inputs."""

    score: float
    authority: float
    clarity: float
    match: float
    completeness: float

    @classmethod
    def calculate(
        cls,
        authority: float,
        clarity: float,
        match: float,
        completeness: float,
    ) -> "WitnessConfidence":
        authority, clarity = clamp01(authority), clamp01(clarity)
        match, completeness = clamp01(match), clamp01(completeness)
        score = clamp01(
            authority * AUTHORITY_WEIGHT
            + clarity * CLARITY_WEIGHT
            + match * MATCH_WEIGHT
            + completeness * COMPLETENESS_WEIGHT
        )
        return cls(
            score=score,
            authority=authority,
            clarity=clarity,
            match=match,
            completeness=completeness,
        )

    @property
    def rationale(self) -> str:
        return (
            f"authority {self.authority:.2f}, clarity {self.clarity:.2f}, "
            f"match {self.match:.2f}, completeness {self.completeness:.2f}"
        )

    def inputs(self) -> dict[str, float]:
        return {
            "authority": self.authority,
            "clarity": self.clarity,
            "match": self.match,
            "completeness": self.completeness,
        }


def score_witness_confidence(
    authority: float, clarity: float, match: float, completeness: float
) -> float:
    """Confidence score in [0, 1] for out-of-range inputs too."""
    return WitnessConfidence.calculate(authority, clarity, match, completeness).score


def recompute_source_confidence(
    store: "ManuscriptStore", verse_id: str
) -> tuple[str, int]:
    """Recompute confidence for every witness row of a verse.

    The artifact bag is updated additively: only ``confidence_inputs`` is
    written, every other stored key is preserved.

    Returns:
        ``(verse_id, witness_count)``
    """
    rows = store.list_witness_verses(verse_id)
    for row in rows:
        witness = store.get_witness(row.witness_id)
        authority = witness.authority_weight if witness else DEFAULT_AUTHORITY
        result = WitnessConfidence.calculate(
            authority=authority,
            clarity=row.clarity_score,
            match=row.match_score,
            completeness=row.completeness_score,
        )
        store.update_witness_verse_scores(
            verse_id,
            row.witness_id,
            result.score,
            WitnessVerseArtifacts(confidence_inputs=result.inputs()),
        )
        logger.debug(
            f"Confidence {verse_id}/{row.witness_id}: {result.score:.3f} ({result.rationale})"
        )
    return verse_id, len(rows)
