"""Cascade selector: pick one working text per verse.

Given the scored witness rows for a verse, the cascade prefers the best
tier-A candidate, then the best tier-B candidate, then the digital
baseline. When both tiers clear their thresholds their texts are
compared, and disagreement caps the ensemble confidence so it never
overstates certainty.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from targum.alignment.engine import match_score
from targum.store.models import WitnessVerse, WorkingVerseText
from targum.text import normalize_text

if TYPE_CHECKING:
    from targum.config import Settings
    from targum.patchlog import PatchLog
    from targum.store.repository import ManuscriptStore

logger = logging.getLogger(__name__)

BASELINE_FALLBACK_CONFIDENCE = 0.45
DISAGREEMENT_MATCH_THRESHOLD = 0.8
DISAGREEMENT_CONFIDENCE_CAP = 0.7
AGREEMENT_BOOST = 0.08

# Flags
DISAGREEMENT_FLAG = "DISAGREEMENT_FLAG"

# Reason codes
TIER_A_LOW_CLARITY = "TIER_A_LOW_CLARITY"
CANDIDATES_BELOW_THRESHOLD = "CANDIDATES_BELOW_THRESHOLD"
HIGH_CONFIDENCE_DISAGREEMENT = "HIGH_CONFIDENCE_DISAGREEMENT"
TIER_A_UNAVAILABLE = "TIER_A_UNAVAILABLE"
TIER_B_UNAVAILABLE = "TIER_B_UNAVAILABLE"


@dataclass
class CascadeThresholds:
    """Thresholds and tier grouping for the cascade."""

    tier_a_threshold: float = 0.7
    tier_b_threshold: float = 0.65
    tier_a_prefixes: list[str] = field(default_factory=lambda: ["vatican_"])
    tier_b_prefixes: list[str] = field(default_factory=lambda: ["hebrewbooks_"])
    baseline_source_id: str = "baseline_digital"

    @classmethod
    def from_settings(cls, settings: "Settings") -> "CascadeThresholds":
        return cls(
            tier_a_threshold=settings.cascade_tier_a_threshold,
            tier_b_threshold=settings.cascade_tier_b_threshold,
            tier_a_prefixes=list(settings.tier_a_prefixes),
            tier_b_prefixes=list(settings.tier_b_prefixes),
            baseline_source_id=settings.baseline_source_id,
        )

    def is_tier_a(self, witness_id: str) -> bool:
        return any(witness_id.startswith(p) for p in self.tier_a_prefixes)

    def is_tier_b(self, witness_id: str) -> bool:
        return not self.is_tier_a(witness_id) and any(
            witness_id.startswith(p) for p in self.tier_b_prefixes
        )


@dataclass
class CascadeResult:
    """Outcome of a cascade run for one verse."""

    verse_id: str
    selected_source: str
    text_surface: str
    text_normalized: str
    ensemble_confidence: float
    flags: list[str] = field(default_factory=list)
    reason_codes: list[str] = field(default_factory=list)
    candidates: list[WitnessVerse] = field(default_factory=list)
    patch_id: int | None = None

    @property
    def disagreement(self) -> bool:
        return DISAGREEMENT_FLAG in self.flags

    def to_working_text(self) -> WorkingVerseText:
        return WorkingVerseText(
            verse_id=self.verse_id,
            selected_source=self.selected_source,
            text_surface=self.text_surface,
            text_normalized=self.text_normalized,
            ensemble_confidence=self.ensemble_confidence,
            flags=list(self.flags),
            reason_codes=list(self.reason_codes),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "verse_id": self.verse_id,
            "selected_source": self.selected_source,
            "text_surface": self.text_surface,
            "text_normalized": self.text_normalized,
            "ensemble_confidence": self.ensemble_confidence,
            "flags": list(self.flags),
            "reason_codes": list(self.reason_codes),
            "candidate_count": len(self.candidates),
            "patch_id": self.patch_id,
        }


def _best(rows: list[WitnessVerse]) -> WitnessVerse | None:
    if not rows:
        return None
    # Stable on witness id so equal confidences pick deterministically
    return sorted(rows, key=lambda r: (-r.confidence, r.witness_id))[0]


def _surface(row: WitnessVerse) -> str:
    return row.text_normalized or row.text_raw


def select_working_text(
    verse_id: str,
    candidates: list[WitnessVerse],
    baseline_text: str,
    thresholds: CascadeThresholds | None = None,
) -> CascadeResult:
    """Choose the working text for a verse. Pure; nothing is persisted."""
    thresholds = thresholds or CascadeThresholds()
    tier_a = _best([r for r in candidates if thresholds.is_tier_a(r.witness_id)])
    tier_b = _best([r for r in candidates if thresholds.is_tier_b(r.witness_id)])

    reason_codes: list[str] = []
    flags: list[str] = []
    tier_a_ok = tier_a is not None and tier_a.confidence >= thresholds.tier_a_threshold
    tier_b_ok = tier_b is not None and tier_b.confidence >= thresholds.tier_b_threshold

    if tier_a_ok:
        selected_source = tier_a.witness_id
        surface = _surface(tier_a)
        confidence = tier_a.confidence
    elif tier_b_ok:
        selected_source = tier_b.witness_id
        surface = _surface(tier_b)
        confidence = tier_b.confidence
        reason_codes.append(TIER_A_LOW_CLARITY)
    else:
        selected_source = thresholds.baseline_source_id
        surface = baseline_text
        confidence = BASELINE_FALLBACK_CONFIDENCE
        reason_codes.append(CANDIDATES_BELOW_THRESHOLD)

    if tier_a_ok and tier_b_ok:
        agreement = match_score(_surface(tier_a), _surface(tier_b))
        if agreement < DISAGREEMENT_MATCH_THRESHOLD:
            flags.append(DISAGREEMENT_FLAG)
            reason_codes.append(HIGH_CONFIDENCE_DISAGREEMENT)
            confidence = min(confidence, DISAGREEMENT_CONFIDENCE_CAP)
        else:
            confidence = min(1.0, confidence + AGREEMENT_BOOST)

    if tier_a is None:
        reason_codes.append(TIER_A_UNAVAILABLE)
    if tier_b is None:
        reason_codes.append(TIER_B_UNAVAILABLE)

    return CascadeResult(
        verse_id=verse_id,
        selected_source=selected_source,
        text_surface=surface,
        text_normalized=normalize_text(surface),
        ensemble_confidence=min(max(confidence, 0.0), 1.0),
        flags=flags,
        reason_codes=reason_codes,
        candidates=list(candidates),
    )


def recompute_cascade_for_verse(
    store: "ManuscriptStore",
    verse_id: str,
    thresholds: CascadeThresholds | None = None,
    patch_log: "PatchLog | None" = None,
) -> CascadeResult:
    """Run the cascade for a verse and commit the working text.

    The working-text row is fully overwritten. When a patch log is given,
    the committed payload is appended to it once per recomputation.
    """
    candidates = store.list_witness_verses(verse_id)
    baseline_text = store.get_verse_text(verse_id) or ""
    result = select_working_text(verse_id, candidates, baseline_text, thresholds)

    store.upsert_working_text(result.to_working_text())
    if patch_log is not None:
        result.patch_id = patch_log.commit_working_text(
            verse_id,
            {
                "selected_source": result.selected_source,
                "text_surface": result.text_surface,
                "text_normalized": result.text_normalized,
                "ensemble_confidence": result.ensemble_confidence,
                "flags": result.flags,
                "reason_codes": result.reason_codes,
            },
        )

    if result.disagreement:
        logger.info(f"Cascade {verse_id}: disagreement between tiers, capped confidence")
    logger.debug(
        f"Cascade {verse_id}: {result.selected_source} "
        f"({result.ensemble_confidence:.3f}) {','.join(result.reason_codes)}"
    )
    return result
