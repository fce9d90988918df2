"""Remap engine: re-tag regions whose verse range looks wrong.

For each region, the OCR text is compared against the concatenated
baseline of every verse window of width 1..max_window. The region is
reassigned only on a clear winner::

    best.score >= min_score  and  best.score - second.score >= min_margin

Anything else is an ambiguity, not an error: the region is flagged
``remap_review_required`` with its top three windows kept for a human.
A reassignment is followed by a backfill: the region is re-split and
confidence and cascade are recomputed for every verse it touched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from targum.alignment import match_score
from targum.cascade import CascadeThresholds, recompute_cascade_for_verse
from targum.confidence import recompute_source_confidence
from targum.errors import InputValidationError
from targum.pipeline.split import split_region_into_witness_verses
from targum.text import normalize_text
from targum.verse_id import sort_verse_ids

if TYPE_CHECKING:
    from targum.config import Settings
    from targum.patchlog import PatchLog
    from targum.store.repository import ManuscriptStore

logger = logging.getLogger(__name__)

REVIEW_CANDIDATES = 3


@dataclass
class RemapConfig:
    min_score: float = 0.78
    min_margin: float = 0.08
    max_window: int = 3

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RemapConfig":
        return cls(
            min_score=settings.remap_min_score,
            min_margin=settings.remap_min_margin,
            max_window=settings.remap_max_window,
        )


@dataclass
class WindowCandidate:
    """A verse window scored against a region's text."""

    start_verse_id: str
    end_verse_id: str
    width: int
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_verse_id": self.start_verse_id,
            "end_verse_id": self.end_verse_id,
            "width": self.width,
            "score": self.score,
        }


@dataclass
class RemapDecision:
    """Outcome of remapping one region."""

    region_id: int | None
    reassigned: bool
    review_required: bool
    best: WindowCandidate | None = None
    second_best: WindowCandidate | None = None
    candidates: list[WindowCandidate] = field(default_factory=list)
    previous_range: tuple[str | None, str | None] = (None, None)
    skipped_reason: str | None = None

    @property
    def margin(self) -> float | None:
        if self.best is None:
            return None
        second = self.second_best.score if self.second_best else 0.0
        return self.best.score - second

    @property
    def changed(self) -> bool:
        if not self.reassigned or self.best is None:
            return False
        return self.previous_range != (self.best.start_verse_id, self.best.end_verse_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "region_id": self.region_id,
            "reassigned": self.reassigned,
            "review_required": self.review_required,
            "changed": self.changed,
            "best": self.best.to_dict() if self.best else None,
            "second_best": self.second_best.to_dict() if self.second_best else None,
            "margin": self.margin,
            "candidates": [c.to_dict() for c in self.candidates],
            "previous_range": list(self.previous_range),
            "skipped_reason": self.skipped_reason,
        }


@dataclass
class RemapSummary:
    witness_id: str
    decisions: list[RemapDecision] = field(default_factory=list)
    touched_verse_ids: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(1 for d in self.decisions if d.skipped_reason is None)

    @property
    def reassigned(self) -> int:
        return sum(1 for d in self.decisions if d.changed)

    @property
    def ambiguous(self) -> int:
        return sum(1 for d in self.decisions if d.review_required)

    def to_dict(self) -> dict[str, Any]:
        return {
            "witness_id": self.witness_id,
            "total": self.total,
            "reassigned": self.reassigned,
            "ambiguous": self.ambiguous,
            "touched_verse_ids": list(self.touched_verse_ids),
            "decisions": [d.to_dict() for d in self.decisions],
        }


def score_windows(
    region_text: str,
    verse_ids: list[str],
    baselines: dict[str, str],
    max_window: int = 3,
) -> list[WindowCandidate]:
    """Score every window of 1..max_window verses, best first.

    Ties prefer the earlier start, then the narrower window.
    """
    text = normalize_text(region_text)
    candidates: list[WindowCandidate] = []
    for start in range(len(verse_ids)):
        for width in range(1, max_window + 1):
            end = start + width
            if end > len(verse_ids):
                break
            window = verse_ids[start:end]
            joined = " ".join(baselines.get(v, "") for v in window)
            candidates.append(
                WindowCandidate(
                    start_verse_id=window[0],
                    end_verse_id=window[-1],
                    width=width,
                    score=match_score(text, joined),
                )
            )
    order = {verse_id: idx for idx, verse_id in enumerate(verse_ids)}
    candidates.sort(key=lambda c: (-c.score, order[c.start_verse_id], c.width))
    return candidates


def decide_remap(
    candidates: list[WindowCandidate],
    min_score: float = 0.78,
    min_margin: float = 0.08,
) -> RemapDecision:
    """Reassign only on a clear winner; otherwise ask for review."""
    best = candidates[0] if candidates else None
    second = candidates[1] if len(candidates) > 1 else None
    top = candidates[:REVIEW_CANDIDATES]
    if best is None:
        return RemapDecision(region_id=None, reassigned=False, review_required=True)

    margin = best.score - (second.score if second else 0.0)
    reassign = best.score >= min_score and margin >= min_margin
    return RemapDecision(
        region_id=None,
        reassigned=reassign,
        review_required=not reassign,
        best=best,
        second_best=second,
        candidates=top,
    )


def remap_region(
    store: "ManuscriptStore",
    region_id: int,
    config: RemapConfig | None = None,
    search_verse_ids: list[str] | None = None,
) -> RemapDecision:
    """Score a region against the search verses and persist the decision.

    Regions without OCR output are skipped, not flagged.
    """
    config = config or RemapConfig()
    region = store.get_region(region_id)
    if region is None:
        raise InputValidationError(
            "REGION_NOT_FOUND", f"Region not found: {region_id}", {"region_id": region_id}
        )
    previous = (region.start_verse_id, region.end_verse_id)

    artifact = store.get_ocr_artifact(region_id)
    if artifact is None or not normalize_text(artifact.text_raw):
        return RemapDecision(
            region_id=region_id,
            reassigned=False,
            review_required=False,
            previous_range=previous,
            skipped_reason="NO_OCR_TEXT",
        )

    verse_ids = search_verse_ids if search_verse_ids is not None else store.list_verse_ids()
    baselines = store.get_baseline_texts(verse_ids)
    candidates = score_windows(artifact.text_raw, verse_ids, baselines, config.max_window)
    decision = decide_remap(candidates, config.min_score, config.min_margin)
    decision.region_id = region_id
    decision.previous_range = previous

    store.record_remap(
        region_id,
        review_required=decision.review_required,
        score=decision.best.score if decision.best else None,
        margin=decision.margin,
        candidates=[c.to_dict() for c in decision.candidates],
        new_start=decision.best.start_verse_id if decision.reassigned else None,
        new_end=decision.best.end_verse_id if decision.reassigned else None,
    )

    if decision.review_required:
        best_score = decision.best.score if decision.best else 0.0
        logger.info(
            f"Region {region_id} remap ambiguous (best {best_score:.3f}, "
            f"margin {decision.margin or 0.0:.3f}); review required"
        )
    elif decision.changed:
        logger.info(
            f"Region {region_id} remapped {previous[0]}..{previous[1]} -> "
            f"{decision.best.start_verse_id}..{decision.best.end_verse_id} "
            f"(score {decision.best.score:.3f})"
        )
    return decision


def backfill_region(
    store: "ManuscriptStore",
    decision: RemapDecision,
    thresholds: CascadeThresholds | None = None,
    patch_log: "PatchLog | None" = None,
) -> list[str]:
    """Re-split a remapped region and rescore every verse it touched.

    Returns:
        Touched verse ids (old and new ranges) in canonical order
    """
    if not decision.changed:
        return []
    outcome = split_region_into_witness_verses(store, decision.region_id)
    touched = set(outcome.verse_ids)
    old_start, old_end = decision.previous_range
    if old_start and old_end:
        touched.update(store.list_verse_ids(old_start, old_end))

    ordered = sort_verse_ids(list(touched))
    for verse_id in ordered:
        recompute_source_confidence(store, verse_id)
        recompute_cascade_for_verse(store, verse_id, thresholds, patch_log)
    logger.info(f"Backfilled {len(ordered)} verse(s) for region {decision.region_id}")
    return ordered


def remap_witness(
    store: "ManuscriptStore",
    witness_id: str,
    config: RemapConfig | None = None,
    *,
    search_start: str | None = None,
    search_end: str | None = None,
    backfill: bool = True,
    thresholds: CascadeThresholds | None = None,
    patch_log: "PatchLog | None" = None,
) -> RemapSummary:
    """Remap every region of a witness, backfilling reassigned ones."""
    if store.get_witness(witness_id) is None:
        raise InputValidationError(
            "WITNESS_NOT_FOUND", f"Witness not found: {witness_id}", {"witness_id": witness_id}
        )
    search = store.list_verse_ids(search_start, search_end)
    summary = RemapSummary(witness_id=witness_id)
    touched: set[str] = set()

    for region in store.list_regions(witness_id=witness_id):
        decision = remap_region(store, region.id, config, search)
        summary.decisions.append(decision)
        if backfill:
            touched.update(backfill_region(store, decision, thresholds, patch_log))

    summary.touched_verse_ids = sort_verse_ids(list(touched))
    logger.info(
        f"Remap {witness_id}: {summary.total} region(s), {summary.reassigned} reassigned, "
        f"{summary.ambiguous} need review"
    )
    return summary
