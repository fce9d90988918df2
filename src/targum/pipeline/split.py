"""Split a region's OCR text into per-verse witness rows.

A region covers a verse range. Its OCR text is cut into one slice per
verse:

- When the text has at least as many non-empty lines as verses, line i
  goes to verse i.
- Otherwise the normalized text is cut proportionally to each verse's
  baseline length, the last verse taking the remainder.

A split is ``partial`` when the OCR text is empty, the baseline range is
empty, or any slice comes out empty; the reason code is kept on every
row's artifacts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from targum.alignment import align
from targum.confidence import clarity_from_ocr, completeness_for_status
from targum.errors import InputValidationError
from targum.store.models import WitnessVerse, WitnessVerseArtifacts
from targum.text import normalize_text

if TYPE_CHECKING:
    from targum.store.repository import ManuscriptStore

logger = logging.getLogger(__name__)

EMPTY_OCR_TEXT = "EMPTY_OCR_TEXT"
EMPTY_BASELINE_RANGE = "EMPTY_BASELINE_RANGE"
LOW_TEXT_COVERAGE = "LOW_TEXT_COVERAGE"

STATUS_OK = "ok"
STATUS_PARTIAL = "partial"


@dataclass
class TextSplit:
    slices: list[str]
    partial: bool = False
    reason: str | None = None


@dataclass
class SplitOutcome:
    """Result of splitting one region."""

    region_id: int
    witness_id: str
    verse_ids: list[str] = field(default_factory=list)
    status: str = STATUS_OK
    reason: str | None = None

    @property
    def partial(self) -> bool:
        return self.status == STATUS_PARTIAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "region_id": self.region_id,
            "witness_id": self.witness_id,
            "verse_ids": list(self.verse_ids),
            "status": self.status,
            "reason": self.reason,
        }


def split_region_text(region_text: str, baselines: list[str]) -> TextSplit:
    """Cut region text into one slice per baseline verse."""
    normalized_region = normalize_text(region_text)
    if not normalized_region:
        return TextSplit([""] * len(baselines), True, EMPTY_OCR_TEXT)

    lines = [line.strip() for line in region_text.splitlines()]
    lines = [line for line in lines if line]
    if len(lines) >= len(baselines):
        return TextSplit(lines[: len(baselines)])

    lengths = [len(normalize_text(text)) for text in baselines]
    total = sum(lengths)
    if total <= 0:
        return TextSplit([""] * len(baselines), True, EMPTY_BASELINE_RANGE)

    slices: list[str] = []
    cursor = 0
    for idx, length in enumerate(lengths):
        if idx == len(lengths) - 1:
            size = len(normalized_region) - cursor
        else:
            size = max(1, round(len(normalized_region) * length / total))
        slices.append(normalized_region[cursor : cursor + size].strip())
        cursor += size

    if any(not s for s in slices):
        return TextSplit(slices, True, LOW_TEXT_COVERAGE)
    return TextSplit(slices)


def split_region_into_witness_verses(
    store: "ManuscriptStore", region_id: int
) -> SplitOutcome:
    """Write one witness-verse row per verse in the region's range.

    Raises:
        InputValidationError: region, page or OCR artifact missing, or the
            region has no verse range
    """
    region = store.get_region(region_id)
    if region is None:
        raise InputValidationError(
            "REGION_NOT_FOUND", f"Region not found: {region_id}", {"region_id": region_id}
        )
    if not region.is_tagged:
        raise InputValidationError(
            "REGION_UNTAGGED",
            "Region requires start_verse_id and end_verse_id.",
            {"region_id": region_id},
        )
    page = store.get_page(region.page_id)
    if page is None:
        raise InputValidationError(
            "PAGE_NOT_FOUND", f"Page not found: {region.page_id}", {"page_id": region.page_id}
        )
    artifact = store.get_ocr_artifact(region_id)
    if artifact is None:
        raise InputValidationError(
            "OCR_ARTIFACT_MISSING",
            f"Region {region_id} has no OCR output yet",
            {"region_id": region_id},
        )

    verse_ids = store.list_verse_ids(region.start_verse_id, region.end_verse_id)
    baseline_by_verse = store.get_baseline_texts(verse_ids)
    baselines = [baseline_by_verse.get(v, "") for v in verse_ids]
    split = split_region_text(artifact.text_raw, baselines)

    status = STATUS_PARTIAL if split.partial else STATUS_OK
    clarity = clarity_from_ocr(artifact.ocr_mean_conf, artifact.coverage_ratio_est)
    completeness = completeness_for_status(region.status)

    for idx, verse_id in enumerate(verse_ids):
        text_raw = split.slices[idx] if idx < len(split.slices) else ""
        text_normalized = normalize_text(text_raw)
        alignment = align(text_normalized, baselines[idx]).to_dict()
        store.upsert_witness_verse(
            WitnessVerse(
                verse_id=verse_id,
                witness_id=page.witness_id,
                text_raw=text_raw,
                text_normalized=text_normalized,
                clarity_score=clarity,
                match_score=alignment["match_score"],
                completeness_score=completeness,
                confidence=0.0,
                status=status,
                artifacts=WitnessVerseArtifacts(
                    region_id=region_id,
                    edit_distance=alignment["edit_distance"],
                    token_diff_ops=alignment["token_diff_ops"],
                    replace_details=alignment["replace_details"],
                    char_stats=alignment["char_stats"],
                    split_reason=split.reason,
                ),
            ),
            replace_artifacts=("split_reason",),
        )

    if split.partial:
        logger.warning(
            f"Region {region_id} split partial ({split.reason}) across {len(verse_ids)} verse(s)"
        )
    else:
        logger.info(f"Region {region_id} split into {len(verse_ids)} verse row(s)")

    return SplitOutcome(
        region_id=region_id,
        witness_id=page.witness_id,
        verse_ids=verse_ids,
        status=status,
        reason=split.reason,
    )
