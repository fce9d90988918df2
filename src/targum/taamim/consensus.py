"""Taam (cantillation mark) alignment and consensus.

Alignment, per witness:
    Marks are read letter by letter from the witness text; a mark that
    follows at least one letter is anchored to that letter's ordinal
    (marks before the first letter have no anchor and are dropped).
    Ordinals are rescaled linearly onto the target text::

        target = round(witness_ordinal / witness_letters * (target_letters - 1))

    and resolved to a (token_index, letter_index) position. Each run is
    stored with the content hash of the target text it was computed
    against.

Consensus, per verse:
    Only alignments whose hash equals the current target hash vote;
    stale ones are skipped and counted. Candidate marks are bucketed by
    (token_index, letter_index, mark), each witness voting with its
    current confidence. The heaviest buckets are kept.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from targum.store.models import TaamAlignment, TaamConsensus
from targum.text import content_hash, is_letter, is_taam, normalize_text, tokenize

if TYPE_CHECKING:
    from targum.config import Settings
    from targum.store.repository import ManuscriptStore

logger = logging.getLogger(__name__)

LAYER_WORKING_TEXT = "working_text"
LAYER_BASELINE = "baseline"

MISSING_TAAM_SIGNAL = "MISSING_TAAM_SIGNAL"
TAAM_DISAGREEMENT = "TAAM_DISAGREEMENT"
LOW_TAAM_CONFIDENCE = "LOW_TAAM_CONFIDENCE"


@dataclass
class TaamConfig:
    top_k: int = 128
    confidence_boost: float = 0.35
    confidence_cap: float = 0.99
    confidence_floor: float = 0.2
    disagreement_margin: int = 20
    low_confidence: float = 0.65

    @classmethod
    def from_settings(cls, settings: "Settings") -> "TaamConfig":
        return cls(
            top_k=settings.taam_top_k,
            confidence_boost=settings.taam_confidence_boost,
            confidence_cap=settings.taam_confidence_cap,
            confidence_floor=settings.taam_confidence_floor,
            disagreement_margin=settings.taam_disagreement_margin,
            low_confidence=settings.taam_low_confidence,
        )


@dataclass
class ExtractedMark:
    mark: str
    letter_ordinal: int


@dataclass
class MarkExtraction:
    marks: list[ExtractedMark]
    letter_count: int


@dataclass
class ConsensusResult:
    consensus: TaamConsensus
    candidate_count: int
    stale_count: int
    witness_ids: list[str] = field(default_factory=list)

    @property
    def consensus_count(self) -> int:
        return len(self.consensus.marks)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.consensus.to_dict(),
            "consensus_count": self.consensus_count,
            "candidate_count": self.candidate_count,
            "stale_count": self.stale_count,
            "witness_ids": list(self.witness_ids),
        }


def extract_marks(text: str) -> MarkExtraction:
    """Anchor each mark to the ordinal of the letter it follows."""
    marks: list[ExtractedMark] = []
    letters = 0
    for ch in normalize_text(text):
        if is_taam(ch):
            if letters > 0:
                marks.append(ExtractedMark(ch, letters - 1))
        elif is_letter(ch):
            letters += 1
    return MarkExtraction(marks=marks, letter_count=letters)


def letter_positions(text: str) -> list[tuple[int, int]]:
    """(token_index, letter_index) for every letter of the text, in order."""
    positions: list[tuple[int, int]] = []
    for token_index, token in enumerate(tokenize(text)):
        letter_index = 0
        for ch in token:
            if is_letter(ch):
                positions.append((token_index, letter_index))
                letter_index += 1
    return positions


def map_ordinal(witness_ordinal: int, witness_letters: int, target_letters: int) -> int:
    """Linear rescale of a witness letter ordinal onto the target text."""
    if witness_letters <= 0 or target_letters <= 0:
        return 0
    scaled = witness_ordinal / witness_letters * (target_letters - 1)
    # Half-up rounding
    return min(max(int(math.floor(scaled + 0.5)), 0), target_letters - 1)


def align_witness_marks(witness_text: str, target_text: str) -> tuple[list[dict[str, Any]], dict[str, Any]]:
    """Map a witness's marks onto target positions.

    Returns:
        ``(marks, metrics)`` ready to be stored on a ``TaamAlignment``
    """
    extraction = extract_marks(witness_text)
    positions = letter_positions(target_text)
    mapped: list[dict[str, Any]] = []
    if positions:
        for mark in extraction.marks:
            target = map_ordinal(mark.letter_ordinal, extraction.letter_count, len(positions))
            token_index, letter_index = positions[target]
            mapped.append(
                {
                    "mark": mark.mark,
                    "token_index": token_index,
                    "letter_index": letter_index,
                    "witness_ordinal": mark.letter_ordinal,
                    "target_ordinal": target,
                }
            )
    metrics = {
        "witness_letters": extraction.letter_count,
        "target_letters": len(positions),
        "marks_found": len(extraction.marks),
        "marks_mapped": len(mapped),
    }
    return mapped, metrics


def target_text_for(store: "ManuscriptStore", verse_id: str, target_layer: str) -> str:
    """Current text of a target layer; working text falls back to baseline."""
    if target_layer == LAYER_WORKING_TEXT:
        working = store.get_working_text(verse_id)
        if working is not None and working.text_surface:
            return working.text_surface
    return store.get_verse_text(verse_id) or ""


def align_taamim_for_verse(
    store: "ManuscriptStore",
    verse_id: str,
    target_layer: str = LAYER_WORKING_TEXT,
) -> list[TaamAlignment]:
    """Align every witness of a verse against the current target text."""
    target_text = target_text_for(store, verse_id, target_layer)
    target_hash = content_hash(target_text)
    alignments = []
    for row in store.list_witness_verses(verse_id):
        marks, metrics = align_witness_marks(row.text_normalized or row.text_raw, target_text)
        status = "ok" if marks else "no_marks"
        alignments.append(
            store.upsert_taam_alignment(
                TaamAlignment(
                    verse_id=verse_id,
                    witness_id=row.witness_id,
                    target_layer=target_layer,
                    target_text_hash=target_hash,
                    marks=marks,
                    metrics=metrics,
                    status=status,
                )
            )
        )
    logger.debug(f"Taam alignment {verse_id}: {len(alignments)} witness(es)")
    return alignments


def vote(
    alignments: list[TaamAlignment],
    weights: dict[str, float],
    config: TaamConfig | None = None,
) -> tuple[list[dict[str, Any]], float, int]:
    """Weighted vote over candidate marks.

    Returns:
        ``(consensus_marks, ensemble_confidence, candidate_count)``
    """
    config = config or TaamConfig()
    buckets: dict[tuple[int, int, str], float] = {}
    candidate_count = 0
    for alignment in alignments:
        weight = weights.get(alignment.witness_id, 0.0)
        for mark in alignment.marks:
            key = (int(mark["token_index"]), int(mark["letter_index"]), mark["mark"])
            buckets[key] = buckets.get(key, 0.0) + weight
            candidate_count += 1

    total = sum(buckets.values())
    ranked = sorted(buckets.items(), key=lambda item: (-item[1], item[0]))[: config.top_k]
    consensus = [
        {
            "token_index": token_index,
            "letter_index": letter_index,
            "mark": mark,
            "weight": weight,
            "confidence": weight / total if total > 0 else 0.0,
        }
        for (token_index, letter_index, mark), weight in ranked
    ]

    if consensus:
        ensemble = min(config.confidence_cap, consensus[0]["confidence"] + config.confidence_boost)
    else:
        ensemble = config.confidence_floor
    return consensus, ensemble, candidate_count


def consensus_flags(
    consensus_count: int,
    candidate_count: int,
    ensemble_confidence: float,
    config: TaamConfig | None = None,
) -> list[str]:
    config = config or TaamConfig()
    flags = []
    if consensus_count == 0:
        flags.append(MISSING_TAAM_SIGNAL)
    if candidate_count - consensus_count > config.disagreement_margin:
        flags.append(TAAM_DISAGREEMENT)
    if ensemble_confidence < config.low_confidence:
        flags.append(LOW_TAAM_CONFIDENCE)
    return flags


def recompute_taam_consensus(
    store: "ManuscriptStore",
    verse_id: str,
    target_layer: str = LAYER_WORKING_TEXT,
    config: TaamConfig | None = None,
) -> ConsensusResult:
    """Vote over current alignments and persist the consensus."""
    config = config or TaamConfig()
    target_hash = content_hash(target_text_for(store, verse_id, target_layer))

    current: list[TaamAlignment] = []
    stale = 0
    for alignment in store.list_taam_alignments(verse_id, target_layer):
        if alignment.target_text_hash == target_hash:
            current.append(alignment)
        else:
            stale += 1
    if stale:
        logger.warning(
            f"Taam consensus {verse_id}: skipped {stale} stale alignment(s) "
            f"computed against superseded {target_layer} text"
        )

    weights = {row.witness_id: row.confidence for row in store.list_witness_verses(verse_id)}
    marks, ensemble, candidate_count = vote(current, weights, config)
    flags = consensus_flags(len(marks), candidate_count, ensemble, config)

    consensus = store.upsert_taam_consensus(
        TaamConsensus(
            verse_id=verse_id,
            target_layer=target_layer,
            target_text_hash=target_hash,
            marks=marks,
            ensemble_confidence=ensemble,
            flags=flags,
        )
    )
    return ConsensusResult(
        consensus=consensus,
        candidate_count=candidate_count,
        stale_count=stale,
        witness_ids=[a.witness_id for a in current],
    )
