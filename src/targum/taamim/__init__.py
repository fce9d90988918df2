"""Cantillation mark alignment and weighted consensus."""

from targum.taamim.consensus import (
    LAYER_BASELINE,
    LAYER_WORKING_TEXT,
    LOW_TAAM_CONFIDENCE,
    MISSING_TAAM_SIGNAL,
    TAAM_DISAGREEMENT,
    ConsensusResult,
    TaamConfig,
    align_taamim_for_verse,
    align_witness_marks,
    consensus_flags,
    extract_marks,
    letter_positions,
    map_ordinal,
    recompute_taam_consensus,
    target_text_for,
    vote,
)

__all__ = [
    "LAYER_BASELINE",
    "LAYER_WORKING_TEXT",
    "LOW_TAAM_CONFIDENCE",
    "MISSING_TAAM_SIGNAL",
    "TAAM_DISAGREEMENT",
    "ConsensusResult",
    "TaamConfig",
    "align_taamim_for_verse",
    "align_witness_marks",
    "consensus_flags",
    "extract_marks",
    "letter_positions",
    "map_ordinal",
    "recompute_taam_consensus",
    "target_text_for",
    "vote",
]
