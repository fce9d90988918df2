"""Remap engine for mis-tagged regions."""

from targum.remap.engine import (
    RemapConfig,
    RemapDecision,
    RemapSummary,
    WindowCandidate,
    backfill_region,
    decide_remap,
    remap_region,
    remap_witness,
    score_windows,
)

__all__ = [
    "RemapConfig",
    "RemapDecision",
    "RemapSummary",
    "WindowCandidate",
    "backfill_region",
    "decide_remap",
    "remap_region",
    "remap_witness",
    "score_windows",
]
