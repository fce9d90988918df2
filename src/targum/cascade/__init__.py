"""Cascade selection of working text and the review queue."""

from targum.cascade.review import ReviewFilter, review_queue
from targum.cascade.selector import (
    CANDIDATES_BELOW_THRESHOLD,
    DISAGREEMENT_FLAG,
    HIGH_CONFIDENCE_DISAGREEMENT,
    TIER_A_LOW_CLARITY,
    TIER_A_UNAVAILABLE,
    TIER_B_UNAVAILABLE,
    CascadeResult,
    CascadeThresholds,
    recompute_cascade_for_verse,
    select_working_text,
)

__all__ = [
    "CANDIDATES_BELOW_THRESHOLD",
    "DISAGREEMENT_FLAG",
    "HIGH_CONFIDENCE_DISAGREEMENT",
    "TIER_A_LOW_CLARITY",
    "TIER_A_UNAVAILABLE",
    "TIER_B_UNAVAILABLE",
    "CascadeResult",
    "CascadeThresholds",
    "ReviewFilter",
    "recompute_cascade_for_verse",
    "review_queue",
    "select_working_text",
]
