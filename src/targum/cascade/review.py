"""Review queue over committed working text."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from targum.cascade.selector import CANDIDATES_BELOW_THRESHOLD, DISAGREEMENT_FLAG
from targum.store.models import WorkingVerseText
from targum.verse_id import verse_sort_key

if TYPE_CHECKING:
    from targum.store.repository import ManuscriptStore

LOW_CONFIDENCE_THRESHOLD = 0.65


class ReviewFilter(str, Enum):
    LOW_CONFIDENCE = "low_confidence"
    DISAGREEMENT = "disagreement"
    UNAVAILABLE_PARTIAL = "unavailable_partial"


def _needs_review(row: WorkingVerseText, review_filter: ReviewFilter) -> bool:
    if review_filter == ReviewFilter.LOW_CONFIDENCE:
        return row.ensemble_confidence < LOW_CONFIDENCE_THRESHOLD
    if review_filter == ReviewFilter.DISAGREEMENT:
        return DISAGREEMENT_FLAG in row.flags
    return any(
        "UNAVAILABLE" in code or code == CANDIDATES_BELOW_THRESHOLD
        for code in row.reason_codes
    )


def review_queue(
    store: "ManuscriptStore",
    review_filter: ReviewFilter | str = ReviewFilter.LOW_CONFIDENCE,
    limit: int = 100,
) -> list[WorkingVerseText]:
    """Working-text rows needing human review.

    Low-confidence rows come back least confident first; the other
    filters return rows in canonical verse order.
    """
    review_filter = ReviewFilter(review_filter)
    rows = [r for r in store.list_working_texts() if _needs_review(r, review_filter)]
    if review_filter == ReviewFilter.LOW_CONFIDENCE:
        rows.sort(key=lambda r: (r.ensemble_confidence, verse_sort_key(r.verse_id)))
    else:
        rows.sort(key=lambda r: verse_sort_key(r.verse_id))
    return rows[:limit]
