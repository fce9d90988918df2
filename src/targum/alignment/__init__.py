"""Text alignment between witnesses and baselines."""

from targum.alignment.engine import (
    AlignmentResult,
    CharDiff,
    CharOp,
    TokenDiffOp,
    align,
    char_diff,
    edit_distance,
    match_score,
    score_from_distance,
)

__all__ = [
    "AlignmentResult",
    "CharDiff",
    "CharOp",
    "TokenDiffOp",
    "align",
    "char_diff",
    "edit_distance",
    "match_score",
    "score_from_distance",
]
