"""Alignment engine: compare a candidate witness text to a baseline.

Pure functions, no state. Both inputs are normalized (NFC, collapsed
whitespace) before comparison so equal texts always score exactly 1.

Character level:
    Classic Levenshtein (insert, delete, substitute cost 1; match 0).
    ``match_score = max(0, 1 - distance / max(len_a, len_b, 1))``.

Token level:
    Positional, index-aligned diff of whitespace tokens. This is not an
    LCS alignment; for verse-length texts index drift is itself a signal.
    Each ``replace`` carries a character-level sub-diff keyed by index.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from targum.text import normalize_text


@dataclass
class CharOp:
    """Single character edit from a backtrace."""

    op: str  # equal | substitute | insert | delete
    a: str | None = None
    b: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"op": self.op}
        if self.a is not None:
            result["a"] = self.a
        if self.b is not None:
            result["b"] = self.b
        return result


@dataclass
class CharDiff:
    """Character-level comparison of two strings."""

    edit_distance: int
    match_score: float
    ops: list[CharOp] = field(default_factory=list)

    def stats(self) -> dict[str, int]:
        counts = {"equal": 0, "substitute": 0, "insert": 0, "delete": 0}
        for op in self.ops:
            counts[op.op] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "edit_distance": self.edit_distance,
            "match_score": self.match_score,
            "ops": [op.to_dict() for op in self.ops],
        }


@dataclass
class TokenDiffOp:
    """Positional token comparison at one index."""

    op: str  # equal | replace | insert | delete
    index: int
    a: str | None = None
    b: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"op": self.op, "index": self.index}
        if self.a is not None:
            result["a"] = self.a
        if self.b is not None:
            result["b"] = self.b
        return result


@dataclass
class AlignmentResult:
    """Full comparison of a candidate text against a baseline."""

    edit_distance: int
    match_score: float
    token_diff_ops: list[TokenDiffOp]
    char_stats: dict[str, int]
    replace_details: dict[int, CharDiff]

    def to_dict(self) -> dict[str, Any]:
        return {
            "edit_distance": self.edit_distance,
            "match_score": self.match_score,
            "token_diff_ops": [op.to_dict() for op in self.token_diff_ops],
            "char_stats": dict(self.char_stats),
            "replace_details": {
                str(idx): diff.to_dict() for idx, diff in self.replace_details.items()
            },
        }


def score_from_distance(distance: int, len_a: int, len_b: int) -> float:
    """Match score for an edit distance, clamped to [0, 1]."""
    score = 1.0 - distance / max(len_a, len_b, 1)
    return min(max(score, 0.0), 1.0)


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance using two rolling rows."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i] + [0] * len(b)
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current[j] = min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + cost,
            )
        previous = current
    return previous[len(b)]


def match_score(candidate: str, baseline: str) -> float:
    """Normalized similarity without building a backtrace."""
    a = normalize_text(candidate)
    b = normalize_text(baseline)
    return score_from_distance(edit_distance(a, b), len(a), len(b))


def char_diff(a: str, b: str) -> CharDiff:
    """Levenshtein with a full table and backtrace into edit ops.

    Inputs are compared as given; callers normalize first.
    """
    m, n = len(a), len(b)
    table = [[0] * (n + 1) for _ in range(m + 1)]
    for i in range(m + 1):
        table[i][0] = i
    for j in range(n + 1):
        table[0][j] = j

    for i in range(1, m + 1):
        row, prev_row = table[i], table[i - 1]
        ca = a[i - 1]
        for j in range(1, n + 1):
            cost = 0 if ca == b[j - 1] else 1
            row[j] = min(prev_row[j] + 1, row[j - 1] + 1, prev_row[j - 1] + cost)

    ops: list[CharOp] = []
    i, j = m, n
    while i > 0 or j > 0:
        if i > 0 and j > 0:
            cost = 0 if a[i - 1] == b[j - 1] else 1
            if table[i][j] == table[i - 1][j - 1] + cost:
                if cost == 0:
                    ops.append(CharOp("equal", a[i - 1], b[j - 1]))
                else:
                    ops.append(CharOp("substitute", a[i - 1], b[j - 1]))
                i -= 1
                j -= 1
                continue
        if i > 0 and table[i][j] == table[i - 1][j] + 1:
            ops.append(CharOp("delete", a=a[i - 1]))
            i -= 1
        else:
            ops.append(CharOp("insert", b=b[j - 1]))
            j -= 1
    ops.reverse()

    distance = table[m][n]
    return CharDiff(
        edit_distance=distance,
        match_score=score_from_distance(distance, m, n),
        ops=ops,
    )


def token_diff(a: str, b: str) -> tuple[list[TokenDiffOp], dict[int, CharDiff]]:
    """Index-aligned token diff of two normalized strings."""
    a_tokens = a.split(" ") if a else []
    b_tokens = b.split(" ") if b else []
    ops: list[TokenDiffOp] = []
    details: dict[int, CharDiff] = {}

    for idx in range(max(len(a_tokens), len(b_tokens))):
        av = a_tokens[idx] if idx < len(a_tokens) else None
        bv = b_tokens[idx] if idx < len(b_tokens) else None
        if av is None:
            ops.append(TokenDiffOp("insert", idx, b=bv))
        elif bv is None:
            ops.append(TokenDiffOp("delete", idx, a=av))
        elif av == bv:
            ops.append(TokenDiffOp("equal", idx, a=av, b=bv))
        else:
            ops.append(TokenDiffOp("replace", idx, a=av, b=bv))
            details[idx] = char_diff(av, bv)
    return ops, details


def align(candidate_text: str, baseline_text: str) -> AlignmentResult:
    """Align a candidate witness text against a baseline text."""
    a = normalize_text(candidate_text)
    b = normalize_text(baseline_text)

    diff = char_diff(a, b)
    stats = diff.stats()
    token_ops, replace_details = token_diff(a, b)

    return AlignmentResult(
        edit_distance=diff.edit_distance,
        match_score=diff.match_score,
        token_diff_ops=token_ops,
        char_stats={
            "candidate_chars": len(a),
            "baseline_chars": len(b),
            "equal": stats["equal"],
            "substitutions": stats["substitute"],
            "insertions": stats["insert"],
            "deletions": stats["delete"],
        },
        replace_details=replace_details,
    )
