"""Canonical verse ids.

Verse ids have the form ``Book:chapter:verse`` (e.g. ``Genesis:1:1``).
Ordering is book-order aware for the Torah books and falls back to
alphabetical book order for anything else; chapters and verses compare
numerically, never lexicographically.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import cmp_to_key

from targum.errors import InputValidationError

TORAH_BOOK_ORDER = ["Genesis", "Exodus", "Leviticus", "Numbers", "Deuteronomy"]
_TORAH_BOOK_INDEX = {name: idx for idx, name in enumerate(TORAH_BOOK_ORDER)}

VERSE_ID_PATTERN = re.compile(r"^[^:\s][^:]*:[1-9]\d*:[1-9]\d*$")


@dataclass(frozen=True)
class VerseRef:
    """Parsed verse id."""

    book: str
    chapter: int
    verse: int

    def __str__(self) -> str:
        return f"{self.book}:{self.chapter}:{self.verse}"


def is_canonical_verse_id(value: str) -> bool:
    return bool(VERSE_ID_PATTERN.match(value or ""))


def parse_verse_id(verse_id: str) -> VerseRef:
    """Parse a canonical verse id.

    Raises:
        InputValidationError: If the id is not ``Book:chapter:verse``.
    """
    if not is_canonical_verse_id(verse_id):
        raise InputValidationError(
            "INVALID_VERSE_ID", f"Invalid verse_id: {verse_id!r}"
        )
    book, chapter, verse = verse_id.split(":")
    return VerseRef(book=book, chapter=int(chapter), verse=int(verse))


def compare_verse_ids(a: str, b: str) -> int:
    """Canonical comparator: negative if a < b, 0 if equal, positive if a > b."""
    left = parse_verse_id(a)
    right = parse_verse_id(b)

    left_idx = _TORAH_BOOK_INDEX.get(left.book)
    right_idx = _TORAH_BOOK_INDEX.get(right.book)
    if left_idx is not None and right_idx is not None and left_idx != right_idx:
        return left_idx - right_idx

    if left.book != right.book:
        return -1 if left.book < right.book else 1
    if left.chapter != right.chapter:
        return left.chapter - right.chapter
    return left.verse - right.verse


verse_sort_key = cmp_to_key(compare_verse_ids)


def sort_verse_ids(verse_ids: list[str]) -> list[str]:
    return sorted(verse_ids, key=verse_sort_key)


def is_verse_in_range(
    verse_id: str, start: str | None = None, end: str | None = None
) -> bool:
    """Inclusive range membership; a missing bound is open."""
    if start and compare_verse_ids(verse_id, start) < 0:
        return False
    if end and compare_verse_ids(verse_id, end) > 0:
        return False
    return True
