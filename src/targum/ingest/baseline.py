"""Digital baseline text loading.

Baseline files are UTF-8 TSV, one verse per line::

    Genesis:1:1<TAB>בְּרֵאשִׁית בָּרָא ...

Blank lines and lines starting with ``#`` are ignored.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

from targum.errors import InputValidationError
from targum.verse_id import is_canonical_verse_id

if TYPE_CHECKING:
    from targum.store.repository import ManuscriptStore

logger = logging.getLogger(__name__)


def parse_baseline_lines(lines: Iterator[str] | list[str]) -> Iterator[tuple[str, str]]:
    """Yield ``(verse_id, text)`` pairs.

    Raises:
        InputValidationError: ``INVALID_VERSE_ID`` with the line number
    """
    for line_no, line in enumerate(lines, start=1):
        line = line.rstrip("\n").rstrip("\r")
        if not line.strip() or line.startswith("#"):
            continue
        verse_id, sep, text = line.partition("\t")
        verse_id = verse_id.strip()
        if not sep or not is_canonical_verse_id(verse_id):
            raise InputValidationError(
                "INVALID_VERSE_ID",
                f"Line {line_no}: expected 'Book:chapter:verse<TAB>text'",
                {"line": line_no, "value": verse_id},
            )
        yield verse_id, text.strip()


def load_baseline(store: "ManuscriptStore", path: Path | str) -> int:
    """Upsert every verse of a baseline file; returns the verse count."""
    count = 0
    with open(path, encoding="utf-8") as f:
        for verse_id, text in parse_baseline_lines(f):
            store.upsert_verse(verse_id, text)
            count += 1
    logger.info(f"Loaded {count} baseline verse(s) from {path}")
    return count
