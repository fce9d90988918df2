"""Unicode helpers for manuscript text.

Comparison text is NFC-composed and whitespace-collapsed. Normalization
is idempotent: normalizing already-normalized text is a no-op.
"""

from __future__ import annotations

import hashlib
import re
import unicodedata

NORMALIZATION_FORM = "NFC"

_WHITESPACE_RE = re.compile(r"\s+")

# Hebrew block ranges
HEBREW_LETTER_FIRST, HEBREW_LETTER_LAST = 0x05D0, 0x05EA
TAAM_FIRST, TAAM_LAST = 0x0591, 0x05AF
NIQQUD_CODEPOINTS = frozenset(
    list(range(0x05B0, 0x05BD)) + [0x05C1, 0x05C2, 0x05C4, 0x05C5, 0x05C7]
)
SOF_PASUK = "׃"


def normalize_text(text: str) -> str:
    """Normalize text for comparison (NFC, single spaces, trimmed)."""
    if not text:
        return ""
    composed = unicodedata.normalize(NORMALIZATION_FORM, text)
    return _WHITESPACE_RE.sub(" ", composed).strip()


def tokenize(text: str) -> list[str]:
    """Split normalized text into whitespace tokens."""
    normalized = normalize_text(text)
    return normalized.split(" ") if normalized else []


def is_hebrew_letter(ch: str) -> bool:
    return HEBREW_LETTER_FIRST <= ord(ch) <= HEBREW_LETTER_LAST


def is_letter(ch: str) -> bool:
    """True for base letters (Hebrew block or any Unicode letter)."""
    return is_hebrew_letter(ch) or unicodedata.category(ch).startswith("L")


def is_taam(ch: str) -> bool:
    """True for cantillation marks (U+0591..U+05AF)."""
    return TAAM_FIRST <= ord(ch) <= TAAM_LAST


def is_niqqud(ch: str) -> bool:
    return ord(ch) in NIQQUD_CODEPOINTS


def content_hash(text: str) -> str:
    """SHA-256 of the normalized text, used to key derived data."""
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()
