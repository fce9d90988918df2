"""Tests for text normalization and Hebrew character classes."""

import unicodedata

from targum.text import (
    content_hash,
    is_letter,
    is_niqqud,
    is_taam,
    normalize_text,
    tokenize,
)


class TestNormalizeText:
    def test_collapses_whitespace_and_trims(self):
        assert normalize_text("  בראשית \t ברא\n\nאלהים ") == "בראשית ברא אלהים"

    def test_composes_to_nfc(self):
        decomposed = unicodedata.normalize("NFD", "é")
        assert normalize_text(decomposed) == "é"

    def test_idempotent(self):
        text = " בְּרֵאשִׁית   בָּרָא "
        once = normalize_text(text)
        assert normalize_text(once) == once

    def test_empty(self):
        assert normalize_text("") == ""
        assert tokenize("   ") == []


class TestCharacterClasses:
    def test_taam_range(self):
        assert is_taam("֑")
        assert is_taam("֯")
        assert not is_taam("ְ")
        assert not is_taam("א")

    def test_niqqud_is_not_taam(self):
        assert is_niqqud("ָ")
        assert not is_taam("ָ")

    def test_letters(self):
        assert is_letter("א")
        assert is_letter("ת")
        assert is_letter("a")
        assert not is_letter("֑")
        assert not is_letter(" ")


class TestContentHash:
    def test_hash_ignores_whitespace_differences(self):
        assert content_hash("ברא  אלהים") == content_hash(" ברא אלהים ")

    def test_hash_changes_with_text(self):
        assert content_hash("ברא") != content_hash("בראה")
