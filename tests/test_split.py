"""Tests for splitting region OCR text into witness-verse rows."""

import pytest

from targum.errors import InputValidationError
from targum.pipeline.split import (
    EMPTY_BASELINE_RANGE,
    EMPTY_OCR_TEXT,
    LOW_TEXT_COVERAGE,
    split_region_into_witness_verses,
    split_region_text,
)
from targum.store import RegionStatus


class TestSplitRegionText:
    def test_one_line_per_verse(self):
        split = split_region_text("בראשית ברא\n\n  והארץ היתה  \nextra", ["a", "b"])
        assert split.slices == ["בראשית ברא", "והארץ היתה"]
        assert not split.partial

    def test_proportional_to_baseline_length(self):
        split = split_region_text("אבגדהו", ["אב", "גדהו"])
        assert split.slices == ["אב", "גדהו"]
        assert split.reason is None

    def test_empty_ocr_text(self):
        split = split_region_text("   ", ["a", "b"])
        assert split.partial
        assert split.reason == EMPTY_OCR_TEXT
        assert split.slices == ["", ""]

    def test_empty_baseline_range(self):
        split = split_region_text("אב גד", ["", ""])
        assert split.reason == EMPTY_BASELINE_RANGE

    def test_short_text_leaves_empty_slice(self):
        split = split_region_text("אב", ["א", "ב", "ג"])
        assert split.partial
        assert split.reason == LOW_TEXT_COVERAGE
        assert split.slices[-1] == ""


class TestSplitRegionIntoWitnessVerses:
    @pytest.fixture
    def verses(self, seed):
        seed.baseline({"Genesis:1:1": "בראשית ברא", "Genesis:1:2": "והארץ היתה"})
        seed.witness("w1")

    def test_writes_row_per_verse(self, store, seed, verses):
        region = seed.region("w1", start="Genesis:1:1", end="Genesis:1:2")
        seed.artifact(region.id, "בראשית ברא\nוהארץ היתה", conf=0.9, coverage=0.9)

        outcome = split_region_into_witness_verses(store, region.id)

        assert outcome.verse_ids == ["Genesis:1:1", "Genesis:1:2"]
        assert outcome.status == "ok"
        assert not outcome.partial
        row = store.get_witness_verse("Genesis:1:2", "w1")
        assert row.text_normalized == "והארץ היתה"
        assert row.match_score == pytest.approx(1.0)
        assert row.clarity_score == pytest.approx(0.9)
        assert row.completeness_score == pytest.approx(1.0)
        assert row.artifacts.region_id == region.id
        assert row.artifacts.edit_distance == 0

    def test_partial_split_is_recorded(self, store, seed, verses):
        region = seed.region(
            "w1", start="Genesis:1:1", end="Genesis:1:2", status=RegionStatus.PARTIAL
        )
        seed.artifact(region.id, "")

        outcome = split_region_into_witness_verses(store, region.id)

        assert outcome.partial
        assert outcome.reason == EMPTY_OCR_TEXT
        row = store.get_witness_verse("Genesis:1:1", "w1")
        assert row.status == "partial"
        assert row.completeness_score == pytest.approx(0.6)
        assert row.artifacts.split_reason == EMPTY_OCR_TEXT

    def test_resplit_keeps_foreign_artifact_keys(self, store, seed, verses):
        region = seed.region("w1")
        seed.artifact(region.id, "בראשית ברא")
        split_region_into_witness_verses(store, region.id)

        row = store.get_witness_verse("Genesis:1:1", "w1")
        row.artifacts.extra["annotator"] = "ab"
        store.upsert_witness_verse(row)
        split_region_into_witness_verses(store, region.id)

        assert store.get_witness_verse("Genesis:1:1", "w1").artifacts.extra["annotator"] == "ab"

    def test_clean_resplit_clears_partial_reason(self, store, seed, verses):
        region = seed.region("w1", start="Genesis:1:1", end="Genesis:1:2")
        seed.artifact(region.id, "")
        split_region_into_witness_verses(store, region.id)

        row = store.get_witness_verse("Genesis:1:1", "w1")
        assert row.artifacts.split_reason == EMPTY_OCR_TEXT
        row.artifacts.extra["annotator"] = "ab"
        store.upsert_witness_verse(row)

        seed.artifact(region.id, "בראשית ברא\nוהארץ היתה")
        outcome = split_region_into_witness_verses(store, region.id)

        assert not outcome.partial
        row = store.get_witness_verse("Genesis:1:1", "w1")
        assert row.status == "ok"
        assert row.artifacts.split_reason is None
        assert "split_reason" not in row.artifacts.to_dict()
        assert row.artifacts.extra["annotator"] == "ab"

    def test_unknown_region(self, store):
        with pytest.raises(InputValidationError) as exc_info:
            split_region_into_witness_verses(store, 999)
        assert exc_info.value.code == "REGION_NOT_FOUND"

    def test_untagged_region(self, store, seed, verses):
        region = seed.region("w1", start=None, end=None)
        with pytest.raises(InputValidationError) as exc_info:
            split_region_into_witness_verses(store, region.id)
        assert exc_info.value.code == "REGION_UNTAGGED"

    def test_requires_ocr_artifact(self, store, seed, verses):
        region = seed.region("w1")
        with pytest.raises(InputValidationError) as exc_info:
            split_region_into_witness_verses(store, region.id)
        assert exc_info.value.code == "OCR_ARTIFACT_MISSING"
