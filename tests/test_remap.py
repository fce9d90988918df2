"""Tests for the remap engine."""

import pytest

from targum.errors import InputValidationError
from targum.remap import (
    RemapConfig,
    WindowCandidate,
    decide_remap,
    remap_region,
    remap_witness,
    score_windows,
)

BASELINE = {
    "Genesis:1:1": "אאאא בבבב",
    "Genesis:1:2": "גגגג דדדד",
    "Genesis:1:3": "הההה וווו",
}


def candidate(start, score, width=1):
    return WindowCandidate(start, start, width, score)


class TestDecideRemap:
    def test_small_margin_requires_review(self):
        """Best 0.9 and second 0.85 is under the 0.08 margin."""
        decision = decide_remap(
            [candidate("Genesis:1:2", 0.9), candidate("Genesis:1:3", 0.85)],
            min_score=0.78,
            min_margin=0.08,
        )
        assert not decision.reassigned
        assert decision.review_required
        assert decision.margin == pytest.approx(0.05)

    def test_clear_winner(self):
        decision = decide_remap([candidate("Genesis:1:2", 0.95), candidate("Genesis:1:3", 0.5)])
        assert decision.reassigned
        assert not decision.review_required

    def test_low_score_requires_review(self):
        decision = decide_remap([candidate("Genesis:1:2", 0.7)])
        assert decision.review_required
        assert decision.margin == pytest.approx(0.7)

    def test_no_candidates(self):
        decision = decide_remap([])
        assert decision.review_required
        assert decision.best is None

    def test_keeps_top_three(self):
        cands = [candidate(f"Genesis:1:{i}", 1 - i / 10) for i in range(1, 6)]
        assert len(decide_remap(cands).candidates) == 3


class TestScoreWindows:
    def test_best_window_first(self):
        ids = list(BASELINE)
        cands = score_windows("גגגג דדדד", ids, BASELINE, max_window=2)
        assert cands[0].start_verse_id == "Genesis:1:2"
        assert cands[0].width == 1
        assert cands[0].score == pytest.approx(1.0)
        # 3 single-verse windows plus 2 two-verse windows
        assert len(cands) == 5

    def test_ties_prefer_earlier_then_narrower(self):
        baselines = {"Genesis:1:1": "אבג", "Genesis:1:2": "אבג"}
        cands = score_windows("אבג", list(baselines), baselines, max_window=1)
        assert [c.start_verse_id for c in cands] == ["Genesis:1:1", "Genesis:1:2"]


class TestRemapWitness:
    @pytest.fixture
    def witness(self, seed):
        seed.baseline(BASELINE)
        seed.witness("w1", priority=1)
        return "w1"

    def test_reassigns_and_backfills(self, store, seed, witness):
        region = seed.region(witness, start="Genesis:1:1", end="Genesis:1:1")
        seed.artifact(region.id, "גגגג דדדד")

        summary = remap_witness(store, witness)

        assert summary.total == 1
        assert summary.reassigned == 1
        assert summary.ambiguous == 0
        assert summary.touched_verse_ids == ["Genesis:1:1", "Genesis:1:2"]

        updated = store.get_region(region.id)
        assert (updated.start_verse_id, updated.end_verse_id) == ("Genesis:1:2", "Genesis:1:2")
        assert updated.remap_previous_start == "Genesis:1:1"
        assert not updated.remap_review_required

        row = store.get_witness_verse("Genesis:1:2", witness)
        assert row.text_normalized == "גגגג דדדד"
        assert row.confidence > 0
        assert store.get_working_text("Genesis:1:2") is not None

    def test_ambiguous_region_is_flagged_not_moved(self, store, seed):
        seed.baseline({"Genesis:1:1": "אבג", "Genesis:1:2": "אבג", "Genesis:1:3": "דהו"})
        seed.witness("w1")
        region = seed.region("w1", start="Genesis:1:3", end="Genesis:1:3")
        seed.artifact(region.id, "אבג")

        summary = remap_witness(store, "w1", RemapConfig(max_window=1))

        assert summary.ambiguous == 1
        assert summary.reassigned == 0
        updated = store.get_region(region.id)
        assert updated.start_verse_id == "Genesis:1:3"
        assert updated.remap_review_required
        assert updated.remap_margin == pytest.approx(0.0)
        assert len(updated.remap_candidates) == 3

    def test_region_without_ocr_is_skipped(self, store, seed, witness):
        region = seed.region(witness)
        decision = remap_region(store, region.id)
        assert decision.skipped_reason == "NO_OCR_TEXT"
        assert not decision.review_required
        assert remap_witness(store, witness).total == 0

    def test_same_range_is_not_a_change(self, store, seed, witness):
        region = seed.region(witness, start="Genesis:1:2", end="Genesis:1:2")
        seed.artifact(region.id, "גגגג דדדד")
        summary = remap_witness(store, witness)
        assert summary.decisions[0].reassigned
        assert summary.reassigned == 0
        assert summary.touched_verse_ids == []

    def test_search_range_limits_windows(self, store, seed, witness):
        region = seed.region(witness)
        seed.artifact(region.id, "גגגג דדדד")
        summary = remap_witness(
            store, witness, search_start="Genesis:1:3", search_end="Genesis:1:3", backfill=False
        )
        assert summary.decisions[0].best.start_verse_id == "Genesis:1:3"
        assert summary.decisions[0].review_required

    def test_unknown_witness(self, store):
        with pytest.raises(InputValidationError) as exc_info:
            remap_witness(store, "nope")
        assert exc_info.value.code == "WITNESS_NOT_FOUND"
