"""Tests for taam alignment and consensus."""

import pytest

from targum.store import TaamAlignment, WitnessVerse, WorkingVerseText
from targum.taamim import (
    LAYER_BASELINE,
    LAYER_WORKING_TEXT,
    LOW_TAAM_CONFIDENCE,
    MISSING_TAAM_SIGNAL,
    TAAM_DISAGREEMENT,
    TaamConfig,
    align_taamim_for_verse,
    align_witness_marks,
    consensus_flags,
    extract_marks,
    letter_positions,
    map_ordinal,
    recompute_taam_consensus,
    target_text_for,
    vote,
)

ETNAHTA = "֑"
TIPEHA = "֖"
VERSE = "Genesis:1:1"


class TestExtraction:
    def test_marks_anchor_to_previous_letter(self):
        extraction = extract_marks(f"א{ETNAHTA}ב ג{TIPEHA}ד")
        assert extraction.letter_count == 4
        assert [(m.mark, m.letter_ordinal) for m in extraction.marks] == [
            (ETNAHTA, 0),
            (TIPEHA, 2),
        ]

    def test_leading_mark_is_dropped(self):
        assert extract_marks(f"{ETNAHTA}אב").marks == []

    def test_letter_positions(self):
        assert letter_positions("אב גד") == [(0, 0), (0, 1), (1, 0), (1, 1)]


class TestMapOrdinal:
    @pytest.mark.parametrize(
        "ordinal,witness_letters,target_letters,expected",
        [
            (0, 3, 3, 0),
            (2, 3, 5, 3),
            # 1.5 rounds half-up
            (1, 2, 4, 2),
            (5, 0, 4, 0),
            (1, 2, 0, 0),
        ],
    )
    def test_linear_rescale(self, ordinal, witness_letters, target_letters, expected):
        assert map_ordinal(ordinal, witness_letters, target_letters) == expected

    def test_align_witness_marks(self):
        marks, metrics = align_witness_marks(f"אב{ETNAHTA}", "אב גד")
        # ordinal 1 of 2 letters lands on target ordinal 2 of 4
        assert (marks[0]["token_index"], marks[0]["letter_index"]) == (1, 0)
        assert metrics == {
            "witness_letters": 2,
            "target_letters": 4,
            "marks_found": 1,
            "marks_mapped": 1,
        }

    def test_empty_target_maps_nothing(self):
        marks, metrics = align_witness_marks(f"א{ETNAHTA}", "")
        assert marks == []
        assert metrics["marks_found"] == 1


class TestVote:
    def alignment(self, witness_id, *positions):
        return TaamAlignment(
            verse_id=VERSE,
            witness_id=witness_id,
            target_layer=LAYER_WORKING_TEXT,
            target_text_hash="h",
            marks=[
                {"token_index": t, "letter_index": l, "mark": ETNAHTA} for t, l in positions
            ],
        )

    def test_weighted_buckets(self):
        marks, ensemble, candidates = vote(
            [self.alignment("a", (0, 0)), self.alignment("b", (0, 1))],
            {"a": 0.9, "b": 0.3},
        )
        assert candidates == 2
        assert marks[0]["letter_index"] == 0
        assert marks[0]["confidence"] == pytest.approx(0.75)
        assert ensemble == pytest.approx(0.99)

    def test_top_k(self):
        alignment = self.alignment("a", (0, 0), (0, 1), (0, 2))
        marks, _, candidates = vote([alignment], {"a": 1.0}, TaamConfig(top_k=2))
        assert len(marks) == 2
        assert candidates == 3

    def test_no_marks_uses_floor(self):
        marks, ensemble, _ = vote([], {})
        assert marks == []
        assert ensemble == pytest.approx(0.2)

    def test_flags(self):
        assert consensus_flags(0, 0, 0.2) == [MISSING_TAAM_SIGNAL, LOW_TAAM_CONFIDENCE]
        assert consensus_flags(2, 30, 0.9) == [TAAM_DISAGREEMENT]
        assert consensus_flags(2, 3, 0.9) == []


class TestConsensusFlow:
    @pytest.fixture
    def verse(self, store, seed):
        seed.baseline({VERSE: "אב גד"})
        for witness_id, text, confidence in [
            ("w1", f"א{ETNAHTA}ב גד", 0.9),
            ("w2", f"א{ETNAHTA}ב גד", 0.6),
            ("w3", f"אב{ETNAHTA} גד", 0.5),
        ]:
            seed.witness(witness_id)
            store.upsert_witness_verse(
                WitnessVerse(
                    verse_id=VERSE,
                    witness_id=witness_id,
                    text_raw=text,
                    text_normalized=text,
                    confidence=confidence,
                )
            )
        return VERSE

    def test_align_then_vote(self, store, verse):
        alignments = align_taamim_for_verse(store, verse)
        assert len(alignments) == 3
        assert {a.status for a in alignments} == {"ok"}

        result = recompute_taam_consensus(store, verse)

        assert result.stale_count == 0
        assert result.candidate_count == 3
        assert result.consensus_count == 2
        top = result.consensus.marks[0]
        assert (top["token_index"], top["letter_index"]) == (0, 0)
        assert top["weight"] == pytest.approx(1.5)
        assert result.consensus.flags == []
        assert store.get_taam_consensus(verse, LAYER_WORKING_TEXT) is not None

    def test_stale_alignments_do_not_vote(self, store, verse):
        align_taamim_for_verse(store, verse)
        store.upsert_working_text(
            WorkingVerseText(
                verse_id=verse,
                selected_source="w1",
                text_surface="אב גדה",
                text_normalized="אב גדה",
                ensemble_confidence=0.9,
            )
        )

        result = recompute_taam_consensus(store, verse)

        assert result.stale_count == 3
        assert result.consensus_count == 0
        assert MISSING_TAAM_SIGNAL in result.consensus.flags
        assert result.consensus.ensemble_confidence == pytest.approx(0.2)

    def test_baseline_layer_ignores_working_text(self, store, verse):
        store.upsert_working_text(
            WorkingVerseText(
                verse_id=verse,
                selected_source="w1",
                text_surface="אב גדה",
                text_normalized="אב גדה",
                ensemble_confidence=0.9,
            )
        )
        assert target_text_for(store, verse, LAYER_BASELINE) == "אב גד"
        assert target_text_for(store, verse, LAYER_WORKING_TEXT) == "אב גדה"

    def test_witness_without_marks(self, store, seed, verse):
        seed.witness("w4")
        store.upsert_witness_verse(
            WitnessVerse(verse_id=verse, witness_id="w4", text_raw="אב גד", text_normalized="אב גד")
        )
        statuses = {a.witness_id: a.status for a in align_taamim_for_verse(store, verse)}
        assert statuses["w4"] == "no_marks"
