"""Tests for the manuscript store."""

import sqlite3

import pytest

from targum.errors import InputValidationError
from targum.store import (
    BBox,
    Blocker,
    JobStatus,
    ManuscriptStore,
    RegionStatus,
    Stage,
    StageStatus,
    TaamAlignment,
    Witness,
    WitnessVerse,
    WitnessVerseArtifacts,
    WorkingVerseText,
)


class TestLifecycle:
    def test_open_initializes_schema(self, tmp_path):
        with ManuscriptStore.open(tmp_path / "sub" / "t.db") as store:
            tables = {
                r[0]
                for r in store.connection.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'table'"
                )
            }
        assert {"verses", "witnesses", "pages", "page_regions", "ocr_jobs"} <= tables

    def test_reopen_keeps_data(self, settings):
        with ManuscriptStore.open(settings) as store:
            store.upsert_verse("Genesis:1:1", "בראשית")
        with ManuscriptStore.open(settings) as store:
            assert store.get_verse_text("Genesis:1:1") == "בראשית"


class TestVerses:
    def test_list_in_canonical_order(self, store, seed):
        seed.baseline({"Genesis:1:10": "j", "Genesis:1:2": "b", "Genesis:1:1": "a"})
        assert store.list_verse_ids() == ["Genesis:1:1", "Genesis:1:2", "Genesis:1:10"]
        assert store.list_verse_ids("Genesis:1:2", "Genesis:1:10") == [
            "Genesis:1:2",
            "Genesis:1:10",
        ]

    def test_invalid_verse_id_rejected(self, store):
        with pytest.raises(InputValidationError):
            store.upsert_verse("Genesis-1-1", "x")

    def test_baseline_texts(self, store, seed):
        seed.baseline({"Genesis:1:1": "a", "Genesis:1:2": "b"})
        assert store.get_baseline_texts(["Genesis:1:2", "Genesis:9:9"]) == {"Genesis:1:2": "b"}
        assert store.get_baseline_texts([]) == {}


class TestWitnesses:
    def test_priority_order(self, store, seed):
        seed.witness("c")
        seed.witness("b", priority=2)
        seed.witness("a", priority=1)
        assert [w.id for w in store.list_witnesses()] == ["a", "b", "c"]
        assert [w.id for w in store.list_priority_witnesses()] == ["a", "b"]

    def test_priority_is_unique(self, store, seed):
        seed.witness("a", priority=1)
        with pytest.raises(sqlite3.IntegrityError):
            store.upsert_witness(Witness(id="b", name="b", priority=1))


class TestRegions:
    def test_create_requires_page(self, store):
        with pytest.raises(InputValidationError) as exc_info:
            store.create_region("missing", BBox(0, 0, 1, 1), "Genesis:1:1", "Genesis:1:1")
        assert exc_info.value.code == "PAGE_NOT_FOUND"

    def test_round_trip_and_witness_lookup(self, store, seed):
        seed.witness("w1", priority=1)
        region = seed.region("w1", "Genesis:1:1", "Genesis:1:3")
        loaded = store.get_region(region.id)
        assert loaded.bbox == BBox(10, 10, 200, 100)
        assert loaded.is_tagged
        assert store.witness_id_for_region(region.id) == "w1"
        assert [r.id for r in store.list_regions(witness_id="w1")] == [region.id]

    def test_notes_are_appended_once(self, store, seed):
        seed.witness("w1")
        region = seed.region("w1")
        store.update_region_bbox(region.id, BBox(0, 0, 5, 5), note="clamped")
        store.update_region_bbox(region.id, BBox(0, 0, 5, 5), note="clamped")
        updated = store.set_region_status(region.id, RegionStatus.PARTIAL, note="torn")
        assert updated.notes == "clamped; torn"
        assert updated.status == RegionStatus.PARTIAL

    def test_record_remap_keeps_previous_range(self, store, seed):
        seed.witness("w1")
        region = seed.region("w1", "Genesis:1:1", "Genesis:1:1")
        updated = store.record_remap(
            region.id,
            review_required=False,
            score=0.95,
            margin=0.2,
            candidates=[{"start_verse_id": "Genesis:1:2"}],
            new_start="Genesis:1:2",
            new_end="Genesis:1:3",
        )
        assert (updated.start_verse_id, updated.end_verse_id) == ("Genesis:1:2", "Genesis:1:3")
        assert updated.remap_previous_start == "Genesis:1:1"
        assert updated.remap_score == 0.95
        assert not updated.remap_review_required

    def test_unknown_region(self, store):
        with pytest.raises(InputValidationError) as exc_info:
            store.set_region_status(999, RegionStatus.FAILED)
        assert exc_info.value.code == "REGION_NOT_FOUND"


class TestOcrJobs:
    def test_running_then_failed_keeps_error(self, store, seed):
        """A job moved running then failed("boom") has one attempt and error "boom"."""
        seed.witness("w1")
        region = seed.region("w1")
        job = store.create_ocr_job(region.id)
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 0

        store.update_ocr_job_status(job.id, JobStatus.RUNNING)
        failed = store.update_ocr_job_status(job.id, JobStatus.FAILED, "boom")
        assert failed.attempts == 1
        assert failed.error == "boom"
        assert failed.finished_at is not None

    def test_claim_is_priority_first_then_fifo(self, store, seed):
        seed.witness("low", priority=3)
        seed.witness("high", priority=1)
        low_a = store.create_ocr_job(seed.region("low").id)
        low_b = store.create_ocr_job(seed.region("low").id)
        high = store.create_ocr_job(seed.region("high").id)

        claimed = [store.claim_next_ocr_job().id for _ in range(3)]
        assert claimed == [high.id, low_a.id, low_b.id]
        assert store.claim_next_ocr_job() is None

    def test_claim_restricted_to_witness(self, store, seed):
        seed.witness("low", priority=3)
        seed.witness("high", priority=1)
        low = store.create_ocr_job(seed.region("low").id)
        high = store.create_ocr_job(seed.region("high").id)

        assert store.claim_next_ocr_job(witness_id="low").id == low.id
        assert store.claim_next_ocr_job(witness_id="low") is None
        assert store.claim_next_ocr_job().id == high.id

    def test_claim_counts_attempt(self, store, seed):
        seed.witness("w1")
        job = store.create_ocr_job(seed.region("w1").id)
        claimed = store.claim_next_ocr_job()
        assert claimed.id == job.id
        assert claimed.status == JobStatus.RUNNING
        assert claimed.attempts == 1
        assert claimed.started_at is not None

    def test_counts_use_latest_job_per_region(self, store, seed):
        seed.witness("w1")
        region = seed.region("w1")
        first = store.create_ocr_job(region.id)
        store.update_ocr_job_status(first.id, JobStatus.FAILED, "x")
        store.create_ocr_job(region.id)
        counts = store.count_ocr_jobs("w1")
        assert counts["queued"] == 1
        assert counts["failed"] == 0
        assert set(counts) == {s.value for s in JobStatus}


class TestWitnessVerses:
    def test_artifacts_merge_on_upsert(self, store, seed):
        seed.witness("w1")
        store.upsert_witness_verse(
            WitnessVerse(
                verse_id="Genesis:1:1",
                witness_id="w1",
                text_raw="a",
                artifacts=WitnessVerseArtifacts(region_id=4, edit_distance=2),
            )
        )
        store.upsert_witness_verse(
            WitnessVerse(
                verse_id="Genesis:1:1",
                witness_id="w1",
                text_raw="b",
                artifacts=WitnessVerseArtifacts(split_reason="EMPTY_OCR_TEXT"),
            )
        )
        row = store.get_witness_verse("Genesis:1:1", "w1")
        assert row.text_raw == "b"
        assert row.artifacts.region_id == 4
        assert row.artifacts.edit_distance == 2
        assert row.artifacts.split_reason == "EMPTY_OCR_TEXT"

    def test_replaced_artifact_key_can_be_cleared(self, store, seed):
        seed.witness("w1")
        store.upsert_witness_verse(
            WitnessVerse(
                verse_id="Genesis:1:1",
                witness_id="w1",
                artifacts=WitnessVerseArtifacts(
                    split_reason="EMPTY_OCR_TEXT", extra={"annotator": "ab"}
                ),
            )
        )
        store.upsert_witness_verse(
            WitnessVerse(
                verse_id="Genesis:1:1",
                witness_id="w1",
                artifacts=WitnessVerseArtifacts(region_id=7),
            ),
            replace_artifacts=("split_reason",),
        )
        row = store.get_witness_verse("Genesis:1:1", "w1")
        assert row.artifacts.split_reason is None
        assert row.artifacts.region_id == 7
        assert row.artifacts.extra == {"annotator": "ab"}

    def test_score_update_requires_row(self, store):
        with pytest.raises(InputValidationError):
            store.update_witness_verse_scores(
                "Genesis:1:1", "nobody", 0.5, WitnessVerseArtifacts()
            )


class TestWorkingText:
    def test_full_overwrite(self, store):
        store.upsert_working_text(
            WorkingVerseText("Genesis:1:1", "a", "x", "x", 0.9, ["F"], ["R"])
        )
        store.upsert_working_text(WorkingVerseText("Genesis:1:1", "b", "y", "y", 0.5))
        row = store.get_working_text("Genesis:1:1")
        assert row.selected_source == "b"
        assert row.flags == []
        assert row.reason_codes == []


class TestRunState:
    def test_pending_on_first_read(self, store, seed):
        seed.witness("w1", priority=1)
        state = store.get_run_state("w1")
        assert all(state.status_for(stage) == StageStatus.PENDING for stage in Stage)
        assert state.blockers == []

    def test_blockers_kept_only_while_blocked(self, store, seed):
        seed.witness("w1", priority=2)
        blocker = Blocker("ocr", "w0", 1, "P1_OCR_PENDING", "wait")
        state = store.set_stage_status("w1", Stage.OCR, StageStatus.BLOCKED, blockers=[blocker])
        assert [b.reason_code for b in state.blockers] == ["P1_OCR_PENDING"]

        state = store.set_stage_status(
            "w1", Stage.OCR, StageStatus.RUNNING, blockers=[blocker], override_used=True
        )
        assert state.blockers == []
        audit = store.list_run_audit("w1")
        assert audit[0].override_used
        assert audit[0].blockers[0]["reason_code"] == "P1_OCR_PENDING"

    def test_failed_records_last_error(self, store, seed):
        seed.witness("w1", priority=1)
        state = store.set_stage_status("w1", Stage.SPLIT, StageStatus.FAILED, error="disk full")
        assert state.last_error == "disk full"
        assert state.status_for(Stage.SPLIT) == StageStatus.FAILED


class TestTaam:
    def test_alignment_upsert_replaces(self, store):
        for h in ("h1", "h2"):
            store.upsert_taam_alignment(
                TaamAlignment("Genesis:1:1", "w1", "baseline", h, marks=[{"mark": "x"}])
            )
        rows = store.list_taam_alignments("Genesis:1:1", "baseline")
        assert len(rows) == 1
        assert rows[0].target_text_hash == "h2"
        assert store.list_taam_alignments("Genesis:1:1", "working_text") == []
