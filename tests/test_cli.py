"""Tests for the command line interface."""

import json

import pytest
from click.testing import CliRunner
from PIL import Image

from targum.__main__ import EXIT_BLOCKED, EXIT_INVALID, cli
from targum.jobs import OcrJobQueue
from targum.store import BBox, ManuscriptStore, Page, Stage, StageStatus

CATALOG = """
witnesses:
  vatican_448:
    name: Vatican Ms. 448
    authority_weight: 0.9
    priority: 1
  hebrewbooks_sabbioneta:
    name: Sabbioneta print
    authority_weight: 0.75
    priority: 2
"""


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "cli.db"


@pytest.fixture
def invoke(db_path, tmp_path):
    runner = CliRunner()
    env = {"TARGUM_DATA_DIR": str(tmp_path / "data")}

    def run(*args):
        return runner.invoke(cli, ["--db", str(db_path), *args], env=env)

    return run


@pytest.fixture
def catalog_file(tmp_path):
    path = tmp_path / "catalog.yaml"
    path.write_text(CATALOG, encoding="utf-8")
    return path


@pytest.fixture
def loaded(invoke, catalog_file):
    result = invoke("catalog", "load", str(catalog_file))
    assert result.exit_code == 0, result.output
    return result


class TestSetup:
    def test_init_creates_database(self, invoke, db_path):
        result = invoke("init")
        assert result.exit_code == 0
        assert "Database initialized" in result.output
        assert db_path.exists()

    def test_catalog_load(self, loaded, db_path):
        with ManuscriptStore.open(db_path) as store:
            assert [w.id for w in store.list_priority_witnesses()] == [
                "vatican_448",
                "hebrewbooks_sabbioneta",
            ]

    def test_invalid_catalog_exits_1(self, invoke, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("witnesses:\n  w1:\n    type: scan\n", encoding="utf-8")
        result = invoke("catalog", "load", str(path))
        assert result.exit_code == EXIT_INVALID
        assert "CATALOG_INVALID" in result.output
        assert "[w1]" in result.output

    def test_bad_baseline_exits_1(self, invoke, tmp_path):
        path = tmp_path / "baseline.tsv"
        path.write_text("not-a-verse\ttext\n", encoding="utf-8")
        result = invoke("baseline", "load", str(path))
        assert result.exit_code == EXIT_INVALID
        assert "INVALID_VERSE_ID" in result.output

    def test_baseline_load(self, invoke, tmp_path):
        path = tmp_path / "baseline.tsv"
        path.write_text("Genesis:1:1\tבראשית\n", encoding="utf-8")
        result = invoke("baseline", "load", str(path))
        assert result.exit_code == 0
        assert "Loaded 1 verses" in result.output


class TestGateCommands:
    def test_lower_priority_blocked(self, invoke, loaded):
        result = invoke("gate", "evaluate", "hebrewbooks_sabbioneta", "ocr")
        assert result.exit_code == EXIT_BLOCKED
        assert "BLOCKED" in result.output
        assert "P1_OCR_PENDING" in result.output

    def test_allowed_after_completion(self, invoke, loaded):
        assert invoke("gate", "complete", "vatican_448", "ocr").exit_code == 0
        result = invoke("gate", "evaluate", "hebrewbooks_sabbioneta", "ocr")
        assert result.exit_code == 0
        assert "ALLOWED" in result.output

    def test_override(self, invoke, loaded):
        result = invoke(
            "gate", "evaluate", "hebrewbooks_sabbioneta", "split", "--override", "--actor", "ab"
        )
        assert result.exit_code == 0
        assert "OVERRIDDEN" in result.output

    def test_unknown_witness_exits_1(self, invoke, loaded):
        result = invoke("gate", "evaluate", "ghost", "ocr")
        assert result.exit_code == EXIT_INVALID

    def test_unknown_stage_is_usage_error(self, invoke, loaded):
        assert invoke("gate", "evaluate", "vatican_448", "binding").exit_code == 2

    def test_fail_records_error(self, invoke, loaded, db_path):
        assert invoke("gate", "fail", "vatican_448", "split", "engine crashed").exit_code == 0
        with ManuscriptStore.open(db_path) as store:
            state = store.get_run_state("vatican_448")
            assert state.status_for(Stage.SPLIT) == StageStatus.FAILED

    def test_snapshot(self, invoke, loaded):
        result = invoke("gate", "snapshot")
        assert result.exit_code == 0
        assert "Priority Gate" in result.output


class TestPagesAndRegions:
    def test_import_requires_one_source(self, invoke, loaded):
        result = invoke("pages", "import", "vatican_448")
        assert result.exit_code == EXIT_INVALID

    def test_import_tag_and_enqueue(self, invoke, loaded, tmp_path, db_path):
        scans = tmp_path / "scans"
        scans.mkdir()
        Image.new("RGB", (100, 100)).save(scans / "1.png")

        result = invoke("pages", "import", "vatican_448", "--dir", str(scans))
        assert result.exit_code == 0, result.output
        assert "Imported 1 page(s)" in result.output

        result = invoke("region", "tag", "vatican_448:p0001", "0,0,50,50", "Genesis:1:1", "Genesis:1:2")
        assert result.exit_code == 0, result.output

        result = invoke("jobs", "enqueue")
        assert "Queued 1 job(s)" in result.output

        result = invoke("split", "1")
        assert result.exit_code == EXIT_INVALID
        assert "OCR_ARTIFACT_MISSING" in result.output

    def test_bad_bbox(self, invoke, loaded):
        result = invoke("region", "tag", "vatican_448:p0001", "1,2,3", "Genesis:1:1", "Genesis:1:1")
        assert result.exit_code == 2
        assert "x,y,w,h" in result.output

    def test_retry_unknown_job(self, invoke, loaded):
        result = invoke("jobs", "retry", "99")
        assert result.exit_code == EXIT_INVALID
        assert "JOB_NOT_FOUND" in result.output


class TestPipelineCommands:
    @pytest.fixture
    def verses(self, invoke, tmp_path):
        path = tmp_path / "baseline.tsv"
        path.write_text("Genesis:1:1\tבראשית ברא\nGenesis:1:2\tוהארץ היתה\n", encoding="utf-8")
        assert invoke("baseline", "load", str(path)).exit_code == 0

    def test_cascade_json_falls_back_to_baseline(self, invoke, verses):
        result = invoke("cascade", "--verse", "Genesis:1:1", "--json")
        assert result.exit_code == 0
        rows = json.loads(result.output)
        assert rows[0]["selected_source"] == "baseline_digital"
        assert rows[0]["text_normalized"] == "בראשית ברא"

    def test_confidence_and_review_queue(self, invoke, verses):
        assert invoke("confidence").exit_code == 0
        assert invoke("cascade").exit_code == 0
        result = invoke("review-queue", "--filter", "low_confidence")
        assert result.exit_code == 0

    def test_taam_commands(self, invoke, verses):
        assert invoke("taam", "align").exit_code == 0
        result = invoke("taam", "consensus", "--verse", "Genesis:1:1")
        assert result.exit_code == 0

    def test_remap_unknown_witness(self, invoke, verses):
        result = invoke("remap", "ghost")
        assert result.exit_code == EXIT_INVALID
        assert "WITNESS_NOT_FOUND" in result.output

    def test_telemetry(self, invoke):
        result = invoke("telemetry")
        assert result.exit_code == 0
        assert "state:" in result.output

    def test_batch_dry_run(self, invoke, loaded, tmp_path):
        run_dir = tmp_path / "run"
        result = invoke("batch", "run", str(run_dir), "--dry-run")
        assert result.exit_code == 0, result.output
        assert (run_dir / "checkpoint.json").exists()
        checkpoint = json.loads((run_dir / "checkpoint.json").read_text(encoding="utf-8"))
        assert checkpoint["stages"]["ocr"]["status"] == "dry_run"


class TestJobsRun:
    @pytest.fixture
    def queued(self, loaded, db_path):
        with ManuscriptStore.open(db_path) as store:
            for witness_id in ("vatican_448", "hebrewbooks_sabbioneta"):
                page = store.upsert_page(
                    Page(
                        id=f"{witness_id}:p0001",
                        witness_id=witness_id,
                        page_index=1,
                        image_path="page.png",
                        width=1000,
                        height=1500,
                    )
                )
                store.create_region(
                    page.id, BBox(x=10, y=10, w=200, h=100), "Genesis:1:1", "Genesis:1:1"
                )
            assert OcrJobQueue(store).enqueue_missing() == 2

    @pytest.fixture
    def fake_ocr(self, monkeypatch, make_executor, fake_cropper):
        executor = make_executor(text="בראשית ברא")
        monkeypatch.setattr("targum.__main__.build_executor", lambda config: executor)
        monkeypatch.setattr("targum.__main__.PillowCropper", lambda: fake_cropper)
        return executor

    def test_blocked_witness_keeps_jobs_queued(self, invoke, queued, fake_ocr, db_path):
        result = invoke("jobs", "run")

        assert result.exit_code == 0, result.output
        assert "completed=1" in result.output
        assert "Skipped hebrewbooks_sabbioneta" in result.output
        assert "P1_OCR_RUNNING" in result.output
        assert len(fake_ocr.calls) == 1
        with ManuscriptStore.open(db_path) as store:
            queue = OcrJobQueue(store)
            assert queue.counts("vatican_448")["completed"] == 1
            assert queue.counts("hebrewbooks_sabbioneta")["queued"] == 1

    def test_drains_witness_once_higher_tier_completes(self, invoke, queued, fake_ocr, db_path):
        assert invoke("jobs", "run").exit_code == 0
        assert invoke("gate", "complete", "vatican_448", "ocr").exit_code == 0

        result = invoke("jobs", "run")

        assert result.exit_code == 0, result.output
        assert "Skipped" not in result.output
        assert len(fake_ocr.calls) == 2
        with ManuscriptStore.open(db_path) as store:
            assert OcrJobQueue(store).counts("hebrewbooks_sabbioneta")["completed"] == 1

    def test_override_drains_everything(self, invoke, queued, fake_ocr):
        result = invoke("jobs", "run", "--override", "--actor", "ab")
        assert result.exit_code == 0, result.output
        assert "completed=2" in result.output
