"""Tests for settings and environment overrides."""

from pathlib import Path

from targum.config import Settings, default_worker_count


class TestSettings:
    def test_defaults(self):
        s = Settings()
        assert s.ocr_engine == "tesseract"
        assert s.remap_min_score == 0.78
        assert s.remap_min_margin == 0.08
        assert s.cascade_tier_a_threshold == 0.7
        assert s.cascade_tier_b_threshold == 0.65
        assert 1 <= s.ocr_workers <= 16

    def test_env_overrides(self, tmp_path):
        env = {
            "TARGUM_DB_PATH": str(tmp_path / "x.db"),
            "TARGUM_OCR_ENGINE": " Command-JSON ",
            "TARGUM_OCR_COMMAND_ARGS": "--lang heb --psm 6",
            "TARGUM_OCR_TIMEOUT": "0.1",
            "TARGUM_OCR_WORKERS": "0",
            "TARGUM_REMAP_MIN_SCORE": "0.9",
        }
        s = Settings.from_env(env)
        assert s.db_path == Path(tmp_path / "x.db")
        assert s.ocr_engine == "command-json"
        assert s.ocr_command_args == ["--lang", "heb", "--psm", "6"]
        assert s.ocr_timeout_seconds == 1.0
        assert s.ocr_workers == 1
        assert s.remap_min_score == 0.9

    def test_blank_values_ignored(self):
        s = Settings.from_env({"TARGUM_OCR_ENGINE": ""})
        assert s.ocr_engine == "tesseract"

    def test_worker_count_bounds(self):
        assert 1 <= default_worker_count() <= 16
