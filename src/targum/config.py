"""Configuration settings for the Targum pipeline."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

ENV_PREFIX = "TARGUM_"


def default_worker_count() -> int:
    """One worker per spare CPU, bounded to 1..16."""
    cpus = os.cpu_count() or 2
    return max(1, min(16, cpus - 1))


@dataclass
class Settings:
    """Application settings."""

    # Storage
    db_path: Path = field(
        default_factory=lambda: Path.home() / ".targum" / "targum.db"
    )
    data_dir: Path = field(default_factory=lambda: Path.home() / ".targum" / "data")

    # OCR executor
    ocr_engine: str = "tesseract"
    ocr_command: str | None = None
    ocr_command_args: list[str] = field(default_factory=list)
    ocr_timeout_seconds: float = 90.0
    ocr_max_retries: int = 2
    ocr_backoff_seconds: float = 0.4
    ocr_lang: str = "heb"

    # Job queue
    job_stale_minutes: int = 20
    ocr_workers: int = field(default_factory=default_worker_count)

    # Cascade
    cascade_tier_a_threshold: float = 0.7
    cascade_tier_b_threshold: float = 0.65
    tier_a_prefixes: list[str] = field(default_factory=lambda: ["vatican_"])
    tier_b_prefixes: list[str] = field(default_factory=lambda: ["hebrewbooks_"])
    baseline_source_id: str = "baseline_digital"

    # Remap
    remap_min_score: float = 0.78
    remap_min_margin: float = 0.08
    remap_max_window: int = 3

    # Batch stop rule
    max_ocr_failure_rate: float = 0.15
    max_split_partial_rate: float = 0.30
    max_remap_ambiguous_rate: float = 0.25

    # Telemetry throttle (percent of system memory in use)
    throttle_reduced_memory_percent: float = 80.0
    throttle_single_memory_percent: float = 90.0
    throttle_worker_limits: dict[str, dict[str, int]] = field(
        default_factory=lambda: {
            "normal": {"ocr": 2, "remap": 2, "taam_align": 2, "taam_consensus": 2},
            "reduced": {"ocr": 2, "remap": 2, "taam_align": 2, "taam_consensus": 2},
            "single": {"ocr": 1, "remap": 1, "taam_align": 1, "taam_consensus": 1},
        }
    )

    # Taam consensus
    taam_top_k: int = 128
    taam_confidence_boost: float = 0.35
    taam_confidence_cap: float = 0.99
    taam_confidence_floor: float = 0.2
    taam_disagreement_margin: int = 20
    taam_low_confidence: float = 0.65

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        """Build settings, applying ``TARGUM_*`` environment overrides."""
        env = os.environ if environ is None else environ
        settings = cls()

        for name, (attr, convert) in _ENV_OVERRIDES.items():
            value = env.get(ENV_PREFIX + name)
            if value in (None, ""):
                continue
            setattr(settings, attr, convert(value))
        return settings


_ENV_OVERRIDES = {
    "DB_PATH": ("db_path", lambda v: Path(v).expanduser()),
    "DATA_DIR": ("data_dir", lambda v: Path(v).expanduser()),
    "OCR_ENGINE": ("ocr_engine", lambda v: v.strip().lower()),
    "OCR_COMMAND": ("ocr_command", str),
    "OCR_COMMAND_ARGS": ("ocr_command_args", shlex.split),
    "OCR_TIMEOUT": ("ocr_timeout_seconds", lambda v: max(1.0, float(v))),
    "OCR_MAX_RETRIES": ("ocr_max_retries", lambda v: max(0, int(v))),
    "OCR_BACKOFF": ("ocr_backoff_seconds", lambda v: max(0.0, float(v))),
    "OCR_LANG": ("ocr_lang", str),
    "OCR_WORKERS": ("ocr_workers", lambda v: max(1, int(v))),
    "STALE_MINUTES": ("job_stale_minutes", lambda v: max(1, int(v))),
    "REMAP_MIN_SCORE": ("remap_min_score", float),
    "REMAP_MIN_MARGIN": ("remap_min_margin", float),
    "TIER_A_THRESHOLD": ("cascade_tier_a_threshold", float),
    "TIER_B_THRESHOLD": ("cascade_tier_b_threshold", float),
}
