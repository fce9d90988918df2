"""OCR executor collaborators.

Two engines are supported:

- ``tesseract``: the Tesseract CLI, run once for plain text and once for
  TSV word boxes from which mean confidence and coverage are derived.
- ``command-json``: any command that takes the image path as its last
  argument and prints a JSON object on stdout.

Every external call carries a timeout. Failures are raised as
``OcrError`` with a distinct code per failure kind, and
``run_ocr_with_retry`` retries them with linear backoff.
"""

from __future__ import annotations

import json
import logging
import math
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Protocol

from pydantic import AliasChoices, BaseModel, Field, field_validator

from targum.errors import OcrError

if TYPE_CHECKING:
    from targum.config import Settings

logger = logging.getLogger(__name__)

ENGINE_TESSERACT = "tesseract"
ENGINE_COMMAND_JSON = "command-json"

MAX_OUTPUT_BYTES = 20 * 1024 * 1024


def _unit_interval(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return min(max(number, 0.0), 1.0)


class OcrResult(BaseModel):
    """Validated OCR output for one image."""

    text_raw: str = Field("", description="Recognized text as emitted")
    mean_confidence: float = Field(0.0, description="Mean word confidence in [0,1]")
    coverage_estimate: float = Field(0.0, description="Share of box area with text")
    char_count: int = Field(0, description="Length of text_raw")
    engine: str = Field(ENGINE_TESSERACT, description="Engine that produced it")
    raw: dict[str, Any] = Field(default_factory=dict, description="Engine extras")

    @field_validator("mean_confidence", "coverage_estimate", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return _unit_interval(value)


class CommandJsonPayload(BaseModel):
    """Stdout payload accepted from a ``command-json`` engine."""

    text_raw: str = Field("", validation_alias=AliasChoices("text_raw", "text"))
    mean_confidence: float = Field(
        0.0, validation_alias=AliasChoices("mean_confidence", "ocrMeanConf")
    )
    coverage_estimate: float = Field(
        0.0, validation_alias=AliasChoices("coverage_estimate", "coverageRatioEst")
    )

    @field_validator("text_raw", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("mean_confidence", "coverage_estimate", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return _unit_interval(value)


@dataclass
class OcrConfig:
    engine: str = ENGINE_TESSERACT
    command: str | None = None
    command_args: list[str] = field(default_factory=list)
    timeout_seconds: float = 90.0
    max_retries: int = 2
    backoff_seconds: float = 0.4
    language: str = "heb"

    @classmethod
    def from_settings(cls, settings: "Settings") -> "OcrConfig":
        return cls(
            engine=settings.ocr_engine,
            command=settings.ocr_command,
            command_args=list(settings.ocr_command_args),
            timeout_seconds=settings.ocr_timeout_seconds,
            max_retries=settings.ocr_max_retries,
            backoff_seconds=settings.ocr_backoff_seconds,
            language=settings.ocr_lang,
        )


class OcrExecutor(Protocol):
    """Runs OCR on one image file."""

    def run(self, image_path: Path | str) -> OcrResult:
        ...


def parse_tesseract_tsv(tsv: str) -> tuple[float, float]:
    """Mean confidence and coverage from Tesseract TSV output.

    Columns 6..9 are the word box (left, top, width, height), 10 is the
    confidence (0..100, -1 for non-word rows) and 11 is the text.

    Returns:
        ``(mean_confidence, coverage_estimate)``, both in [0, 1]
    """
    lines = [line for line in tsv.splitlines() if line]
    if len(lines) <= 1:
        return 0.0, 0.0

    confidences: list[float] = []
    total_area = 0.0
    covered_area = 0.0
    for line in lines[1:]:
        cells = line.split("\t")

        def cell(idx: int, default: float) -> float:
            try:
                value = float(cells[idx])
            except (IndexError, ValueError):
                return default
            return value if math.isfinite(value) else default

        area = max(0.0, cell(8, 0.0)) * max(0.0, cell(9, 0.0))
        text = cells[11].strip() if len(cells) > 11 else ""
        if area > 0:
            total_area += area
            if text:
                covered_area += area
        conf = cell(10, -1.0)
        if conf >= 0:
            confidences.append(conf)

    mean = sum(confidences) / len(confidences) / 100 if confidences else 0.0
    coverage = min(1.0, covered_area / total_area) if total_area > 0 else 0.0
    return _unit_interval(mean), _unit_interval(coverage)


def run_command(cmd: str, args: list[str], timeout: float) -> subprocess.CompletedProcess:
    """Run an OCR command, mapping failures onto ``OcrError`` codes."""
    try:
        result = subprocess.run(
            [cmd, *args],
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise OcrError(
            OcrError.ENGINE_NOT_FOUND, f"OCR executable not found: {cmd}", {"cmd": cmd}
        ) from e
    except subprocess.TimeoutExpired as e:
        raise OcrError(
            OcrError.TIMEOUT,
            f"OCR command timed out after {timeout}s",
            {"cmd": cmd, "args": args},
        ) from e

    if result.returncode != 0:
        raise OcrError(
            OcrError.EXEC_FAILED,
            f"OCR command failed with exit code {result.returncode}",
            {"cmd": cmd, "args": args, "stderr": (result.stderr or "")[-2000:]},
        )
    if len(result.stdout or "") > MAX_OUTPUT_BYTES:
        raise OcrError(OcrError.PARSE_FAILED, "OCR output exceeds size limit")
    return result


class TesseractExecutor:
    """Tesseract CLI engine."""

    def __init__(self, config: OcrConfig):
        self._config = config
        self._command = config.command or "tesseract"

    def run(self, image_path: Path | str) -> OcrResult:
        path = str(image_path)
        lang = self._config.language
        timeout = self._config.timeout_seconds
        text_run = run_command(self._command, [path, "stdout", "-l", lang], timeout)
        tsv_run = run_command(self._command, [path, "stdout", "tsv", "-l", lang], timeout)
        mean_confidence, coverage = parse_tesseract_tsv(tsv_run.stdout)
        return OcrResult(
            text_raw=text_run.stdout,
            mean_confidence=mean_confidence,
            coverage_estimate=coverage,
            char_count=len(text_run.stdout),
            engine=ENGINE_TESSERACT,
            raw={"stderr": text_run.stderr},
        )


class CommandJsonExecutor:
    """External command engine that prints a JSON object."""

    def __init__(self, config: OcrConfig):
        if not config.command:
            raise OcrError(
                OcrError.EXEC_FAILED,
                "TARGUM_OCR_COMMAND is required for the command-json engine",
            )
        self._config = config

    def run(self, image_path: Path | str) -> OcrResult:
        result = run_command(
            self._config.command,
            [*self._config.command_args, str(image_path)],
            self._config.timeout_seconds,
        )
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise OcrError(
                OcrError.PARSE_FAILED, "command-json OCR must return valid JSON"
            ) from e
        if not isinstance(data, dict):
            raise OcrError(
                OcrError.PARSE_FAILED, "command-json OCR must return a JSON object"
            )

        payload = CommandJsonPayload.model_validate(data)
        return OcrResult(
            text_raw=payload.text_raw,
            mean_confidence=payload.mean_confidence,
            coverage_estimate=payload.coverage_estimate,
            char_count=len(payload.text_raw),
            engine=ENGINE_COMMAND_JSON,
            raw=data,
        )


def build_executor(config: OcrConfig) -> OcrExecutor:
    if config.engine == ENGINE_COMMAND_JSON:
        return CommandJsonExecutor(config)
    return TesseractExecutor(config)


def run_ocr_with_retry(
    executor: OcrExecutor,
    image_path: Path | str,
    max_retries: int = 2,
    backoff_seconds: float = 0.4,
    sleep: Callable[[float], None] = time.sleep,
) -> OcrResult:
    """Run OCR with up to ``max_retries`` retries and linear backoff.

    A missing engine is not retried. The last error is re-raised once
    attempts are exhausted.
    """
    last_error: OcrError | None = None
    for attempt in range(1, max_retries + 2):
        try:
            return executor.run(image_path)
        except OcrError as e:
            last_error = e
            if e.code == OcrError.ENGINE_NOT_FOUND or attempt > max_retries:
                break
            logger.warning(
                f"OCR attempt {attempt} failed for {image_path} ({e.code}); retrying"
            )
            sleep(backoff_seconds * attempt)
        except OSError as e:
            last_error = OcrError(
                OcrError.EXEC_FAILED, "OCR run failed", {"cause": str(e)}
            )
            if attempt > max_retries:
                break
            sleep(backoff_seconds * attempt)

    raise last_error
