"""Typed records for the manuscript store.

Rows come out of SQLite as ``sqlite3.Row`` and are converted into these
dataclasses at the store boundary; JSON columns are decoded here so
pipeline code never handles raw JSON strings.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class RegionStatus(str, Enum):
    OK = "ok"
    PARTIAL = "partial"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class Stage(str, Enum):
    """Pipeline stages tracked per witness in the run state."""

    INGEST = "ingest"
    OCR = "ocr"
    SPLIT = "split"
    CONFIDENCE = "confidence"


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


def _loads(value: str | None, default: Any) -> Any:
    if not value:
        return default
    return json.loads(value)


def dumps(value: Any) -> str:
    """Stable JSON encoding for store columns."""
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


@dataclass
class BBox:
    """Bounding box in pixel or normalized [0,1] coordinates."""

    x: float
    y: float
    w: float
    h: float

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BBox":
        return cls(
            x=float(data["x"]),
            y=float(data["y"]),
            w=float(data["w"]),
            h=float(data["h"]),
        )


@dataclass
class Verse:
    verse_id: str
    text: str


@dataclass
class Witness:
    """A text source with fixed authority."""

    id: str
    name: str
    type: str = "scan"
    authority_weight: float = 0.4
    priority: int | None = None
    source_link: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_priority(self) -> bool:
        return self.priority is not None and self.priority > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "authority_weight": self.authority_weight,
            "priority": self.priority,
            "source_link": self.source_link,
            "metadata": self.metadata,
        }

    @classmethod
    def from_row(cls, row) -> "Witness":
        return cls(
            id=row["id"],
            name=row["name"],
            type=row["type"],
            authority_weight=row["authority_weight"],
            priority=row["priority"],
            source_link=row["source_link"],
            metadata=_loads(row["metadata_json"], {}),
        )


@dataclass
class Page:
    id: str
    witness_id: str
    page_index: int
    image_path: str
    width: int | None = None
    height: int | None = None
    status: str = "ok"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "witness_id": self.witness_id,
            "page_index": self.page_index,
            "image_path": self.image_path,
            "width": self.width,
            "height": self.height,
            "status": self.status,
        }

    @classmethod
    def from_row(cls, row) -> "Page":
        return cls(
            id=row["id"],
            witness_id=row["witness_id"],
            page_index=row["page_index"],
            image_path=row["image_path"],
            width=row["width"],
            height=row["height"],
            status=row["status"],
        )


@dataclass
class Region:
    """A bounding box on a page tied to a verse range."""

    id: int | None
    page_id: str
    bbox: BBox
    start_verse_id: str | None = None
    end_verse_id: str | None = None
    status: RegionStatus = RegionStatus.OK
    region_index: int = 0
    notes: str | None = None
    remap_review_required: bool = False
    remap_score: float | None = None
    remap_margin: float | None = None
    remap_candidates: list[dict[str, Any]] = field(default_factory=list)
    remap_previous_start: str | None = None
    remap_previous_end: str | None = None
    updated_at: str | None = None

    @property
    def is_tagged(self) -> bool:
        """OCR requires both ends of the verse range."""
        return bool(self.start_verse_id and self.end_verse_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "page_id": self.page_id,
            "region_index": self.region_index,
            "bbox": self.bbox.to_dict(),
            "start_verse_id": self.start_verse_id,
            "end_verse_id": self.end_verse_id,
            "status": self.status.value,
            "notes": self.notes,
            "remap_review_required": self.remap_review_required,
            "remap_score": self.remap_score,
            "remap_margin": self.remap_margin,
            "remap_candidates": self.remap_candidates,
            "remap_previous_start": self.remap_previous_start,
            "remap_previous_end": self.remap_previous_end,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row) -> "Region":
        return cls(
            id=row["id"],
            page_id=row["page_id"],
            region_index=row["region_index"],
            bbox=BBox.from_dict(json.loads(row["bbox_json"])),
            start_verse_id=row["start_verse_id"],
            end_verse_id=row["end_verse_id"],
            status=RegionStatus(row["status"]),
            notes=row["notes"],
            remap_review_required=bool(row["remap_review_required"]),
            remap_score=row["remap_score"],
            remap_margin=row["remap_margin"],
            remap_candidates=_loads(row["remap_candidates_json"], []),
            remap_previous_start=row["remap_previous_start"],
            remap_previous_end=row["remap_previous_end"],
            updated_at=row["updated_at"],
        )


@dataclass
class OcrArtifact:
    """Latest OCR output for a region."""

    region_id: int
    text_raw: str
    ocr_mean_conf: float
    ocr_char_count: int
    coverage_ratio_est: float
    engine: str | None = None
    crop_path: str | None = None
    crop_metadata: dict[str, Any] = field(default_factory=dict)
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "region_id": self.region_id,
            "crop_path": self.crop_path,
            "crop_metadata": self.crop_metadata,
            "text_raw": self.text_raw,
            "ocr_mean_conf": self.ocr_mean_conf,
            "ocr_char_count": self.ocr_char_count,
            "coverage_ratio_est": self.coverage_ratio_est,
            "engine": self.engine,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row) -> "OcrArtifact":
        return cls(
            region_id=row["region_id"],
            crop_path=row["crop_path"],
            crop_metadata=_loads(row["crop_metadata_json"], {}),
            text_raw=row["text_raw"],
            ocr_mean_conf=row["ocr_mean_conf"],
            ocr_char_count=row["ocr_char_count"],
            coverage_ratio_est=row["coverage_ratio_est"],
            engine=row["engine"],
            updated_at=row["updated_at"],
        )


@dataclass
class OcrJob:
    """One OCR attempt record for a region."""

    id: int
    region_id: int
    status: JobStatus
    attempts: int = 0
    error: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    finished_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "region_id": self.region_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_row(cls, row) -> "OcrJob":
        return cls(
            id=row["id"],
            region_id=row["region_id"],
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            error=row["error"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
        )


@dataclass
class WitnessVerseArtifacts:
    """Artifact bag attached to a witness-verse row.

    Known keys are typed fields; anything else survives in ``extra`` so
    that writers who do not know about a key never drop it.
    """

    region_id: int | None = None
    edit_distance: int | None = None
    token_diff_ops: list[dict[str, Any]] | None = None
    replace_details: dict[str, Any] | None = None
    char_stats: dict[str, int] | None = None
    split_reason: str | None = None
    confidence_inputs: dict[str, float] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def known_keys(cls) -> set[str]:
        return {f.name for f in fields(cls)} - {"extra"}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "WitnessVerseArtifacts":
        data = dict(data or {})
        known = {key: data.pop(key) for key in cls.known_keys() if key in data}
        return cls(**known, extra=data)

    def to_dict(self) -> dict[str, Any]:
        result = dict(self.extra)
        for key in self.known_keys():
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result

    def merged(
        self, update: "WitnessVerseArtifacts", replace: tuple[str, ...] = ()
    ) -> "WitnessVerseArtifacts":
        """Overlay the keys set on ``update``; keep everything else.

        Keys named in ``replace`` are owned by the writer: they take the
        value from ``update`` even when it is None, which clears them.
        """
        combined = self.to_dict()
        for key in replace:
            combined.pop(key, None)
        combined.update(update.to_dict())
        return WitnessVerseArtifacts.from_dict(combined)


@dataclass
class WitnessVerse:
    """One witness's observed text for one verse."""

    verse_id: str
    witness_id: str
    text_raw: str = ""
    text_normalized: str = ""
    clarity_score: float = 0.0
    match_score: float = 0.0
    completeness_score: float = 0.0
    confidence: float = 0.0
    status: str = "ok"
    artifacts: WitnessVerseArtifacts = field(default_factory=WitnessVerseArtifacts)
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "verse_id": self.verse_id,
            "witness_id": self.witness_id,
            "text_raw": self.text_raw,
            "text_normalized": self.text_normalized,
            "clarity_score": self.clarity_score,
            "match_score": self.match_score,
            "completeness_score": self.completeness_score,
            "confidence": self.confidence,
            "status": self.status,
            "artifacts": self.artifacts.to_dict(),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row) -> "WitnessVerse":
        return cls(
            verse_id=row["verse_id"],
            witness_id=row["witness_id"],
            text_raw=row["text_raw"],
            text_normalized=row["text_normalized"],
            clarity_score=row["clarity_score"],
            match_score=row["match_score"],
            completeness_score=row["completeness_score"],
            confidence=row["confidence"],
            status=row["status"],
            artifacts=WitnessVerseArtifacts.from_dict(
                _loads(row["artifacts_json"], {})
            ),
            updated_at=row["updated_at"],
        )


@dataclass
class WorkingVerseText:
    """Committed reconciliation result for a verse."""

    verse_id: str
    selected_source: str
    text_surface: str
    text_normalized: str
    ensemble_confidence: float
    flags: list[str] = field(default_factory=list)
    reason_codes: list[str] = field(default_factory=list)
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "verse_id": self.verse_id,
            "selected_source": self.selected_source,
            "text_surface": self.text_surface,
            "text_normalized": self.text_normalized,
            "ensemble_confidence": self.ensemble_confidence,
            "flags": list(self.flags),
            "reason_codes": list(self.reason_codes),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row) -> "WorkingVerseText":
        return cls(
            verse_id=row["verse_id"],
            selected_source=row["selected_source"],
            text_surface=row["text_surface"],
            text_normalized=row["text_normalized"],
            ensemble_confidence=row["ensemble_confidence"],
            flags=_loads(row["flags_json"], []),
            reason_codes=_loads(row["reason_codes_json"], []),
            updated_at=row["updated_at"],
        )


@dataclass
class Blocker:
    """Why a witness may not start a stage yet."""

    stage: str
    blocker_witness_id: str
    blocker_priority: int
    reason_code: str
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "blocker_witness_id": self.blocker_witness_id,
            "blocker_priority": self.blocker_priority,
            "reason_code": self.reason_code,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Blocker":
        return cls(
            stage=data["stage"],
            blocker_witness_id=data["blocker_witness_id"],
            blocker_priority=int(data["blocker_priority"]),
            reason_code=data["reason_code"],
            detail=data.get("detail", ""),
        )


@dataclass
class RunState:
    """Per-witness, per-stage progress."""

    witness_id: str
    stages: dict[Stage, StageStatus] = field(
        default_factory=lambda: {stage: StageStatus.PENDING for stage in Stage}
    )
    blockers: list[Blocker] = field(default_factory=list)
    last_error: str | None = None
    updated_at: str | None = None

    def status_for(self, stage: Stage) -> StageStatus:
        return self.stages.get(stage, StageStatus.PENDING)

    def blockers_for(self, stage: Stage) -> list[Blocker]:
        return [b for b in self.blockers if b.stage == stage.value]

    def to_dict(self) -> dict[str, Any]:
        return {
            "witness_id": self.witness_id,
            **{f"{stage.value}_status": status.value for stage, status in self.stages.items()},
            "blockers": [b.to_dict() for b in self.blockers],
            "last_error": self.last_error,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row) -> "RunState":
        return cls(
            witness_id=row["witness_id"],
            stages={stage: StageStatus(row[f"{stage.value}_status"]) for stage in Stage},
            blockers=[Blocker.from_dict(b) for b in _loads(row["blockers_json"], [])],
            last_error=row["last_error"],
            updated_at=row["updated_at"],
        )


@dataclass
class RunAuditEntry:
    id: int
    witness_id: str
    stage: str
    status: str
    override_used: bool
    actor: str | None
    note: str | None
    blockers: list[dict[str, Any]]
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "witness_id": self.witness_id,
            "stage": self.stage,
            "status": self.status,
            "override_used": self.override_used,
            "actor": self.actor,
            "note": self.note,
            "blockers": self.blockers,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row) -> "RunAuditEntry":
        return cls(
            id=row["id"],
            witness_id=row["witness_id"],
            stage=row["stage"],
            status=row["status"],
            override_used=bool(row["override_used"]),
            actor=row["actor"],
            note=row["note"],
            blockers=_loads(row["blockers_json"], []),
            created_at=row["created_at"],
        )


@dataclass
class TaamAlignment:
    """One witness's mark placements mapped onto a target text version."""

    verse_id: str
    witness_id: str
    target_layer: str
    target_text_hash: str
    marks: list[dict[str, Any]] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)
    status: str = "ok"
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "verse_id": self.verse_id,
            "witness_id": self.witness_id,
            "target_layer": self.target_layer,
            "target_text_hash": self.target_text_hash,
            "marks": self.marks,
            "metrics": self.metrics,
            "status": self.status,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row) -> "TaamAlignment":
        return cls(
            verse_id=row["verse_id"],
            witness_id=row["witness_id"],
            target_layer=row["target_layer"],
            target_text_hash=row["target_text_hash"],
            marks=_loads(row["marks_json"], []),
            metrics=_loads(row["metrics_json"], {}),
            status=row["status"],
            updated_at=row["updated_at"],
        )


@dataclass
class TaamConsensus:
    """Weighted-vote mark placement across witnesses."""

    verse_id: str
    target_layer: str
    target_text_hash: str
    marks: list[dict[str, Any]] = field(default_factory=list)
    ensemble_confidence: float = 0.0
    flags: list[str] = field(default_factory=list)
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "verse_id": self.verse_id,
            "target_layer": self.target_layer,
            "target_text_hash": self.target_text_hash,
            "marks": self.marks,
            "ensemble_confidence": self.ensemble_confidence,
            "flags": list(self.flags),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row) -> "TaamConsensus":
        return cls(
            verse_id=row["verse_id"],
            target_layer=row["target_layer"],
            target_text_hash=row["target_text_hash"],
            marks=_loads(row["marks_json"], []),
            ensemble_confidence=row["ensemble_confidence"],
            flags=_loads(row["flags_json"], []),
            updated_at=row["updated_at"],
        )
