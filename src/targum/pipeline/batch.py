"""Resumable batch run over every witness.

Stages run in a fixed order and are checkpointed to
``<run_dir>/checkpoint.json`` as they finish, so an interrupted run can
resume where it stopped. Events are appended as JSON lines to
``<run_dir>/logs/batch.log``.

    calibration     per-witness metrics and block reasons (no mutation)
    ocr             gate -> enqueue missing -> witness pool -> mark stage
    split           gate -> split regions with OCR output -> mark stage
    confidence      gate -> confidence + cascade for cleared witnesses' verses
    remap           remap regions and backfill reassigned ones
    taam_align      taam alignment for touched verses
    taam_consensus  taam consensus for touched verses

Each witness's OCR and split stages are marked completed or failed from
that witness's own counts under the stop rule, so a failing witness keeps
lower tiers blocked. A witness failure or an unexpected stage error
marks the checkpoint stage failed and halts the run. The stop rule is
also checked on cumulative counts at every stage boundary. Halts are
reported with their reasons and never raise; unfinished stages rerun on
resume.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from targum.cascade import CascadeThresholds, recompute_cascade_for_verse
from targum.confidence import recompute_source_confidence
from targum.errors import TargumError
from targum.gates import PriorityGate
from targum.jobs.ocr_worker import OcrJobHandler
from targum.jobs.queue import OcrJobQueue
from targum.jobs.stop_rule import (
    BatchCounts,
    StopDecision,
    calibration_block_reasons,
    evaluate_stop_rule,
)
from targum.jobs.worker_pool import ListSource, WorkerPool
from targum.ocr.executor import OcrConfig
from targum.pipeline.split import split_region_into_witness_verses
from targum.remap import RemapConfig, remap_witness
from targum.store.models import Stage, Witness
from targum.store.repository import utc_now
from targum.taamim import TaamConfig, align_taamim_for_verse, recompute_taam_consensus
from targum.verse_id import sort_verse_ids

if TYPE_CHECKING:
    from targum.config import Settings
    from targum.ocr.executor import OcrExecutor
    from targum.ocr.images import ImageCropper
    from targum.patchlog import PatchLog
    from targum.store.repository import ManuscriptStore
    from targum.telemetry.throttle import ThrottleController

logger = logging.getLogger(__name__)

BATCH_STAGES = [
    "calibration",
    "ocr",
    "split",
    "confidence",
    "remap",
    "taam_align",
    "taam_consensus",
]

STAGE_PENDING = "pending"
STAGE_RUNNING = "running"
STAGE_COMPLETED = "completed"
STAGE_DRY_RUN = "dry_run"
STAGE_FAILED = "failed"

CHECKPOINT_FILE = "checkpoint.json"
REPORT_FILE = "report.json"


@dataclass
class WitnessMetrics:
    """Calibration metrics for one witness."""

    witness_id: str
    priority: int | None
    regions: int = 0
    ocr_artifacts: int = 0
    ocr_mean_confidence: float = 0.0
    ocr_coverage_estimate: float = 0.0
    counts: BatchCounts = field(default_factory=BatchCounts)
    block_reasons: list[str] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return bool(self.block_reasons)

    def to_dict(self) -> dict[str, Any]:
        return {
            "witness_id": self.witness_id,
            "priority": self.priority,
            "regions": self.regions,
            "ocr_artifacts": self.ocr_artifacts,
            "ocr_mean_confidence": self.ocr_mean_confidence,
            "ocr_coverage_estimate": self.ocr_coverage_estimate,
            "ocr_failure_rate": self.counts.ocr_failure_rate,
            "split_partial_rate": self.counts.split_partial_rate,
            "remap_ambiguous_rate": self.counts.remap_ambiguous_rate,
            "counts": self.counts.to_dict(),
            "blocked": self.blocked,
            "block_reasons": list(self.block_reasons),
        }


@dataclass
class Checkpoint:
    """Persisted progress of a batch run."""

    started_at: str
    stages: dict[str, dict[str, Any]] = field(default_factory=dict)
    counts: BatchCounts = field(default_factory=BatchCounts)
    touched_verse_ids: list[str] = field(default_factory=list)
    witness_metrics: list[dict[str, Any]] = field(default_factory=list)
    gate_decisions: list[dict[str, Any]] = field(default_factory=list)
    halted: bool = False
    halt_reasons: list[str] = field(default_factory=list)
    updated_at: str | None = None

    @classmethod
    def new(cls) -> "Checkpoint":
        return cls(
            started_at=utc_now(),
            stages={name: {"status": STAGE_PENDING} for name in BATCH_STAGES},
        )

    def status_of(self, stage: str) -> str:
        return self.stages.get(stage, {}).get("status", STAGE_PENDING)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "stages": self.stages,
            "counts": self.counts.to_dict(),
            "touched_verse_ids": list(self.touched_verse_ids),
            "witness_metrics": self.witness_metrics,
            "gate_decisions": self.gate_decisions,
            "halted": self.halted,
            "halt_reasons": list(self.halt_reasons),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Checkpoint":
        stages = {name: {"status": STAGE_PENDING} for name in BATCH_STAGES}
        stages.update(data.get("stages", {}))
        return cls(
            started_at=data.get("started_at") or utc_now(),
            stages=stages,
            counts=BatchCounts.from_dict(data.get("counts", {})),
            touched_verse_ids=list(data.get("touched_verse_ids", [])),
            witness_metrics=list(data.get("witness_metrics", [])),
            gate_decisions=list(data.get("gate_decisions", [])),
            halted=bool(data.get("halted", False)),
            halt_reasons=list(data.get("halt_reasons", [])),
            updated_at=data.get("updated_at"),
        )

    @classmethod
    def load(cls, path: Path) -> "Checkpoint":
        return cls.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def save(self, path: Path) -> None:
        self.updated_at = utc_now()
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(self.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, path)


@dataclass
class BatchReport:
    run_dir: str
    checkpoint: Checkpoint
    decision: StopDecision
    dry_run: bool = False

    @property
    def halted(self) -> bool:
        return self.checkpoint.halted

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_dir": self.run_dir,
            "dry_run": self.dry_run,
            "halted": self.halted,
            "stop": self.decision.to_dict(),
            "checkpoint": self.checkpoint.to_dict(),
        }


class BatchRunner:
    """Runs the staged pipeline over all witnesses, in priority order."""

    def __init__(
        self,
        store: "ManuscriptStore",
        settings: "Settings",
        run_dir: Path | str,
        *,
        executor: "OcrExecutor",
        cropper: "ImageCropper",
        throttle: "ThrottleController | None" = None,
        patch_log: "PatchLog | None" = None,
        admin_override: bool = False,
        enforce_stage_order: bool = False,
        actor: str = "batch",
    ):
        self._store = store
        self._settings = settings
        self.run_dir = Path(run_dir)
        self._executor = executor
        self._cropper = cropper
        self._throttle = throttle
        self._patch_log = patch_log
        self._admin_override = admin_override
        self._actor = actor
        self._gate = PriorityGate(store, enforce_stage_order=enforce_stage_order)
        self._queue = OcrJobQueue(store, stale_minutes=settings.job_stale_minutes)
        self._thresholds = CascadeThresholds.from_settings(settings)
        self._checkpoint = Checkpoint.new()
        self._counts_lock = threading.Lock()
        self._dry_run = False

    @property
    def checkpoint_path(self) -> Path:
        return self.run_dir / CHECKPOINT_FILE

    @property
    def log_path(self) -> Path:
        return self.run_dir / "logs" / "batch.log"

    def _log_event(self, event: str, **data: Any) -> None:
        record = {"ts": utc_now(), "event": event, **data}
        with self.log_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")

    def _save(self) -> None:
        self._checkpoint.save(self.checkpoint_path)

    def _witnesses(self) -> list[Witness]:
        return self._store.list_witnesses()

    def _stop_decision(self) -> StopDecision:
        return evaluate_stop_rule(
            self._checkpoint.counts,
            self._settings.max_ocr_failure_rate,
            self._settings.max_split_partial_rate,
        )

    def _touch(self, verse_ids: list[str]) -> None:
        with self._counts_lock:
            merged = set(self._checkpoint.touched_verse_ids) | set(verse_ids)
            self._checkpoint.touched_verse_ids = sort_verse_ids(list(merged))

    def _count(self, counts: BatchCounts) -> None:
        with self._counts_lock:
            self._checkpoint.counts = self._checkpoint.counts.add(counts)

    def _allowed(self, witness: Witness, stage: Stage) -> bool:
        evaluation = self._gate.evaluate(
            witness.id, stage, admin_override=self._admin_override, actor=self._actor
        )
        self._checkpoint.gate_decisions.append(evaluation.to_dict())
        self._log_event("gate", **evaluation.to_dict())
        return evaluation.allowed

    def _finish_witness(
        self, witness: Witness, stage: Stage, counts: BatchCounts
    ) -> str | None:
        """Mark ``stage`` for one witness from its own counts.

        Returns the failure message when the stop rule trips for this
        witness, in which case the stage is recorded as failed.
        """
        decision = evaluate_stop_rule(
            counts,
            self._settings.max_ocr_failure_rate,
            self._settings.max_split_partial_rate,
        )
        if decision.stop:
            error = "; ".join(decision.reasons)
            self._fail_witness(witness, stage, error)
            return error
        if witness.has_priority:
            self._gate.mark_stage_completed(witness.id, stage, actor=self._actor)
        return None

    def _fail_witness(self, witness: Witness, stage: Stage, error: str) -> dict[str, str]:
        if witness.has_priority:
            self._gate.mark_stage_failed(witness.id, stage, error, actor=self._actor)
        else:
            logger.error(f"Stage {stage.value} failed for {witness.id}: {error}")
        self._log_event("witness_failed", witness_id=witness.id, stage=stage.value, error=error)
        return {"witness_id": witness.id, "error": error}

    async def run(self, resume: bool = False, dry_run: bool = False) -> BatchReport:
        """Run (or resume) the batch; returns once finished or halted."""
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._dry_run = dry_run

        if resume and self.checkpoint_path.exists():
            self._checkpoint = Checkpoint.load(self.checkpoint_path)
            self._checkpoint.halted = False
            self._checkpoint.halt_reasons = []
            logger.info(f"Resuming batch from {self.checkpoint_path}")
        else:
            self._checkpoint = Checkpoint.new()
        self._log_event("run_start", resume=resume, dry_run=dry_run)

        handlers = {
            "calibration": self._stage_calibration,
            "ocr": self._stage_ocr,
            "split": self._stage_split,
            "confidence": self._stage_confidence,
            "remap": self._stage_remap,
            "taam_align": self._stage_taam_align,
            "taam_consensus": self._stage_taam_consensus,
        }

        decision = self._stop_decision()
        for stage in BATCH_STAGES:
            if resume and self._checkpoint.status_of(stage) == STAGE_COMPLETED:
                self._log_event("stage_skip", stage=stage, reason="resume completed")
                continue

            if dry_run:
                self._checkpoint.stages[stage] = {"status": STAGE_DRY_RUN, "at": utc_now()}
                self._log_event("stage_dry_run", stage=stage)
                continue

            self._checkpoint.stages[stage] = {"status": STAGE_RUNNING, "started_at": utc_now()}
            self._save()
            self._log_event("stage_start", stage=stage)
            logger.info(f"Batch stage {stage} starting")

            try:
                details = await handlers[stage]()
            except Exception as e:
                logger.exception(f"Batch stage {stage} failed: {e}")
                self._checkpoint.stages[stage].update(
                    status=STAGE_FAILED, finished_at=utc_now(), error=str(e)
                )
                self._checkpoint.halted = True
                self._checkpoint.halt_reasons = [f"Stage {stage} failed: {e}"]
                self._save()
                self._log_event("run_halted", stage=stage, error=str(e))
                break

            failures = [
                f"{stage} failed for {f['witness_id']}: {f['error']}"
                for f in details.get("failed", [])
            ]
            self._checkpoint.stages[stage].update(
                status=STAGE_FAILED if failures else STAGE_COMPLETED,
                finished_at=utc_now(),
                details=details,
            )
            self._log_event("stage_done", stage=stage, details=details)

            decision = self._stop_decision()
            if failures or decision.stop:
                self._checkpoint.halted = True
                self._checkpoint.halt_reasons = failures + list(decision.reasons)
                self._save()
                self._log_event(
                    "run_halted", stage=stage, failures=failures, **decision.to_dict()
                )
                logger.warning(
                    f"Batch halted after {stage}: {'; '.join(self._checkpoint.halt_reasons)}"
                )
                break
            self._save()

        if dry_run or not self._checkpoint.halted:
            self._save()
        report = BatchReport(
            run_dir=str(self.run_dir),
            checkpoint=self._checkpoint,
            decision=decision,
            dry_run=dry_run,
        )
        (self.run_dir / REPORT_FILE).write_text(
            json.dumps(report.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8"
        )
        self._log_event("run_end", halted=report.halted)
        return report

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def witness_metrics(self, witness: Witness) -> WitnessMetrics:
        regions = self._store.list_regions(witness_id=witness.id)
        artifacts = [self._store.get_ocr_artifact(r.id) for r in regions]
        artifacts = [a for a in artifacts if a is not None]
        rows = self._store.list_witness_verses_for_witness(witness.id)
        jobs = self._queue.counts(witness.id)

        counts = BatchCounts(
            ocr_completed=jobs.get("completed", 0),
            ocr_failed=jobs.get("failed", 0),
            split_success=sum(1 for r in rows if r.status != "partial"),
            split_partial=sum(1 for r in rows if r.status == "partial"),
            remap_total=len(regions),
            remap_ambiguous=sum(1 for r in regions if r.remap_review_required),
        )
        metrics = WitnessMetrics(
            witness_id=witness.id,
            priority=witness.priority,
            regions=len(regions),
            ocr_artifacts=len(artifacts),
            counts=counts,
        )
        if artifacts:
            metrics.ocr_mean_confidence = sum(a.ocr_mean_conf for a in artifacts) / len(artifacts)
            metrics.ocr_coverage_estimate = sum(
                a.coverage_ratio_est for a in artifacts
            ) / len(artifacts)
        metrics.block_reasons = calibration_block_reasons(
            counts,
            self._settings.max_ocr_failure_rate,
            self._settings.max_split_partial_rate,
            self._settings.max_remap_ambiguous_rate,
        )
        return metrics

    async def _stage_calibration(self) -> dict[str, Any]:
        metrics = [self.witness_metrics(w) for w in self._witnesses()]
        self._checkpoint.witness_metrics = [m.to_dict() for m in metrics]
        for m in metrics:
            if m.blocked:
                logger.warning(f"Calibration: {m.witness_id} flagged: {'; '.join(m.block_reasons)}")
        return {
            "witnesses": len(metrics),
            "flagged": [m.witness_id for m in metrics if m.blocked],
        }

    async def _stage_ocr(self) -> dict[str, Any]:
        handler = OcrJobHandler(
            self._store,
            self._queue,
            self._executor,
            self._cropper,
            Path(self._settings.data_dir) / "crops",
            OcrConfig.from_settings(self._settings),
        )
        self._queue.requeue_stale()
        processed, blocked, failed = [], [], []
        for witness in self._witnesses():
            if not self._allowed(witness, Stage.OCR):
                blocked.append(witness.id)
                continue
            try:
                queued = self._queue.enqueue_missing(witness.id)
                pool = WorkerPool(
                    "ocr",
                    self._queue.for_witness(witness.id),
                    handler,
                    max_workers=self._settings.ocr_workers,
                    throttle=self._throttle,
                )
                stats = await pool.run()
            except Exception as e:
                failed.append(self._fail_witness(witness, Stage.OCR, str(e)))
                continue
            counts = BatchCounts(ocr_completed=stats.completed, ocr_failed=stats.failed)
            self._count(counts)
            reason = self._finish_witness(witness, Stage.OCR, counts)
            if reason is not None:
                failed.append({"witness_id": witness.id, "error": reason})
            processed.append({"witness_id": witness.id, "queued": queued, **stats.to_dict()})
        return {"processed": processed, "blocked": blocked, "failed": failed}

    async def _stage_split(self) -> dict[str, Any]:
        processed, blocked, failed = [], [], []
        for witness in self._witnesses():
            if not self._allowed(witness, Stage.SPLIT):
                blocked.append(witness.id)
                continue
            success = partial = 0
            try:
                for region in self._store.list_regions(witness_id=witness.id):
                    if not region.is_tagged or self._store.get_ocr_artifact(region.id) is None:
                        continue
                    try:
                        outcome = split_region_into_witness_verses(self._store, region.id)
                    except TargumError as e:
                        logger.warning(f"Split skipped region {region.id}: {e}")
                        partial += 1
                        continue
                    self._touch(outcome.verse_ids)
                    if outcome.partial:
                        partial += 1
                    else:
                        success += 1
            except Exception as e:
                self._count(BatchCounts(split_success=success, split_partial=partial))
                failed.append(self._fail_witness(witness, Stage.SPLIT, str(e)))
                continue
            counts = BatchCounts(split_success=success, split_partial=partial)
            self._count(counts)
            reason = self._finish_witness(witness, Stage.SPLIT, counts)
            if reason is not None:
                failed.append({"witness_id": witness.id, "error": reason})
            processed.append({"witness_id": witness.id, "success": success, "partial": partial})
        return {"processed": processed, "blocked": blocked, "failed": failed}

    async def _stage_confidence(self) -> dict[str, Any]:
        touched = set(self._checkpoint.touched_verse_ids)
        recomputed: set[str] = set()
        processed, blocked, failed = [], [], []
        for witness in self._witnesses():
            if not self._allowed(witness, Stage.CONFIDENCE):
                blocked.append(witness.id)
                continue
            rows = self._store.list_witness_verses_for_witness(witness.id)
            verse_ids = sort_verse_ids(
                list({r.verse_id for r in rows if r.verse_id in touched} - recomputed)
            )
            try:
                for verse_id in verse_ids:
                    recompute_source_confidence(self._store, verse_id)
                    recompute_cascade_for_verse(
                        self._store, verse_id, self._thresholds, self._patch_log
                    )
                    recomputed.add(verse_id)
            except Exception as e:
                failed.append(self._fail_witness(witness, Stage.CONFIDENCE, str(e)))
                continue
            if witness.has_priority:
                self._gate.mark_stage_completed(witness.id, Stage.CONFIDENCE, actor=self._actor)
            processed.append({"witness_id": witness.id, "verses": len(verse_ids)})
        return {
            "verses": len(recomputed),
            "processed": processed,
            "blocked": blocked,
            "failed": failed,
        }

    async def _stage_remap(self) -> dict[str, Any]:
        config = RemapConfig.from_settings(self._settings)
        summaries: list[dict[str, Any]] = []

        def handle(witness_id: str) -> None:
            summary = remap_witness(
                self._store,
                witness_id,
                config,
                thresholds=self._thresholds,
                patch_log=self._patch_log,
            )
            summaries.append(summary.to_dict())
            self._touch(summary.touched_verse_ids)
            self._count(BatchCounts(remap_total=summary.total, remap_ambiguous=summary.ambiguous))

        source = ListSource(w.id for w in self._witnesses())
        stats = await WorkerPool("remap", source, handle, throttle=self._throttle).run()
        return {
            "witnesses": [
                {k: s[k] for k in ("witness_id", "total", "reassigned", "ambiguous")}
                for s in summaries
            ],
            **stats.to_dict(),
        }

    async def _stage_taam_align(self) -> dict[str, Any]:
        def handle(verse_id: str) -> None:
            align_taamim_for_verse(self._store, verse_id)

        source = ListSource(self._checkpoint.touched_verse_ids)
        stats = await WorkerPool("taam_align", source, handle, throttle=self._throttle).run()
        return stats.to_dict()

    async def _stage_taam_consensus(self) -> dict[str, Any]:
        config = TaamConfig.from_settings(self._settings)
        flagged: list[str] = []

        def handle(verse_id: str) -> None:
            result = recompute_taam_consensus(self._store, verse_id, config=config)
            if result.consensus.flags:
                flagged.append(verse_id)

        source = ListSource(self._checkpoint.touched_verse_ids)
        stats = await WorkerPool("taam_consensus", source, handle, throttle=self._throttle).run()
        return {**stats.to_dict(), "flagged_verses": len(flagged)}

