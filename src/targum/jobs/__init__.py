"""OCR job queue, stage worker pool, and the batch stop rule."""

from targum.jobs.ocr_worker import OcrJobHandler
from targum.jobs.queue import OcrJobQueue, WitnessJobSource
from targum.jobs.stop_rule import (
    BatchCounts,
    StopDecision,
    calibration_block_reasons,
    evaluate_stop_rule,
)
from targum.jobs.worker_pool import ListSource, PoolStats, WorkerPool, run_pool

__all__ = [
    "BatchCounts",
    "ListSource",
    "OcrJobHandler",
    "OcrJobQueue",
    "PoolStats",
    "StopDecision",
    "WitnessJobSource",
    "WorkerPool",
    "calibration_block_reasons",
    "evaluate_stop_rule",
    "run_pool",
]
