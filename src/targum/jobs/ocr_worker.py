"""OCR job handler: region crop -> OCR call -> artifact upsert.

Runs inside a worker-pool thread. The handler owns the job row for the
duration of the call: it always leaves the job ``completed`` or
``failed`` (with the last error message), and never raises for a job
level failure, so one bad region cannot stop its neighbours.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from targum.errors import TargumError
from targum.ocr.executor import OcrConfig, OcrExecutor, run_ocr_with_retry
from targum.ocr.images import ImageCropper, clamp_bbox_to_page
from targum.store.models import JobStatus, OcrArtifact, OcrJob

if TYPE_CHECKING:
    from targum.jobs.queue import OcrJobQueue
    from targum.store.repository import ManuscriptStore

logger = logging.getLogger(__name__)

REGION_MISSING_MESSAGE = "Region missing or untagged."
PAGE_MISSING_MESSAGE = "Page missing."
CLAMP_NOTE = "bbox auto-clamped"


class OcrJobHandler:
    """Executes one claimed OCR job end to end."""

    def __init__(
        self,
        store: "ManuscriptStore",
        queue: "OcrJobQueue",
        executor: OcrExecutor,
        cropper: ImageCropper,
        crops_dir: Path | str,
        ocr_config: OcrConfig | None = None,
        auto_clamp_bbox: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._queue = queue
        self._executor = executor
        self._cropper = cropper
        self._crops_dir = Path(crops_dir)
        self._config = ocr_config or OcrConfig()
        self._auto_clamp = auto_clamp_bbox
        self._sleep = sleep

    def __call__(self, job: OcrJob) -> bool:
        return self.handle(job)

    def handle(self, job: OcrJob) -> bool:
        """Run the job; returns True when it completed."""
        region = self._store.get_region(job.region_id)
        if region is None or not region.is_tagged:
            self._queue.update_status(job.id, JobStatus.FAILED, REGION_MISSING_MESSAGE)
            return False

        page = self._store.get_page(region.page_id)
        if page is None:
            self._queue.update_status(job.id, JobStatus.FAILED, PAGE_MISSING_MESSAGE)
            return False

        name = f"region_{region.id}"
        try:
            try:
                crop = self._cropper.crop(page.image_path, region.bbox, self._crops_dir, name)
            except TargumError as e:
                if e.code != "BBOX_OUT_OF_BOUNDS" or not self._auto_clamp:
                    raise
                width, height = self._cropper.page_size(page.image_path)
                clamped = clamp_bbox_to_page(region.bbox, width, height)
                if clamped is None:
                    raise
                logger.warning(
                    f"Region {region.id} bbox out of bounds for {width}x{height} page, "
                    f"clamping and retrying once"
                )
                region = self._store.update_region_bbox(region.id, clamped, note=CLAMP_NOTE)
                crop = self._cropper.crop(page.image_path, region.bbox, self._crops_dir, name)

            result = run_ocr_with_retry(
                self._executor,
                crop.crop_path,
                max_retries=self._config.max_retries,
                backoff_seconds=self._config.backoff_seconds,
                sleep=self._sleep,
            )
        except TargumError as e:
            logger.error(f"OCR job {job.id} for region {region.id} failed: {e}")
            self._queue.update_status(job.id, JobStatus.FAILED, e.message)
            return False

        self._store.upsert_ocr_artifact(
            OcrArtifact(
                region_id=region.id,
                text_raw=result.text_raw,
                ocr_mean_conf=result.mean_confidence,
                ocr_char_count=result.char_count or len(result.text_raw),
                coverage_ratio_est=result.coverage_estimate,
                engine=result.engine,
                crop_path=crop.crop_path,
                crop_metadata=crop.metadata,
            )
        )
        self._queue.update_status(job.id, JobStatus.COMPLETED)
        logger.info(
            f"OCR job {job.id} completed: region {region.id}, "
            f"{len(result.text_raw)} chars, conf {result.mean_confidence:.2f}"
        )
        return True
