"""OCR job queue.

Job lifecycle::

    queued -> running -> completed
                      -> failed

Entering ``running`` increments ``attempts``; entering ``failed`` records
the error message. A job stuck in ``running`` past the staleness window
is requeued, which is the queue's only cancellation primitive. Claiming
is a single atomic ``queued -> running`` transition, so no two workers
ever execute the same job.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from targum.errors import InputValidationError
from targum.store.models import JobStatus, OcrJob, RegionStatus
from targum.store.repository import utc_before

if TYPE_CHECKING:
    from targum.store.repository import ManuscriptStore

logger = logging.getLogger(__name__)

DEFAULT_STALE_MINUTES = 20


class OcrJobQueue:
    """Durable OCR job records over the manuscript store."""

    def __init__(
        self,
        store: "ManuscriptStore",
        stale_minutes: float = DEFAULT_STALE_MINUTES,
        priority_first: bool = True,
    ):
        """
        Args:
            store: Manuscript store handle
            stale_minutes: Running jobs older than this are requeued
            priority_first: Claim jobs of higher-priority witnesses first,
                FIFO by creation time within a tier
        """
        self._store = store
        self._stale_minutes = stale_minutes
        self._priority_first = priority_first

    def create(self, region_id: int) -> OcrJob:
        """Queue a new job for a region.

        Callers must avoid queuing a region that already has a job in
        flight; ``enqueue_missing`` does this check.
        """
        job = self._store.create_ocr_job(region_id)
        logger.info(f"Created OCR job {job.id} for region {region_id}")
        return job

    def get(self, job_id: int) -> OcrJob | None:
        return self._store.get_ocr_job(job_id)

    def update_status(
        self, job_id: int, status: JobStatus | str, error: str | None = None
    ) -> OcrJob:
        status = JobStatus(status)
        job = self._store.update_ocr_job_status(job_id, status, error)
        if job is None:
            raise InputValidationError(
                "JOB_NOT_FOUND", f"OCR job not found: {job_id}", {"job_id": job_id}
            )
        if status == JobStatus.FAILED:
            logger.warning(f"OCR job {job_id} failed: {job.error}")
        else:
            logger.debug(f"OCR job {job_id} -> {status.value}")
        return job

    def claim_next(self, witness_id: str | None = None) -> OcrJob | None:
        """Claim the next queued job, or None when the queue is empty.

        With ``witness_id`` only that witness's jobs are claimed.
        """
        job = self._store.claim_next_ocr_job(
            priority_first=self._priority_first, witness_id=witness_id
        )
        if job is not None:
            logger.info(f"Claimed OCR job {job.id} (attempt {job.attempts})")
        return job

    # Worker-pool source protocol
    def claim(self) -> OcrJob | None:
        return self.claim_next()

    def fail(self, job: OcrJob, error: BaseException) -> None:
        self.update_status(job.id, JobStatus.FAILED, str(error) or type(error).__name__)

    def for_witness(self, witness_id: str) -> "WitnessJobSource":
        """Pool source that only claims jobs for one witness."""
        return WitnessJobSource(self, witness_id)

    def requeue_stale(self, stale_minutes: float | None = None) -> int:
        """Requeue running jobs whose start is older than the window."""
        minutes = self._stale_minutes if stale_minutes is None else stale_minutes
        requeued = self._store.requeue_stale_ocr_jobs(utc_before(minutes))
        if requeued:
            logger.warning(
                f"Requeued {len(requeued)} stale OCR job(s) older than {minutes} min: "
                f"{requeued[:10]}"
            )
        return len(requeued)

    def retry(self, job_id: int) -> OcrJob:
        """Put a failed job back in the queue."""
        job = self.get(job_id)
        if job is None:
            raise InputValidationError(
                "JOB_NOT_FOUND", f"OCR job not found: {job_id}", {"job_id": job_id}
            )
        if job.status != JobStatus.FAILED:
            raise InputValidationError(
                "JOB_NOT_RETRYABLE",
                f"Only failed jobs can be retried (job {job_id} is {job.status.value})",
            )
        return self.update_status(job_id, JobStatus.QUEUED)

    def list(
        self,
        status: JobStatus | str | None = None,
        witness_id: str | None = None,
        limit: int = 200,
    ) -> list[OcrJob]:
        status = JobStatus(status) if status is not None else None
        return self._store.list_ocr_jobs(status=status, witness_id=witness_id, limit=limit)

    def counts(self, witness_id: str | None = None) -> dict[str, int]:
        return self._store.count_ocr_jobs(witness_id)

    def enqueue_missing(
        self, witness_id: str | None = None, retry_failed: bool = True
    ) -> int:
        """Queue one job per region that still needs OCR.

        Walks witnesses in priority order. A region is skipped when it is
        failed or unavailable, untagged, already has an OCR artifact, has
        a queued or running latest job, or (unless ``retry_failed``) has a
        failed latest job.

        Returns:
            Number of jobs created
        """
        witnesses = self._store.list_witnesses()
        if witness_id is not None:
            witnesses = [w for w in witnesses if w.id == witness_id]

        queued = 0
        for witness in witnesses:
            for region in self._store.list_regions(witness_id=witness.id):
                if region.status in (RegionStatus.FAILED, RegionStatus.UNAVAILABLE):
                    continue
                if not region.is_tagged:
                    continue
                if self._store.get_ocr_artifact(region.id) is not None:
                    continue
                latest = self._store.latest_ocr_job_for_region(region.id)
                if latest is not None:
                    if latest.status in (JobStatus.QUEUED, JobStatus.RUNNING):
                        continue
                    if latest.status == JobStatus.FAILED and not retry_failed:
                        continue
                self._store.create_ocr_job(region.id)
                queued += 1

        if queued:
            logger.info(f"Enqueued {queued} missing OCR job(s)")
        return queued


class WitnessJobSource:
    """Worker-pool source over one witness's queued jobs.

    Lets a caller that has cleared one witness through the priority gate
    drain that witness without touching jobs queued for any other.
    """

    def __init__(self, queue: OcrJobQueue, witness_id: str):
        self.queue = queue
        self.witness_id = witness_id

    def claim(self) -> OcrJob | None:
        return self.queue.claim_next(self.witness_id)

    def fail(self, job: OcrJob, error: BaseException) -> None:
        self.queue.fail(job, error)
