"""Manuscript store: the single read/write surface over SQLite.

A ``ManuscriptStore`` is an explicit handle. Open one per process (or per
test), pass it to every component that needs persistence, and close it
when done. All public methods are serialized on a re-entrant lock so the
handle can be shared between the event loop and executor threads; each
mutation is an individually atomic single-row upsert.
"""

from __future__ import annotations

import functools
import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

from targum.db.connection import get_connection
from targum.errors import InputValidationError
from targum.store.models import (
    BBox,
    Blocker,
    JobStatus,
    OcrArtifact,
    OcrJob,
    Page,
    Region,
    RegionStatus,
    RunAuditEntry,
    RunState,
    Stage,
    StageStatus,
    TaamAlignment,
    TaamConsensus,
    Witness,
    WitnessVerse,
    WitnessVerseArtifacts,
    WorkingVerseText,
    dumps,
)
from targum.store.schema import SCHEMA_SQL
from targum.verse_id import is_verse_in_range, parse_verse_id, sort_verse_ids

if TYPE_CHECKING:
    from targum.config import Settings

logger = logging.getLogger(__name__)


def utc_now() -> str:
    """Current UTC time as a sortable ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def utc_before(minutes: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat(
        timespec="microseconds"
    )


def _synchronized(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper


class ManuscriptStore:
    """Persistent store handle over a SQLite database."""

    def __init__(self, conn: sqlite3.Connection):
        """Wrap an open connection. Prefer ``ManuscriptStore.open``."""
        self._conn = conn
        self._lock = threading.RLock()
        self._closed = False

    @classmethod
    def open(cls, target: "Settings | Path | str") -> "ManuscriptStore":
        """Open (and initialize) the store at a path or ``Settings.db_path``."""
        db_path = getattr(target, "db_path", target)
        store = cls(get_connection(db_path))
        store.init_schema()
        logger.debug(f"Opened manuscript store at {db_path}")
        return store

    def close(self) -> None:
        with self._lock:
            if not self._closed:
                self._conn.close()
                self._closed = True

    def __enter__(self) -> "ManuscriptStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def connection(self) -> sqlite3.Connection:
        """Raw connection, for collaborators that own their own tables."""
        return self._conn

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @_synchronized
    def init_schema(self) -> None:
        self._conn.executescript(SCHEMA_SQL)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Verses (digital baseline)
    # ------------------------------------------------------------------

    @_synchronized
    def upsert_verse(self, verse_id: str, text: str) -> None:
        ref = parse_verse_id(verse_id)
        self._conn.execute(
            """
            INSERT INTO verses (verse_id, book, chapter, verse, text)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(verse_id) DO UPDATE SET text = excluded.text
            """,
            (verse_id, ref.book, ref.chapter, ref.verse, text),
        )
        self._conn.commit()

    @_synchronized
    def get_verse_text(self, verse_id: str) -> str | None:
        row = self._conn.execute(
            "SELECT text FROM verses WHERE verse_id = ?", (verse_id,)
        ).fetchone()
        return row["text"] if row else None

    @_synchronized
    def list_verse_ids(
        self, start: str | None = None, end: str | None = None
    ) -> list[str]:
        """Verse ids in canonical order, optionally within an inclusive range."""
        rows = self._conn.execute("SELECT verse_id FROM verses").fetchall()
        verse_ids = [r["verse_id"] for r in rows]
        if start or end:
            verse_ids = [v for v in verse_ids if is_verse_in_range(v, start, end)]
        return sort_verse_ids(verse_ids)

    @_synchronized
    def get_baseline_texts(self, verse_ids: Iterable[str]) -> dict[str, str]:
        ids = list(verse_ids)
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = self._conn.execute(
            f"SELECT verse_id, text FROM verses WHERE verse_id IN ({placeholders})",
            ids,
        ).fetchall()
        return {r["verse_id"]: r["text"] for r in rows}

    # ------------------------------------------------------------------
    # Witnesses and pages
    # ------------------------------------------------------------------

    @_synchronized
    def upsert_witness(self, witness: Witness) -> Witness:
        self._conn.execute(
            """
            INSERT INTO witnesses (id, name, type, authority_weight, priority,
                                   source_link, metadata_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                type = excluded.type,
                authority_weight = excluded.authority_weight,
                priority = excluded.priority,
                source_link = excluded.source_link,
                metadata_json = excluded.metadata_json
            """,
            (
                witness.id,
                witness.name,
                witness.type,
                witness.authority_weight,
                witness.priority,
                witness.source_link,
                dumps(witness.metadata),
            ),
        )
        self._conn.commit()
        return witness

    @_synchronized
    def get_witness(self, witness_id: str) -> Witness | None:
        row = self._conn.execute(
            "SELECT * FROM witnesses WHERE id = ?", (witness_id,)
        ).fetchone()
        return Witness.from_row(row) if row else None

    @_synchronized
    def list_witnesses(self) -> list[Witness]:
        rows = self._conn.execute(
            """
            SELECT * FROM witnesses
            ORDER BY CASE WHEN priority IS NULL OR priority <= 0 THEN 1 ELSE 0 END,
                     priority, id
            """
        ).fetchall()
        return [Witness.from_row(r) for r in rows]

    def list_priority_witnesses(self) -> list[Witness]:
        """Witnesses with an assigned tier, highest authority (lowest tier) first."""
        return [w for w in self.list_witnesses() if w.has_priority]

    @_synchronized
    def upsert_page(self, page: Page) -> Page:
        self._conn.execute(
            """
            INSERT INTO pages (id, witness_id, page_index, image_path, width,
                               height, status)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                page_index = excluded.page_index,
                image_path = excluded.image_path,
                width = excluded.width,
                height = excluded.height,
                status = excluded.status
            """,
            (
                page.id,
                page.witness_id,
                page.page_index,
                page.image_path,
                page.width,
                page.height,
                page.status,
            ),
        )
        self._conn.commit()
        return page

    @_synchronized
    def get_page(self, page_id: str) -> Page | None:
        row = self._conn.execute(
            "SELECT * FROM pages WHERE id = ?", (page_id,)
        ).fetchone()
        return Page.from_row(row) if row else None

    @_synchronized
    def list_pages(self, witness_id: str) -> list[Page]:
        rows = self._conn.execute(
            "SELECT * FROM pages WHERE witness_id = ? ORDER BY page_index",
            (witness_id,),
        ).fetchall()
        return [Page.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Regions
    # ------------------------------------------------------------------

    @_synchronized
    def create_region(
        self,
        page_id: str,
        bbox: BBox,
        start_verse_id: str | None = None,
        end_verse_id: str | None = None,
        region_index: int = 0,
        status: RegionStatus = RegionStatus.OK,
    ) -> Region:
        if self.get_page(page_id) is None:
            raise InputValidationError(
                "PAGE_NOT_FOUND", f"Page not found: {page_id}", {"page_id": page_id}
            )
        for verse_id in (start_verse_id, end_verse_id):
            if verse_id:
                parse_verse_id(verse_id)
        cursor = self._conn.execute(
            """
            INSERT INTO page_regions (page_id, region_index, bbox_json,
                                      start_verse_id, end_verse_id, status,
                                      updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                page_id,
                region_index,
                dumps(bbox.to_dict()),
                start_verse_id,
                end_verse_id,
                status.value,
                utc_now(),
            ),
        )
        region_id = cursor.fetchone()[0]
        self._conn.commit()
        return self.get_region(region_id)

    @_synchronized
    def get_region(self, region_id: int) -> Region | None:
        row = self._conn.execute(
            "SELECT * FROM page_regions WHERE id = ?", (region_id,)
        ).fetchone()
        return Region.from_row(row) if row else None

    @_synchronized
    def list_regions(
        self, page_id: str | None = None, witness_id: str | None = None
    ) -> list[Region]:
        """Regions in page then region order, filtered by page or witness."""
        query = """
            SELECT r.* FROM page_regions r
            JOIN pages p ON p.id = r.page_id
            WHERE 1 = 1
        """
        params: list[Any] = []
        if page_id is not None:
            query += " AND r.page_id = ?"
            params.append(page_id)
        if witness_id is not None:
            query += " AND p.witness_id = ?"
            params.append(witness_id)
        query += " ORDER BY p.witness_id, p.page_index, r.region_index, r.id"
        rows = self._conn.execute(query, params).fetchall()
        return [Region.from_row(r) for r in rows]

    @_synchronized
    def witness_id_for_region(self, region_id: int) -> str | None:
        row = self._conn.execute(
            """
            SELECT p.witness_id FROM page_regions r
            JOIN pages p ON p.id = r.page_id
            WHERE r.id = ?
            """,
            (region_id,),
        ).fetchone()
        return row["witness_id"] if row else None

    @_synchronized
    def update_region_tagging(
        self, region_id: int, start_verse_id: str, end_verse_id: str
    ) -> Region:
        parse_verse_id(start_verse_id)
        parse_verse_id(end_verse_id)
        self._require_region(region_id)
        self._conn.execute(
            """
            UPDATE page_regions
            SET start_verse_id = ?, end_verse_id = ?, updated_at = ?
            WHERE id = ?
            """,
            (start_verse_id, end_verse_id, utc_now(), region_id),
        )
        self._conn.commit()
        return self.get_region(region_id)

    @_synchronized
    def update_region_bbox(
        self, region_id: int, bbox: BBox, note: str | None = None
    ) -> Region:
        region = self._require_region(region_id)
        notes = _append_note(region.notes, note)
        self._conn.execute(
            "UPDATE page_regions SET bbox_json = ?, notes = ?, updated_at = ? WHERE id = ?",
            (dumps(bbox.to_dict()), notes, utc_now(), region_id),
        )
        self._conn.commit()
        return self.get_region(region_id)

    @_synchronized
    def set_region_status(
        self, region_id: int, status: RegionStatus, note: str | None = None
    ) -> Region:
        region = self._require_region(region_id)
        notes = _append_note(region.notes, note)
        self._conn.execute(
            "UPDATE page_regions SET status = ?, notes = ?, updated_at = ? WHERE id = ?",
            (status.value, notes, utc_now(), region_id),
        )
        self._conn.commit()
        return self.get_region(region_id)

    @_synchronized
    def record_remap(
        self,
        region_id: int,
        *,
        review_required: bool,
        score: float | None,
        margin: float | None,
        candidates: list[dict[str, Any]],
        new_start: str | None = None,
        new_end: str | None = None,
    ) -> Region:
        """Persist a remap decision; reassigns the verse range when given one."""
        region = self._require_region(region_id)
        if new_start and new_end:
            self._conn.execute(
                """
                UPDATE page_regions SET
                    remap_previous_start = start_verse_id,
                    remap_previous_end = end_verse_id,
                    start_verse_id = ?, end_verse_id = ?
                WHERE id = ?
                """,
                (new_start, new_end, region.id),
            )
        self._conn.execute(
            """
            UPDATE page_regions SET
                remap_review_required = ?,
                remap_score = ?,
                remap_margin = ?,
                remap_candidates_json = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (int(review_required), score, margin, dumps(candidates), utc_now(), region.id),
        )
        self._conn.commit()
        return self.get_region(region_id)

    def _require_region(self, region_id: int) -> Region:
        region = self.get_region(region_id)
        if region is None:
            raise InputValidationError(
                "REGION_NOT_FOUND",
                f"Region not found: {region_id}",
                {"region_id": region_id},
            )
        return region

    # ------------------------------------------------------------------
    # OCR artifacts
    # ------------------------------------------------------------------

    @_synchronized
    def upsert_ocr_artifact(self, artifact: OcrArtifact) -> OcrArtifact:
        now = utc_now()
        self._conn.execute(
            """
            INSERT INTO region_ocr_artifacts (region_id, crop_path, crop_metadata_json,
                text_raw, ocr_mean_conf, ocr_char_count, coverage_ratio_est,
                engine, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(region_id) DO UPDATE SET
                crop_path = excluded.crop_path,
                crop_metadata_json = excluded.crop_metadata_json,
                text_raw = excluded.text_raw,
                ocr_mean_conf = excluded.ocr_mean_conf,
                ocr_char_count = excluded.ocr_char_count,
                coverage_ratio_est = excluded.coverage_ratio_est,
                engine = excluded.engine,
                updated_at = excluded.updated_at
            """,
            (
                artifact.region_id,
                artifact.crop_path,
                dumps(artifact.crop_metadata),
                artifact.text_raw,
                artifact.ocr_mean_conf,
                artifact.ocr_char_count,
                artifact.coverage_ratio_est,
                artifact.engine,
                now,
            ),
        )
        self._conn.commit()
        artifact.updated_at = now
        return artifact

    @_synchronized
    def get_ocr_artifact(self, region_id: int) -> OcrArtifact | None:
        row = self._conn.execute(
            "SELECT * FROM region_ocr_artifacts WHERE region_id = ?", (region_id,)
        ).fetchone()
        return OcrArtifact.from_row(row) if row else None

    # ------------------------------------------------------------------
    # OCR jobs
    # ------------------------------------------------------------------

    @_synchronized
    def create_ocr_job(self, region_id: int) -> OcrJob:
        self._require_region(region_id)
        row = self._conn.execute(
            """
            INSERT INTO ocr_jobs (region_id, status, attempts, created_at)
            VALUES (?, 'queued', 0, ?)
            RETURNING *
            """,
            (region_id, utc_now()),
        ).fetchone()
        self._conn.commit()
        return OcrJob.from_row(row)

    @_synchronized
    def get_ocr_job(self, job_id: int) -> OcrJob | None:
        row = self._conn.execute(
            "SELECT * FROM ocr_jobs WHERE id = ?", (job_id,)
        ).fetchone()
        return OcrJob.from_row(row) if row else None

    @_synchronized
    def update_ocr_job_status(
        self, job_id: int, status: JobStatus, error: str | None = None
    ) -> OcrJob | None:
        """Transition a job; entering ``running`` counts an attempt."""
        now = utc_now()
        if status == JobStatus.RUNNING:
            sql = """
                UPDATE ocr_jobs SET status = 'running', attempts = attempts + 1,
                    error = NULL, started_at = ?, finished_at = NULL
                WHERE id = ? RETURNING *
            """
            params: tuple = (now, job_id)
        elif status == JobStatus.FAILED:
            sql = """
                UPDATE ocr_jobs SET status = 'failed', error = ?, finished_at = ?
                WHERE id = ? RETURNING *
            """
            params = (error or "unknown error", now, job_id)
        elif status == JobStatus.COMPLETED:
            sql = """
                UPDATE ocr_jobs SET status = 'completed', error = NULL, finished_at = ?
                WHERE id = ? RETURNING *
            """
            params = (now, job_id)
        else:
            sql = """
                UPDATE ocr_jobs SET status = 'queued', error = NULL,
                    started_at = NULL, finished_at = NULL
                WHERE id = ? RETURNING *
            """
            params = (job_id,)
        row = self._conn.execute(sql, params).fetchone()
        self._conn.commit()
        return OcrJob.from_row(row) if row else None

    @_synchronized
    def claim_next_ocr_job(
        self, priority_first: bool = True, witness_id: str | None = None
    ) -> OcrJob | None:
        """Atomically move the next queued job to running.

        A single ``UPDATE ... WHERE status = 'queued' RETURNING`` statement
        is the only point of contention, so no two callers can claim the
        same job. Order is FIFO by creation time, optionally preceded by
        the owning witness's priority tier. With ``witness_id`` only that
        witness's jobs are eligible.
        """
        where = "j.status = 'queued'"
        params: list[Any] = [utc_now()]
        if witness_id is not None:
            where += " AND p.witness_id = ?"
            params.append(witness_id)
        order = "j.created_at, j.id"
        if priority_first:
            order = (
                "CASE WHEN w.priority IS NULL OR w.priority <= 0 THEN 1 ELSE 0 END, "
                "w.priority, " + order
            )
        row = self._conn.execute(
            f"""
            UPDATE ocr_jobs SET status = 'running', attempts = attempts + 1,
                error = NULL, started_at = ?, finished_at = NULL
            WHERE id = (
                SELECT j.id FROM ocr_jobs j
                LEFT JOIN page_regions r ON r.id = j.region_id
                LEFT JOIN pages p ON p.id = r.page_id
                LEFT JOIN witnesses w ON w.id = p.witness_id
                WHERE {where}
                ORDER BY {order}
                LIMIT 1
            ) AND status = 'queued'
            RETURNING *
            """,
            params,
        ).fetchone()
        self._conn.commit()
        return OcrJob.from_row(row) if row else None

    @_synchronized
    def requeue_stale_ocr_jobs(self, stale_before: str) -> list[int]:
        """Requeue running jobs started before ``stale_before`` (or never stamped)."""
        rows = self._conn.execute(
            """
            UPDATE ocr_jobs SET status = 'queued', started_at = NULL, error = NULL
            WHERE status = 'running'
              AND (started_at IS NULL OR started_at < ?)
            RETURNING id
            """,
            (stale_before,),
        ).fetchall()
        self._conn.commit()
        return [r["id"] for r in rows]

    @_synchronized
    def list_ocr_jobs(
        self,
        status: JobStatus | None = None,
        witness_id: str | None = None,
        limit: int = 200,
    ) -> list[OcrJob]:
        query = """
            SELECT j.* FROM ocr_jobs j
            LEFT JOIN page_regions r ON r.id = j.region_id
            LEFT JOIN pages p ON p.id = r.page_id
            WHERE 1 = 1
        """
        params: list[Any] = []
        if status is not None:
            query += " AND j.status = ?"
            params.append(status.value)
        if witness_id is not None:
            query += " AND p.witness_id = ?"
            params.append(witness_id)
        query += " ORDER BY j.id DESC LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(query, params).fetchall()
        return [OcrJob.from_row(r) for r in rows]

    @_synchronized
    def latest_ocr_job_for_region(self, region_id: int) -> OcrJob | None:
        row = self._conn.execute(
            "SELECT * FROM ocr_jobs WHERE region_id = ? ORDER BY id DESC LIMIT 1",
            (region_id,),
        ).fetchone()
        return OcrJob.from_row(row) if row else None

    @_synchronized
    def count_ocr_jobs(self, witness_id: str | None = None) -> dict[str, int]:
        """Job counts per status (latest job per region)."""
        query = """
            SELECT j.status, COUNT(*) AS n FROM ocr_jobs j
            JOIN (SELECT region_id, MAX(id) AS id FROM ocr_jobs GROUP BY region_id) latest
              ON latest.id = j.id
            LEFT JOIN page_regions r ON r.id = j.region_id
            LEFT JOIN pages p ON p.id = r.page_id
        """
        params: list[Any] = []
        if witness_id is not None:
            query += " WHERE p.witness_id = ?"
            params.append(witness_id)
        query += " GROUP BY j.status"
        counts = {status.value: 0 for status in JobStatus}
        for row in self._conn.execute(query, params).fetchall():
            counts[row["status"]] = row["n"]
        return counts

    # ------------------------------------------------------------------
    # Witness verses
    # ------------------------------------------------------------------

    @_synchronized
    def upsert_witness_verse(
        self, row: WitnessVerse, replace_artifacts: tuple[str, ...] = ()
    ) -> WitnessVerse:
        """Upsert keyed by (verse, witness); artifact keys are merged.

        Artifact keys in ``replace_artifacts`` are overwritten from ``row``
        even when unset there.
        """
        existing = self.get_witness_verse(row.verse_id, row.witness_id)
        artifacts = row.artifacts
        if existing is not None:
            artifacts = existing.artifacts.merged(row.artifacts, replace=replace_artifacts)
        now = utc_now()
        self._conn.execute(
            """
            INSERT INTO witness_verses (verse_id, witness_id, text_raw,
                text_normalized, clarity_score, match_score, completeness_score,
                confidence, status, artifacts_json, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(verse_id, witness_id) DO UPDATE SET
                text_raw = excluded.text_raw,
                text_normalized = excluded.text_normalized,
                clarity_score = excluded.clarity_score,
                match_score = excluded.match_score,
                completeness_score = excluded.completeness_score,
                confidence = excluded.confidence,
                status = excluded.status,
                artifacts_json = excluded.artifacts_json,
                updated_at = excluded.updated_at
            """,
            (
                row.verse_id,
                row.witness_id,
                row.text_raw,
                row.text_normalized,
                row.clarity_score,
                row.match_score,
                row.completeness_score,
                row.confidence,
                row.status,
                dumps(artifacts.to_dict()),
                now,
            ),
        )
        self._conn.commit()
        row.artifacts = artifacts
        row.updated_at = now
        return row

    @_synchronized
    def get_witness_verse(self, verse_id: str, witness_id: str) -> WitnessVerse | None:
        row = self._conn.execute(
            "SELECT * FROM witness_verses WHERE verse_id = ? AND witness_id = ?",
            (verse_id, witness_id),
        ).fetchone()
        return WitnessVerse.from_row(row) if row else None

    @_synchronized
    def list_witness_verses(self, verse_id: str) -> list[WitnessVerse]:
        rows = self._conn.execute(
            "SELECT * FROM witness_verses WHERE verse_id = ? ORDER BY witness_id",
            (verse_id,),
        ).fetchall()
        return [WitnessVerse.from_row(r) for r in rows]

    @_synchronized
    def list_witness_verses_for_witness(self, witness_id: str) -> list[WitnessVerse]:
        rows = self._conn.execute(
            "SELECT * FROM witness_verses WHERE witness_id = ?", (witness_id,)
        ).fetchall()
        return [WitnessVerse.from_row(r) for r in rows]

    @_synchronized
    def update_witness_verse_scores(
        self,
        verse_id: str,
        witness_id: str,
        confidence: float,
        artifacts: WitnessVerseArtifacts,
    ) -> WitnessVerse:
        """Write a recomputed confidence, merging (not replacing) artifacts."""
        existing = self.get_witness_verse(verse_id, witness_id)
        if existing is None:
            raise InputValidationError(
                "WITNESS_VERSE_NOT_FOUND",
                f"No witness row for {witness_id} at {verse_id}",
            )
        existing.confidence = confidence
        existing.artifacts = artifacts
        return self.upsert_witness_verse(existing)

    # ------------------------------------------------------------------
    # Working text
    # ------------------------------------------------------------------

    @_synchronized
    def upsert_working_text(self, working: WorkingVerseText) -> WorkingVerseText:
        now = utc_now()
        self._conn.execute(
            """
            INSERT INTO working_verse_text (verse_id, selected_source, text_surface,
                text_normalized, ensemble_confidence, flags_json, reason_codes_json,
                updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(verse_id) DO UPDATE SET
                selected_source = excluded.selected_source,
                text_surface = excluded.text_surface,
                text_normalized = excluded.text_normalized,
                ensemble_confidence = excluded.ensemble_confidence,
                flags_json = excluded.flags_json,
                reason_codes_json = excluded.reason_codes_json,
                updated_at = excluded.updated_at
            """,
            (
                working.verse_id,
                working.selected_source,
                working.text_surface,
                working.text_normalized,
                working.ensemble_confidence,
                dumps(working.flags),
                dumps(working.reason_codes),
                now,
            ),
        )
        self._conn.commit()
        working.updated_at = now
        return working

    @_synchronized
    def get_working_text(self, verse_id: str) -> WorkingVerseText | None:
        row = self._conn.execute(
            "SELECT * FROM working_verse_text WHERE verse_id = ?", (verse_id,)
        ).fetchone()
        return WorkingVerseText.from_row(row) if row else None

    @_synchronized
    def list_working_texts(self) -> list[WorkingVerseText]:
        rows = self._conn.execute("SELECT * FROM working_verse_text").fetchall()
        return [WorkingVerseText.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Run state
    # ------------------------------------------------------------------

    @_synchronized
    def get_run_state(self, witness_id: str) -> RunState:
        """Run state for a witness, created as all-pending on first read."""
        row = self._conn.execute(
            "SELECT * FROM manuscript_run_state WHERE witness_id = ?", (witness_id,)
        ).fetchone()
        if row is None:
            self._conn.execute(
                """
                INSERT INTO manuscript_run_state (witness_id, updated_at)
                VALUES (?, ?) ON CONFLICT(witness_id) DO NOTHING
                """,
                (witness_id, utc_now()),
            )
            self._conn.commit()
            row = self._conn.execute(
                "SELECT * FROM manuscript_run_state WHERE witness_id = ?",
                (witness_id,),
            ).fetchone()
        return RunState.from_row(row)

    @_synchronized
    def set_stage_status(
        self,
        witness_id: str,
        stage: Stage,
        status: StageStatus,
        *,
        blockers: list[Blocker] | None = None,
        override_used: bool = False,
        actor: str | None = None,
        note: str | None = None,
        error: str | None = None,
    ) -> RunState:
        """Write one stage's status and append an audit row.

        The run state keeps blockers for ``stage`` only while it is
        ``blocked``; the audit row always records the blockers passed in,
        so an override still leaves its evidence behind. Blockers recorded
        for other stages are left untouched.
        """
        state = self.get_run_state(witness_id)
        stage_blockers = list(blockers or [])
        kept = [b for b in state.blockers if b.stage != stage.value]
        if status == StageStatus.BLOCKED:
            kept += stage_blockers
        all_blockers = [b.to_dict() for b in kept]
        now = utc_now()
        last_error = error if status == StageStatus.FAILED else state.last_error

        self._conn.execute(
            f"""
            UPDATE manuscript_run_state
            SET {stage.value}_status = ?, blockers_json = ?, last_error = ?,
                updated_at = ?
            WHERE witness_id = ?
            """,
            (status.value, dumps(all_blockers), last_error, now, witness_id),
        )
        self._conn.execute(
            """
            INSERT INTO manuscript_run_audit (witness_id, stage, status,
                override_used, actor, note, blockers_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                witness_id,
                stage.value,
                status.value,
                int(override_used),
                actor,
                note,
                dumps([b.to_dict() for b in stage_blockers]),
                now,
            ),
        )
        self._conn.commit()
        return self.get_run_state(witness_id)

    @_synchronized
    def list_run_audit(
        self, witness_id: str | None = None, limit: int = 200
    ) -> list[RunAuditEntry]:
        if witness_id is None:
            rows = self._conn.execute(
                "SELECT * FROM manuscript_run_audit ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        else:
            rows = self._conn.execute(
                """
                SELECT * FROM manuscript_run_audit WHERE witness_id = ?
                ORDER BY id DESC LIMIT ?
                """,
                (witness_id, limit),
            ).fetchall()
        return [RunAuditEntry.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Taam alignment and consensus
    # ------------------------------------------------------------------

    @_synchronized
    def upsert_taam_alignment(self, alignment: TaamAlignment) -> TaamAlignment:
        now = utc_now()
        self._conn.execute(
            """
            INSERT INTO taam_alignments (verse_id, witness_id, target_layer,
                target_text_hash, marks_json, metrics_json, status, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(verse_id, witness_id, target_layer) DO UPDATE SET
                target_text_hash = excluded.target_text_hash,
                marks_json = excluded.marks_json,
                metrics_json = excluded.metrics_json,
                status = excluded.status,
                updated_at = excluded.updated_at
            """,
            (
                alignment.verse_id,
                alignment.witness_id,
                alignment.target_layer,
                alignment.target_text_hash,
                dumps(alignment.marks),
                dumps(alignment.metrics),
                alignment.status,
                now,
            ),
        )
        self._conn.commit()
        alignment.updated_at = now
        return alignment

    @_synchronized
    def list_taam_alignments(
        self, verse_id: str, target_layer: str
    ) -> list[TaamAlignment]:
        rows = self._conn.execute(
            """
            SELECT * FROM taam_alignments
            WHERE verse_id = ? AND target_layer = ?
            ORDER BY witness_id
            """,
            (verse_id, target_layer),
        ).fetchall()
        return [TaamAlignment.from_row(r) for r in rows]

    @_synchronized
    def upsert_taam_consensus(self, consensus: TaamConsensus) -> TaamConsensus:
        now = utc_now()
        self._conn.execute(
            """
            INSERT INTO taam_consensus (verse_id, target_layer, target_text_hash,
                marks_json, ensemble_confidence, flags_json, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(verse_id, target_layer) DO UPDATE SET
                target_text_hash = excluded.target_text_hash,
                marks_json = excluded.marks_json,
                ensemble_confidence = excluded.ensemble_confidence,
                flags_json = excluded.flags_json,
                updated_at = excluded.updated_at
            """,
            (
                consensus.verse_id,
                consensus.target_layer,
                consensus.target_text_hash,
                dumps(consensus.marks),
                consensus.ensemble_confidence,
                dumps(consensus.flags),
                now,
            ),
        )
        self._conn.commit()
        consensus.updated_at = now
        return consensus

    @_synchronized
    def get_taam_consensus(
        self, verse_id: str, target_layer: str
    ) -> TaamConsensus | None:
        row = self._conn.execute(
            "SELECT * FROM taam_consensus WHERE verse_id = ? AND target_layer = ?",
            (verse_id, target_layer),
        ).fetchone()
        return TaamConsensus.from_row(row) if row else None


def _append_note(existing: str | None, note: str | None) -> str | None:
    if not note:
        return existing
    if not existing:
        return note
    if note in existing.split("; "):
        return existing
    return f"{existing}; {note}"
