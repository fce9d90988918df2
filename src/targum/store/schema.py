"""SQLite schema for the manuscript store."""

SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- verses: digital baseline text, one row per canonical verse id
CREATE TABLE IF NOT EXISTS verses (
    verse_id TEXT PRIMARY KEY,
    book TEXT NOT NULL,
    chapter INTEGER NOT NULL,
    verse INTEGER NOT NULL,
    text TEXT NOT NULL DEFAULT ''
);

-- witnesses: textual sources with fixed authority
CREATE TABLE IF NOT EXISTS witnesses (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'scan',
    authority_weight REAL NOT NULL DEFAULT 0.4,
    priority INTEGER UNIQUE,
    source_link TEXT,
    metadata_json TEXT NOT NULL DEFAULT '{}'
);

-- pages: scanned page images belonging to a witness
CREATE TABLE IF NOT EXISTS pages (
    id TEXT PRIMARY KEY,
    witness_id TEXT NOT NULL REFERENCES witnesses(id),
    page_index INTEGER NOT NULL,
    image_path TEXT NOT NULL,
    width INTEGER,
    height INTEGER,
    status TEXT NOT NULL DEFAULT 'ok',
    UNIQUE(witness_id, page_index)
);

-- page_regions: bounding boxes tied to verse ranges
CREATE TABLE IF NOT EXISTS page_regions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    page_id TEXT NOT NULL REFERENCES pages(id),
    region_index INTEGER NOT NULL DEFAULT 0,
    bbox_json TEXT NOT NULL,
    start_verse_id TEXT,
    end_verse_id TEXT,
    status TEXT NOT NULL DEFAULT 'ok',
    notes TEXT,
    remap_review_required INTEGER NOT NULL DEFAULT 0,
    remap_score REAL,
    remap_margin REAL,
    remap_candidates_json TEXT NOT NULL DEFAULT '[]',
    remap_previous_start TEXT,
    remap_previous_end TEXT,
    updated_at TEXT NOT NULL
);

-- region_ocr_artifacts: latest OCR output per region
CREATE TABLE IF NOT EXISTS region_ocr_artifacts (
    region_id INTEGER PRIMARY KEY REFERENCES page_regions(id),
    crop_path TEXT,
    crop_metadata_json TEXT NOT NULL DEFAULT '{}',
    text_raw TEXT NOT NULL DEFAULT '',
    ocr_mean_conf REAL NOT NULL DEFAULT 0,
    ocr_char_count INTEGER NOT NULL DEFAULT 0,
    coverage_ratio_est REAL NOT NULL DEFAULT 0,
    engine TEXT,
    updated_at TEXT NOT NULL
);

-- ocr_jobs: one OCR attempt history per region, retained for audit
CREATE TABLE IF NOT EXISTS ocr_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    region_id INTEGER NOT NULL REFERENCES page_regions(id),
    status TEXT NOT NULL DEFAULT 'queued'
        CHECK (status IN ('queued', 'running', 'completed', 'failed')),
    attempts INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT
);

-- witness_verses: one witness's observation of one verse
CREATE TABLE IF NOT EXISTS witness_verses (
    verse_id TEXT NOT NULL,
    witness_id TEXT NOT NULL,
    text_raw TEXT NOT NULL DEFAULT '',
    text_normalized TEXT NOT NULL DEFAULT '',
    clarity_score REAL NOT NULL DEFAULT 0,
    match_score REAL NOT NULL DEFAULT 0,
    completeness_score REAL NOT NULL DEFAULT 0,
    confidence REAL NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'ok',
    artifacts_json TEXT NOT NULL DEFAULT '{}',
    updated_at TEXT NOT NULL,
    PRIMARY KEY (verse_id, witness_id)
);

-- working_verse_text: committed reconciliation result, one row per verse
CREATE TABLE IF NOT EXISTS working_verse_text (
    verse_id TEXT PRIMARY KEY,
    selected_source TEXT NOT NULL,
    text_surface TEXT NOT NULL DEFAULT '',
    text_normalized TEXT NOT NULL DEFAULT '',
    ensemble_confidence REAL NOT NULL DEFAULT 0,
    flags_json TEXT NOT NULL DEFAULT '[]',
    reason_codes_json TEXT NOT NULL DEFAULT '[]',
    updated_at TEXT NOT NULL
);

-- manuscript_run_state: per-witness stage progress
CREATE TABLE IF NOT EXISTS manuscript_run_state (
    witness_id TEXT PRIMARY KEY,
    ingest_status TEXT NOT NULL DEFAULT 'pending',
    ocr_status TEXT NOT NULL DEFAULT 'pending',
    split_status TEXT NOT NULL DEFAULT 'pending',
    confidence_status TEXT NOT NULL DEFAULT 'pending',
    blockers_json TEXT NOT NULL DEFAULT '[]',
    last_error TEXT,
    updated_at TEXT NOT NULL
);

-- manuscript_run_audit: append-only history of run-state writes
CREATE TABLE IF NOT EXISTS manuscript_run_audit (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    witness_id TEXT NOT NULL,
    stage TEXT NOT NULL,
    status TEXT NOT NULL,
    override_used INTEGER NOT NULL DEFAULT 0,
    actor TEXT,
    note TEXT,
    blockers_json TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL
);

-- taam_alignments: one witness's marks mapped onto a target text version
CREATE TABLE IF NOT EXISTS taam_alignments (
    verse_id TEXT NOT NULL,
    witness_id TEXT NOT NULL,
    target_layer TEXT NOT NULL,
    target_text_hash TEXT NOT NULL,
    marks_json TEXT NOT NULL DEFAULT '[]',
    metrics_json TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'ok',
    updated_at TEXT NOT NULL,
    PRIMARY KEY (verse_id, witness_id, target_layer)
);

-- taam_consensus: weighted vote across witnesses
CREATE TABLE IF NOT EXISTS taam_consensus (
    verse_id TEXT NOT NULL,
    target_layer TEXT NOT NULL,
    target_text_hash TEXT NOT NULL,
    marks_json TEXT NOT NULL DEFAULT '[]',
    ensemble_confidence REAL NOT NULL DEFAULT 0,
    flags_json TEXT NOT NULL DEFAULT '[]',
    updated_at TEXT NOT NULL,
    PRIMARY KEY (verse_id, target_layer)
);

CREATE INDEX IF NOT EXISTS idx_pages_witness ON pages(witness_id, page_index);
CREATE INDEX IF NOT EXISTS idx_regions_page ON page_regions(page_id, region_index);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON ocr_jobs(status, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_region ON ocr_jobs(region_id, id);
CREATE INDEX IF NOT EXISTS idx_witness_verses_witness ON witness_verses(witness_id);
CREATE INDEX IF NOT EXISTS idx_audit_witness ON manuscript_run_audit(witness_id, id);
"""
