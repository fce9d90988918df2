"""Patch-log collaborator for committed working text.

The cascade selector records each working-text commit here so prior
committed text survives the full overwrite of ``working_verse_text``.
Only the append side lives in this package; undo/redo replay by cursor
is owned by the editing surface.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol

from targum.store.models import dumps

if TYPE_CHECKING:
    from targum.store.repository import ManuscriptStore


class PatchLog(Protocol):
    """Anything that can append a working-text commit and return its id."""

    def commit_working_text(self, verse_id: str, payload: dict[str, Any]) -> int:
        ...


PATCHLOG_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS base_text_patches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    verse_id TEXT NOT NULL,
    patch_type TEXT NOT NULL DEFAULT 'working_text_commit',
    payload_json TEXT NOT NULL,
    author TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS base_text_state (
    verse_id TEXT PRIMARY KEY,
    head_patch_id INTEGER REFERENCES base_text_patches(id),
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_patches_verse ON base_text_patches(verse_id, id);
"""


class SqlitePatchLog:
    """Append-only patch log stored beside the manuscript tables."""

    def __init__(self, store: "ManuscriptStore", author: str = "cascade"):
        self._store = store
        self._author = author
        self.init_schema()

    def init_schema(self) -> None:
        with self._store.lock:
            self._store.connection.executescript(PATCHLOG_SCHEMA_SQL)
            self._store.connection.commit()

    def commit_working_text(self, verse_id: str, payload: dict[str, Any]) -> int:
        """Append a commit for ``verse_id`` and move its cursor to it."""
        now = datetime.now(timezone.utc).isoformat(timespec="microseconds")
        conn = self._store.connection
        with self._store.lock:
            patch_id = conn.execute(
                """
                INSERT INTO base_text_patches (verse_id, payload_json, author, created_at)
                VALUES (?, ?, ?, ?)
                RETURNING id
                """,
                (verse_id, dumps(payload), self._author, now),
            ).fetchone()[0]
            conn.execute(
                """
                INSERT INTO base_text_state (verse_id, head_patch_id, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(verse_id) DO UPDATE SET
                    head_patch_id = excluded.head_patch_id,
                    updated_at = excluded.updated_at
                """,
                (verse_id, patch_id, now),
            )
            conn.commit()
        return patch_id

    def head(self, verse_id: str) -> int | None:
        with self._store.lock:
            row = self._store.connection.execute(
                "SELECT head_patch_id FROM base_text_state WHERE verse_id = ?",
                (verse_id,),
            ).fetchone()
        return row["head_patch_id"] if row else None

    def count(self, verse_id: str) -> int:
        with self._store.lock:
            row = self._store.connection.execute(
                "SELECT COUNT(*) FROM base_text_patches WHERE verse_id = ?",
                (verse_id,),
            ).fetchone()
        return row[0]
