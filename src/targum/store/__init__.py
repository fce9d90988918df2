"""Persistent manuscript store.

Provides an explicit store handle (no process-wide singleton) and the
typed records it reads and writes.
"""

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
    Verse,
    Witness,
    WitnessVerse,
    WitnessVerseArtifacts,
    WorkingVerseText,
)
from targum.store.repository import ManuscriptStore, utc_before, utc_now

__all__ = [
    "BBox",
    "Blocker",
    "JobStatus",
    "ManuscriptStore",
    "OcrArtifact",
    "OcrJob",
    "Page",
    "Region",
    "RegionStatus",
    "RunAuditEntry",
    "RunState",
    "Stage",
    "StageStatus",
    "TaamAlignment",
    "TaamConsensus",
    "Verse",
    "Witness",
    "WitnessVerse",
    "WitnessVerseArtifacts",
    "WorkingVerseText",
    "utc_before",
    "utc_now",
]
