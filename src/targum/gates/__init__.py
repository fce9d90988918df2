"""Gates module: priority-ordered admission control for pipeline stages.

A lower-priority witness may not start a stage until every
higher-priority witness has completed it. Denials carry structured
blockers; overrides are allowed but recorded.
"""

from targum.gates.priority import (
    STAGE_ORDER,
    GateEvaluation,
    GateOutcome,
    GateSnapshotEntry,
    PriorityGate,
    make_blocker,
)

__all__ = [
    "STAGE_ORDER",
    "GateEvaluation",
    "GateOutcome",
    "GateSnapshotEntry",
    "PriorityGate",
    "make_blocker",
]
