"""Priority gate: admission control over (witness, stage) transitions.

Witnesses with a priority tier progress through each stage strictly in
tier order. A witness may not start stage S while any witness with a
lower tier number (higher authority) has not completed S. Blocked
evaluations persist the blocker list; an admin override lets the work
through but keeps the blockers as evidence and is logged.

Witnesses without a tier are unconstrained and always pass.

Evaluations for the same (witness, stage) pair are serialized, because
the read-then-write on run state is not atomic on its own.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from targum.store.models import Blocker, RunState, Stage, StageStatus, Witness

if TYPE_CHECKING:
    from targum.store.repository import ManuscriptStore

logger = logging.getLogger(__name__)

STAGE_ORDER = [Stage.INGEST, Stage.OCR, Stage.SPLIT, Stage.CONFIDENCE]

BLOCKED_NOTE = "blocked by priority gate"
OVERRIDE_NOTE = "admin override used"


class GateOutcome(str, Enum):
    ALLOWED = "allowed"
    OVERRIDDEN = "overridden"
    BLOCKED = "blocked"
    UNCONSTRAINED = "unconstrained"
    WITNESS_NOT_FOUND = "witness_not_found"


@dataclass
class GateEvaluation:
    """Result of a gate evaluation. Blocked is a value, not an exception."""

    witness_id: str
    stage: Stage
    outcome: GateOutcome
    blockers: list[Blocker] = field(default_factory=list)
    override_used: bool = False

    @property
    def allowed(self) -> bool:
        return self.outcome in (
            GateOutcome.ALLOWED,
            GateOutcome.OVERRIDDEN,
            GateOutcome.UNCONSTRAINED,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "witness_id": self.witness_id,
            "stage": self.stage.value,
            "allowed": self.allowed,
            "outcome": self.outcome.value,
            "override_used": self.override_used,
            "blockers": [b.to_dict() for b in self.blockers],
        }


@dataclass
class GateSnapshotEntry:
    witness: Witness
    run_state: RunState

    def to_dict(self) -> dict[str, Any]:
        return {"witness": self.witness.to_dict(), "run_state": self.run_state.to_dict()}


def make_blocker(stage: Stage, higher: Witness, status: StageStatus) -> Blocker:
    return Blocker(
        stage=stage.value,
        blocker_witness_id=higher.id,
        blocker_priority=higher.priority,
        reason_code=f"P{higher.priority}_{stage.value.upper()}_{status.value.upper()}",
        detail=(
            f"Priority P{higher.priority} ({higher.name}) must complete "
            f"{stage.value} before this witness can proceed."
        ),
    )


class PriorityGate:
    """Gate consulted before every stage transition of a witness."""

    def __init__(self, store: "ManuscriptStore", enforce_stage_order: bool = False):
        """
        Args:
            store: Manuscript store handle
            enforce_stage_order: Also require the witness's own previous
                stage to be completed before it starts the next one
        """
        self._store = store
        self._enforce_stage_order = enforce_stage_order
        self._pair_locks: dict[tuple[str, Stage], threading.Lock] = {}
        self._pair_locks_guard = threading.Lock()

    def _lock_for(self, witness_id: str, stage: Stage) -> threading.Lock:
        key = (witness_id, stage)
        with self._pair_locks_guard:
            lock = self._pair_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._pair_locks[key] = lock
            return lock

    def collect_blockers(self, witness: Witness, stage: Stage) -> list[Blocker]:
        """Blockers for ``witness`` at ``stage``. Reads only."""
        blockers: list[Blocker] = []
        for higher in self._store.list_priority_witnesses():
            if higher.priority >= witness.priority:
                continue
            status = self._store.get_run_state(higher.id).status_for(stage)
            if status != StageStatus.COMPLETED:
                blockers.append(make_blocker(stage, higher, status))

        if self._enforce_stage_order and stage != STAGE_ORDER[0]:
            previous = STAGE_ORDER[STAGE_ORDER.index(stage) - 1]
            own = self._store.get_run_state(witness.id).status_for(previous)
            if own != StageStatus.COMPLETED:
                blockers.append(
                    Blocker(
                        stage=stage.value,
                        blocker_witness_id=witness.id,
                        blocker_priority=witness.priority,
                        reason_code=(
                            f"P{witness.priority}_{previous.value.upper()}_"
                            f"{own.value.upper()}"
                        ),
                        detail=f"{previous.value} must complete before {stage.value}.",
                    )
                )
        return blockers

    def evaluate(
        self,
        witness_id: str,
        stage: Stage | str,
        admin_override: bool = False,
        actor: str | None = None,
        note: str | None = None,
    ) -> GateEvaluation:
        """Decide whether ``witness_id`` may start ``stage``.

        Persists ``blocked`` (with blockers) or ``running`` on the
        witness's run state. Unknown witnesses are reported as
        ``WITNESS_NOT_FOUND`` without touching any state.
        """
        stage = Stage(stage)
        witness = self._store.get_witness(witness_id)
        if witness is None:
            return GateEvaluation(witness_id, stage, GateOutcome.WITNESS_NOT_FOUND)

        if not witness.has_priority:
            return GateEvaluation(witness_id, stage, GateOutcome.UNCONSTRAINED)

        with self._lock_for(witness_id, stage):
            blockers = self.collect_blockers(witness, stage)

            if blockers and not admin_override:
                self._store.set_stage_status(
                    witness_id,
                    stage,
                    StageStatus.BLOCKED,
                    blockers=blockers,
                    actor=actor,
                    note=note or BLOCKED_NOTE,
                )
                logger.info(
                    f"Gate blocked {witness_id} at {stage.value}: "
                    f"{', '.join(b.reason_code for b in blockers)}"
                )
                return GateEvaluation(witness_id, stage, GateOutcome.BLOCKED, blockers)

            override_used = bool(blockers)
            self._store.set_stage_status(
                witness_id,
                stage,
                StageStatus.RUNNING,
                blockers=blockers,
                override_used=override_used,
                actor=actor,
                note=OVERRIDE_NOTE if override_used else note,
            )
            if override_used:
                logger.warning(
                    f"Gate override for {witness_id} at {stage.value} by "
                    f"{actor or 'unknown'}: {len(blockers)} blocker(s) bypassed"
                )
                return GateEvaluation(
                    witness_id,
                    stage,
                    GateOutcome.OVERRIDDEN,
                    blockers,
                    override_used=True,
                )
            return GateEvaluation(witness_id, stage, GateOutcome.ALLOWED)

    def mark_stage_completed(
        self,
        witness_id: str,
        stage: Stage | str,
        actor: str | None = None,
        note: str | None = None,
    ) -> RunState:
        """Terminal write; safe to repeat."""
        stage = Stage(stage)
        with self._lock_for(witness_id, stage):
            return self._store.set_stage_status(
                witness_id, stage, StageStatus.COMPLETED, actor=actor, note=note
            )

    def mark_stage_failed(
        self,
        witness_id: str,
        stage: Stage | str,
        error: str,
        actor: str | None = None,
    ) -> RunState:
        """Terminal write recording the causing message; safe to repeat."""
        stage = Stage(stage)
        with self._lock_for(witness_id, stage):
            logger.error(f"Stage {stage.value} failed for {witness_id}: {error}")
            return self._store.set_stage_status(
                witness_id,
                stage,
                StageStatus.FAILED,
                actor=actor,
                note=error,
                error=error,
            )

    def snapshot(self) -> list[GateSnapshotEntry]:
        """Priority witnesses in tier order with their run state."""
        return [
            GateSnapshotEntry(witness=w, run_state=self._store.get_run_state(w.id))
            for w in self._store.list_priority_witnesses()
        ]
