"""
Run report schemas - what a run did.

RunReport is returned by the engine for every run that starts. It carries
per-operation outcomes and, for halted or paused runs, enough detail to fix
and resume: the failing operation, its reason, the last checkpointed
operation, the handoff artifact and the exact resume command.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .effects import PlannedEffect, RunSummary
from .handoff import HandoffArtifact
from .run_state import RunMode


class OutcomeStatus(str, Enum):
    """What happened to one operation in a run."""
    EXECUTED = "executed"
    SKIPPED = "skipped"
    FAILED = "failed"
    SIMULATED = "simulated"
    VALIDATED = "validated"
    ROLLED_BACK = "rolled_back"
    DISABLED = "disabled"


class RunStatus(str, Enum):
    """Overall run outcome."""
    COMPLETED = "completed"
    PAUSED = "paused"
    HALTED = "halted"


@dataclass(frozen=True)
class OperationOutcome:
    """Outcome of one operation within a run."""
    key: str
    status: OutcomeStatus
    reason: Optional[str] = None
    duration_seconds: float = 0.0
    effect: Optional[PlannedEffect] = None

    @property
    def phase_id(self) -> str:
        return self.key.split("/", 1)[0]

    @property
    def operation_id(self) -> str:
        return self.key.split("/", 1)[1]

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "key": self.key,
            "status": self.status.value,
            "duration_seconds": round(self.duration_seconds, 3),
        }
        if self.reason is not None:
            result["reason"] = self.reason
        if self.effect is not None:
            result["effect"] = self.effect.to_dict()
        return result


@dataclass
class RunReport:
    """
    Result of one engine run.

    Attributes:
        run_id: Run identifier
        mode: Mode the run was invoked in
        status: completed, paused or halted
        outcomes: Per-operation outcomes in invocation order
        started_at: When the run started
        elapsed_seconds: Wall time of the run
        summary: Aggregated planned effects (dry-run only)
        handoff: Artifact emitted at the pause point
        halted_phase: Phase the run halted or paused in
        halted_operation: Operation key the run halted at
        error: Reason for a halt
        last_checkpointed: Key of the last operation checkpointed in this run
        resume_command: Exact command to continue after a pause or halt
        warnings: Non-fatal notes collected during the run
    """
    run_id: str
    mode: RunMode
    started_at: datetime
    status: RunStatus = RunStatus.COMPLETED
    outcomes: list[OperationOutcome] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    summary: Optional[RunSummary] = None
    handoff: Optional[HandoffArtifact] = None
    halted_phase: Optional[str] = None
    halted_operation: Optional[str] = None
    error: Optional[str] = None
    last_checkpointed: Optional[str] = None
    resume_command: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """Completed runs and clean pauses are both successful."""
        return self.status != RunStatus.HALTED

    def outcome_for(self, key: str) -> Optional[OperationOutcome]:
        for outcome in self.outcomes:
            if outcome.key == key:
                return outcome
        return None

    def keys_with(self, status: OutcomeStatus) -> list[str]:
        return [o.key for o in self.outcomes if o.status == status]

    @property
    def executed(self) -> list[str]:
        return self.keys_with(OutcomeStatus.EXECUTED)

    @property
    def skipped(self) -> list[str]:
        return self.keys_with(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> list[str]:
        return self.keys_with(OutcomeStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "run_id": self.run_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }
        if self.summary is not None:
            result["summary"] = self.summary.to_dict()
        if self.handoff is not None:
            result["handoff"] = self.handoff.to_dict()
        for name in ("halted_phase", "halted_operation", "error", "last_checkpointed", "resume_command"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        if self.warnings:
            result["warnings"] = list(self.warnings)
        return result
