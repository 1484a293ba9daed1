"""
stackforge.schemas - Data model for the provisioning engine.

PhaseDef/OperationDef -> RunState -> CheckpointEntry -> RunReport

Lifecycle:
1. PhaseDef / OperationDef: Parsed once from the registry source, immutable
2. RunState: Built per invocation from CLI arguments, never persisted
3. CheckpointEntry: Written after each live operation, read before the next run
4. PlannedEffect / RunSummary: Produced by dry runs
5. HandoffArtifact: Emitted when a phase with a breakpoint completes
6. RunReport: Returned by the engine for every run

Ownership:
- Registry owns definitions
- Checkpoint store is the sole writer of CheckpointEntry and RunMarker
- Engine owns RunState
"""

from .definitions import (
    BreakpointKind,
    OperationDef,
    PhaseDef,
    ProfileDef,
)
from .checkpoint import (
    CHECKPOINT_SCHEMA_VERSION,
    CheckpointEntry,
    CheckpointStatus,
    RunMarker,
    RunMarkerStatus,
)
from .run_state import (
    RunMode,
    RunScope,
    RunState,
    ScopeKind,
    generate_run_id,
)
from .effects import (
    PlannedEffect,
    RunSummary,
)
from .handoff import (
    HandoffArtifact,
)
from .report import (
    OperationOutcome,
    OutcomeStatus,
    RunReport,
    RunStatus,
)

__all__ = [
    # Definitions
    "BreakpointKind",
    "OperationDef",
    "PhaseDef",
    "ProfileDef",
    # Checkpoints
    "CHECKPOINT_SCHEMA_VERSION",
    "CheckpointEntry",
    "CheckpointStatus",
    "RunMarker",
    "RunMarkerStatus",
    # Run state
    "RunMode",
    "RunScope",
    "RunState",
    "ScopeKind",
    "generate_run_id",
    # Effects
    "PlannedEffect",
    "RunSummary",
    # Handoff
    "HandoffArtifact",
    # Report
    "OperationOutcome",
    "OutcomeStatus",
    "RunReport",
    "RunStatus",
]
