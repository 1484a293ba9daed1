"""
Breakpoint/handoff coordinator.

When a phase with a breakpoint completes, the coordinator writes a handoff
artifact describing the external (human or agent) work required, and decides
whether the run pauses. Pausing is a return from the engine, never a wait.

The coordinator never touches checkpoints.
"""

import logging
import shlex
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from stackforge.errors import PersistenceError
from stackforge.schemas import (
    BreakpointKind,
    HandoffArtifact,
    OperationDef,
    PhaseDef,
    RunMode,
    RunState,
    ScopeKind,
)

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = {
    BreakpointKind.VERIFY: "Verify that the results of this phase are correct.",
    BreakpointKind.REVIEW: "Review the generated files before continuing.",
    BreakpointKind.MANUAL: "Complete the manual steps for this phase.",
    BreakpointKind.HANDOFF: "Hand this phase to an external agent to complete the creative work.",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BreakpointCoordinator:
    """
    Classifies completed phases and emits handoff artifacts.

    Args:
        handoff_dir: Directory artifacts are written to
        config_path: Config file the run was started with, repeated in the
            resume command
        clock: Returns the current UTC time (overridable for tests)
    """

    def __init__(
        self,
        handoff_dir: Union[Path, str],
        config_path: Optional[Union[Path, str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._handoff_dir = Path(handoff_dir)
        self._config_path = Path(config_path) if config_path is not None else None
        self._clock = clock or _utcnow

    @property
    def handoff_dir(self) -> Path:
        return self._handoff_dir

    def classify(self, phase: PhaseDef, operations: Iterable[OperationDef]) -> BreakpointKind:
        """Highest-precedence kind among the phase and its operations."""
        return BreakpointKind.aggregate([phase.breakpoint] + [op.breakpoint for op in operations])

    def should_pause(self, kind: BreakpointKind, run_state: RunState) -> bool:
        if kind == BreakpointKind.NONE:
            return False
        if run_state.continue_through_breakpoints:
            return False
        return run_state.mode == RunMode.EXECUTE

    def resume_command(self, run_state: RunState) -> str:
        """Exact command line that continues this run."""
        parts = ["stackforge"]
        if self._config_path is not None:
            parts += ["--config", shlex.quote(str(self._config_path))]
        parts += ["run", "--resume"]
        if run_state.scope.kind == ScopeKind.PHASE:
            parts += ["--phase", run_state.scope.target]
        if run_state.profile:
            parts += ["--profile", run_state.profile]
        return " ".join(parts)

    def build_handoff(
        self,
        phase: PhaseDef,
        affected_operations: Iterable[OperationDef],
        run_state: RunState,
    ) -> HandoffArtifact:
        """Assemble the artifact without writing it."""
        ops = list(affected_operations)
        kind = self.classify(phase, ops)

        flagged = [op for op in ops if op.breakpoint != BreakpointKind.NONE] or ops

        sections = []
        if phase.instructions:
            sections.append(phase.instructions.strip())
        for op in flagged:
            if op.instructions:
                sections.append(f"{op.display_name}: {op.instructions.strip()}")
        if not sections:
            sections.append(DEFAULT_INSTRUCTIONS.get(kind, ""))

        paths: dict[str, None] = {}
        for op in ops:
            for path in op.creates + op.modifies:
                paths.setdefault(path, None)

        return HandoffArtifact(
            phase_id=phase.id,
            kind=kind,
            instructions="\n\n".join(sections),
            affected_paths=tuple(paths),
            operations=tuple(op.id for op in flagged),
            created_at=self._clock(),
            resume_hint=self.resume_command(run_state),
        )

    def emit_handoff(
        self,
        phase: PhaseDef,
        affected_operations: Iterable[OperationDef],
        run_state: RunState,
    ) -> HandoffArtifact:
        """
        Write a handoff artifact for a completed phase.

        Safe to call repeatedly; each call writes a timestamped file.

        Returns:
            The artifact, with ``path`` set to where it was written

        Raises:
            PersistenceError: If the artifact could not be written
        """
        artifact = self.build_handoff(phase, affected_operations, run_state)
        stamp = artifact.created_at.strftime("%Y%m%dT%H%M%SZ")
        path = self._handoff_dir / f"{phase.id}-{stamp}.md"
        try:
            self._handoff_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(artifact.render(phase.display_name))
        except OSError as e:
            raise PersistenceError(f"Cannot write handoff artifact {path}: {e}")

        logger.info(
            f"Handoff written for phase {phase.id}: {path}",
            extra={
                "event": "breakpoint.handoff",
                "metadata": {"phase": phase.id, "kind": artifact.kind.value, "path": str(path)},
            },
        )
        return replace(artifact, path=str(path))
