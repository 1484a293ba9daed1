"""
HandoffArtifact schema - description of external work at a breakpoint.

Created by the breakpoint coordinator when a phase with a breakpoint
completes. Consumed by a human or external agent; never read back.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .definitions import BreakpointKind


@dataclass(frozen=True)
class HandoffArtifact:
    """
    Self-contained description of what must be done before resuming.

    Attributes:
        phase_id: Phase that just completed
        kind: Aggregate breakpoint kind of the phase
        instructions: Free text describing the work
        affected_paths: Paths the external actor should look at
        operations: Operation ids that asked for external work
        created_at: When the artifact was generated
        resume_hint: Exact command to continue the run
        path: Where the rendered artifact was written
    """
    phase_id: str
    kind: BreakpointKind
    instructions: str
    affected_paths: tuple[str, ...] = ()
    operations: tuple[str, ...] = ()
    created_at: Optional[datetime] = None
    resume_hint: str = ""
    path: Optional[str] = field(default=None, compare=False)

    def render(self, phase_name: Optional[str] = None) -> str:
        """Render the artifact as a Markdown document."""
        title = phase_name or self.phase_id
        lines = [
            f"# Handoff: {title}",
            "",
            f"- Phase: `{self.phase_id}`",
            f"- Breakpoint: {self.kind.value}",
        ]
        if self.created_at is not None:
            lines.append(f"- Created: {self.created_at.isoformat()}")
        lines += ["", "## Work required", "", self.instructions.strip() or "(no instructions given)", ""]
        if self.operations:
            lines += ["## Operations", ""]
            lines += [f"- `{op}`" for op in self.operations]
            lines.append("")
        if self.affected_paths:
            lines += ["## Affected paths", ""]
            lines += [f"- `{p}`" for p in self.affected_paths]
            lines.append("")
        lines += ["## Resume", "", "When the work above is done, run:", "", "```", self.resume_hint, "```", ""]
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "phase_id": self.phase_id,
            "kind": self.kind.value,
            "instructions": self.instructions,
            "affected_paths": list(self.affected_paths),
            "operations": list(self.operations),
            "resume_hint": self.resume_hint,
        }
        if self.created_at is not None:
            result["created_at"] = self.created_at.isoformat()
        if self.path is not None:
            result["path"] = self.path
        return result
