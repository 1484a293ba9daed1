"""
Planned-effect schemas for dry runs.

A PlannedEffect is what one operation says it would do. A RunSummary is the
sum over a run, shown before a live run is authorized.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional


@dataclass(frozen=True)
class PlannedEffect:
    """
    Intended effects of one operation.

    Attributes:
        operation_key: Operation the plan belongs to
        creates: Paths that would be created
        modifies: Paths that would be modified
        commands: Commands that would be invoked
        estimated_duration: Expected runtime in seconds
        indeterminate: The operation could not compute its plan without
            partially executing
        warning: Why the plan is indeterminate, or another simulator note
    """
    operation_key: str = ""
    creates: tuple[str, ...] = ()
    modifies: tuple[str, ...] = ()
    commands: tuple[str, ...] = ()
    estimated_duration: float = 0.0
    indeterminate: bool = False
    warning: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "operation_key": self.operation_key,
            "creates": list(self.creates),
            "modifies": list(self.modifies),
            "commands": list(self.commands),
            "estimated_duration": self.estimated_duration,
        }
        if self.indeterminate:
            result["indeterminate"] = True
        if self.warning:
            result["warning"] = self.warning
        return result


@dataclass(frozen=True)
class RunSummary:
    """Aggregate of planned effects for a dry run."""
    operations: int = 0
    files_to_create: int = 0
    files_to_modify: int = 0
    commands: int = 0
    estimated_duration: float = 0.0
    pending_breakpoints: int = 0
    indeterminate: int = 0
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_effects(cls, effects: Iterable[PlannedEffect], pending_breakpoints: int = 0) -> "RunSummary":
        effects = list(effects)
        creates: set[str] = set()
        modifies: set[str] = set()
        for effect in effects:
            creates.update(effect.creates)
            modifies.update(effect.modifies)
        return cls(
            operations=len(effects),
            files_to_create=len(creates),
            files_to_modify=len(modifies - creates),
            commands=sum(len(e.commands) for e in effects),
            estimated_duration=sum(e.estimated_duration for e in effects),
            pending_breakpoints=pending_breakpoints,
            indeterminate=sum(1 for e in effects if e.indeterminate),
            warnings=tuple(f"{e.operation_key}: {e.warning}" for e in effects if e.warning),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "operations": self.operations,
            "files_to_create": self.files_to_create,
            "files_to_modify": self.files_to_modify,
            "commands": self.commands,
            "estimated_duration": self.estimated_duration,
            "pending_breakpoints": self.pending_breakpoints,
            "indeterminate": self.indeterminate,
            "warnings": list(self.warnings),
        }
