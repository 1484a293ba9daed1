"""
RunState schema - transient descriptor of the current invocation.

Built from CLI arguments (or by a caller) once per run and consumed by the
engine. Never persisted.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class RunMode(str, Enum):
    """How operations are invoked."""
    VALIDATE = "validate"
    DRY_RUN = "dry-run"
    EXECUTE = "execute"
    ROLLBACK = "rollback"


class ScopeKind(str, Enum):
    """What part of the registry a run covers."""
    ALL = "all"
    PHASE = "phase"
    OPERATION = "operation"


@dataclass(frozen=True)
class RunScope:
    """Selected scope: everything, a single phase, or a single operation."""
    kind: ScopeKind = ScopeKind.ALL
    target: Optional[str] = None

    def __post_init__(self):
        if self.kind == ScopeKind.ALL and self.target is not None:
            raise ValueError("scope 'all' takes no target")
        if self.kind != ScopeKind.ALL and not self.target:
            raise ValueError(f"scope '{self.kind.value}' requires a target")

    @classmethod
    def all(cls) -> "RunScope":
        return cls()

    @classmethod
    def phase(cls, phase_id: str) -> "RunScope":
        return cls(ScopeKind.PHASE, phase_id)

    @classmethod
    def operation(cls, operation_id: str) -> "RunScope":
        return cls(ScopeKind.OPERATION, operation_id)

    def __str__(self) -> str:
        if self.kind == ScopeKind.ALL:
            return "all"
        return f"{self.kind.value}:{self.target}"


def generate_run_id() -> str:
    """Short unique run identifier."""
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class RunState:
    """
    Descriptor of one invocation.

    Attributes:
        mode: validate, dry-run, execute or rollback
        scope: Which phases/operations are selected
        resume_requested: Continue past breakpoints of already-complete phases
        force_rerun: Ignore success checkpoints and invoke everything in scope
        continue_through_breakpoints: Never pause at breakpoints
        profile: Resolved profile key applied to the registry, if any
        run_id: Identifier stamped on checkpoints and markers
    """
    mode: RunMode = RunMode.EXECUTE
    scope: RunScope = field(default_factory=RunScope)
    resume_requested: bool = False
    force_rerun: bool = False
    continue_through_breakpoints: bool = False
    profile: Optional[str] = None
    run_id: str = field(default_factory=generate_run_id)

    @property
    def is_live(self) -> bool:
        """True for modes that mutate the checkpoint store."""
        return self.mode in (RunMode.EXECUTE, RunMode.ROLLBACK)
