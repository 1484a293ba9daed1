"""
Definition schemas - phases and operations as declared in the registry.

OperationDef and PhaseDef are parsed once when the registry loads and are
immutable afterwards. The engine holds references to them, never copies.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional


class BreakpointKind(str, Enum):
    """Kind of external work required after a phase completes."""
    NONE = "none"
    VERIFY = "verify"
    REVIEW = "review"
    MANUAL = "manual"
    HANDOFF = "handoff"

    @property
    def precedence(self) -> int:
        """Rank in the total order handoff > manual > review > verify > none."""
        return _BREAKPOINT_PRECEDENCE[self]

    @classmethod
    def aggregate(cls, kinds: Iterable["BreakpointKind"]) -> "BreakpointKind":
        """Return the highest-precedence kind, or NONE for an empty input."""
        result = cls.NONE
        for kind in kinds:
            if kind.precedence > result.precedence:
                result = kind
        return result

    @classmethod
    def parse(cls, value: Any) -> "BreakpointKind":
        if value is None or value is False:
            return cls.NONE
        if value is True:
            return cls.HANDOFF
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(k.value for k in cls)
            raise ValueError(f"unknown breakpoint kind {value!r} (expected one of: {valid})")


_BREAKPOINT_PRECEDENCE = {
    BreakpointKind.NONE: 0,
    BreakpointKind.VERIFY: 1,
    BreakpointKind.REVIEW: 2,
    BreakpointKind.MANUAL: 3,
    BreakpointKind.HANDOFF: 4,
}


def _as_tuple(value: Any, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value)
    raise ValueError(f"'{field_name}' must be a string or a list, got {type(value).__name__}")


def _as_duration(value: Any) -> float:
    """Parse seconds from a number or a '90s' / '5m' / '1h' string."""
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().lower()
    multipliers = {"s": 1, "m": 60, "h": 3600}
    if text and text[-1] in multipliers:
        return float(text[:-1]) * multipliers[text[-1]]
    return float(text)


@dataclass(frozen=True)
class OperationDef:
    """
    A single provisioning unit.

    Attributes:
        id: Stable identifier, unique across the registry
        phase_id: Owning phase (set by the registry from the phase listing)
        name: Display name (defaults to id)
        description: Free text
        dependencies: Operation ids that must be checkpointed first
        creates: Paths the operation says it creates (advisory)
        modifies: Paths the operation says it modifies (advisory)
        breakpoint: Kind of external work needed once this operation is done
        estimated_duration: Expected runtime in seconds
        enabled: Disabled operations are reported but never invoked
        handler: Name of the implementation bound at load time
        params: Handler parameters
        timeout: Per-operation timeout in seconds (None uses the config default)
        requires: Feature flags that must all be on for the operation to run
        instructions: Handoff text describing the external work
    """
    id: str
    phase_id: str
    name: str = ""
    description: str = ""
    dependencies: frozenset[str] = field(default_factory=frozenset)
    creates: tuple[str, ...] = ()
    modifies: tuple[str, ...] = ()
    breakpoint: BreakpointKind = BreakpointKind.NONE
    estimated_duration: float = 0.0
    enabled: bool = True
    handler: str = "shell"
    params: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    timeout: Optional[float] = None
    requires: tuple[str, ...] = ()
    instructions: str = ""

    def __post_init__(self):
        if not self.id:
            raise ValueError("operation 'id' is required")
        if "/" in self.id:
            raise ValueError(f"operation id {self.id!r} must not contain '/'")
        if self.id in self.dependencies:
            raise ValueError(f"operation {self.id!r} depends on itself")
        if self.estimated_duration < 0:
            raise ValueError(f"operation {self.id!r}: estimated_duration must be >= 0")

    @property
    def key(self) -> str:
        """Checkpoint key: phase id and operation id."""
        return f"{self.phase_id}/{self.id}"

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "id": self.id,
            "phase_id": self.phase_id,
            "name": self.display_name,
            "handler": self.handler,
            "enabled": self.enabled,
            "breakpoint": self.breakpoint.value,
            "estimated_duration": self.estimated_duration,
        }
        if self.description:
            result["description"] = self.description
        if self.dependencies:
            result["dependencies"] = sorted(self.dependencies)
        if self.creates:
            result["creates"] = list(self.creates)
        if self.modifies:
            result["modifies"] = list(self.modifies)
        if self.params:
            result["params"] = dict(self.params)
        if self.timeout is not None:
            result["timeout"] = self.timeout
        if self.requires:
            result["requires"] = list(self.requires)
        if self.instructions:
            result["instructions"] = self.instructions
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any], phase_id: str) -> "OperationDef":
        """Parse an operation entry. Raises ValueError on malformed input."""
        if not isinstance(data, dict):
            raise ValueError(f"operation entry must be a mapping, got {type(data).__name__}")
        if "id" not in data:
            raise ValueError("operation entry missing required field 'id'")
        timeout = data.get("timeout")
        return cls(
            id=str(data["id"]),
            phase_id=phase_id,
            name=str(data.get("name", "")),
            description=str(data.get("description", "")),
            dependencies=frozenset(_as_tuple(data.get("dependencies", data.get("depends_on")), "dependencies")),
            creates=_as_tuple(data.get("creates"), "creates"),
            modifies=_as_tuple(data.get("modifies"), "modifies"),
            breakpoint=BreakpointKind.parse(data.get("breakpoint")),
            estimated_duration=_as_duration(data.get("estimated_duration")),
            enabled=bool(data.get("enabled", True)),
            handler=str(data.get("handler", "shell")),
            params=dict(data.get("params") or {}),
            timeout=_as_duration(timeout) if timeout is not None else None,
            requires=_as_tuple(data.get("requires"), "requires"),
            instructions=str(data.get("instructions", "")),
        )


@dataclass(frozen=True)
class PhaseDef:
    """
    An ordered, named grouping of operations.

    Attributes:
        id: Phase identifier
        name: Display name (defaults to id)
        description: Free text
        enabled: Disabled phases are skipped entirely
        dependencies: Phase ids that must be complete first
        operations: Member operation ids, order-significant
        breakpoint: Kind declared on the phase itself
        breakpoint_kind: Aggregate of the phase kind and all member kinds,
            computed once by the registry at load time
        requires: Feature flags that must all be on for the phase to run
        instructions: Handoff text for the phase as a whole
    """
    id: str
    name: str = ""
    description: str = ""
    enabled: bool = True
    dependencies: tuple[str, ...] = ()
    operations: tuple[str, ...] = ()
    breakpoint: BreakpointKind = BreakpointKind.NONE
    breakpoint_kind: BreakpointKind = BreakpointKind.NONE
    requires: tuple[str, ...] = ()
    instructions: str = ""

    def __post_init__(self):
        if not self.id:
            raise ValueError("phase 'id' is required")
        if "/" in self.id:
            raise ValueError(f"phase id {self.id!r} must not contain '/'")
        if self.id in self.dependencies:
            raise ValueError(f"phase {self.id!r} depends on itself")
        if len(set(self.operations)) != len(self.operations):
            raise ValueError(f"phase {self.id!r} lists an operation more than once")

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "id": self.id,
            "name": self.display_name,
            "enabled": self.enabled,
            "operations": list(self.operations),
            "breakpoint": self.breakpoint_kind.value,
        }
        if self.description:
            result["description"] = self.description
        if self.dependencies:
            result["dependencies"] = list(self.dependencies)
        if self.requires:
            result["requires"] = list(self.requires)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PhaseDef":
        """
        Parse a phase entry.

        Inline operation mappings are reduced to their ids here; the registry
        parses the mappings themselves into OperationDefs.
        """
        if not isinstance(data, dict):
            raise ValueError(f"phase entry must be a mapping, got {type(data).__name__}")
        if "id" not in data:
            raise ValueError("phase entry missing required field 'id'")
        if "operations" not in data:
            raise ValueError(f"phase {data['id']!r} missing required field 'operations'")
        raw_ops = data.get("operations") or []
        if not isinstance(raw_ops, list):
            raise ValueError(f"phase {data['id']!r}: 'operations' must be a list")
        op_ids = []
        for entry in raw_ops:
            if isinstance(entry, dict):
                if "id" not in entry:
                    raise ValueError(f"phase {data['id']!r}: operation entry missing required field 'id'")
                op_ids.append(str(entry["id"]))
            else:
                op_ids.append(str(entry))
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            description=str(data.get("description", "")),
            enabled=bool(data.get("enabled", True)),
            dependencies=_as_tuple(data.get("dependencies", data.get("depends_on")), "dependencies"),
            operations=tuple(op_ids),
            breakpoint=BreakpointKind.parse(data.get("breakpoint")),
            requires=_as_tuple(data.get("requires"), "requires"),
            instructions=str(data.get("instructions", "")),
        )


@dataclass(frozen=True)
class ProfileDef:
    """
    A named overlay over the registry.

    Attributes:
        key: Profile key as declared
        name: Display name (defaults to key)
        description: Free text
        phases: Whitelist of phase ids; None keeps every phase
        disable: Phase or operation ids to disable
        flags: Feature flags set by the profile
    """
    key: str
    name: str = ""
    description: str = ""
    phases: Optional[tuple[str, ...]] = None
    disable: tuple[str, ...] = ()
    flags: dict[str, bool] = field(default_factory=dict, compare=False, hash=False)

    @property
    def display_name(self) -> str:
        return self.name or self.key

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {"key": self.key, "name": self.display_name}
        if self.description:
            result["description"] = self.description
        if self.phases is not None:
            result["phases"] = list(self.phases)
        if self.disable:
            result["disable"] = list(self.disable)
        if self.flags:
            result["flags"] = dict(self.flags)
        return result

    @classmethod
    def from_dict(cls, key: str, data: Optional[dict[str, Any]]) -> "ProfileDef":
        data = data or {}
        if not isinstance(data, dict):
            raise ValueError(f"profile {key!r} must be a mapping, got {type(data).__name__}")
        flags = data.get("flags") or {}
        if not isinstance(flags, dict):
            raise ValueError(f"profile {key!r}: 'flags' must be a mapping")
        for flag, value in flags.items():
            if not isinstance(value, bool):
                raise ValueError(f"profile {key!r}: flag {flag!r} must be true or false")
        phases = data.get("phases")
        return cls(
            key=key,
            name=str(data.get("name", "")),
            description=str(data.get("description", "")),
            phases=_as_tuple(phases, "phases") if phases is not None else None,
            disable=_as_tuple(data.get("disable"), "disable"),
            flags={str(k): v for k, v in flags.items()},
        )
