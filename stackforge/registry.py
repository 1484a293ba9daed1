"""
Registry - load and validate phase/operation definitions.

The registry provides:
- Loading phases, operations, profiles and aliases from a YAML or JSON file
- Structural validation (missing references, cycles, forward dependencies)
- Stable topological phase order
- Binding each operation to its implementation at load time
- Profile resolution (normalized names, numeric index, aliases) and overlays
- Non-fatal lint warnings via validate()

Example registry file:

    flags:
      ENABLE_AUTH: true

    phases:
      - id: foundation
        operations:
          - id: init-project
            command: pnpm init
            creates: [package.json]
      - id: ai
        dependencies: [foundation]
        breakpoint: handoff
        instructions: Write the system prompt in prompts/system.md
        operations: [ai-sdk]

    operations:
      - id: ai-sdk
        command: pnpm add ai
        modifies: [package.json]

    profiles:
      minimal:
        phases: [foundation]
      ai_chatbot:
        flags: {ENABLE_AUTH: false}

    aliases:
      chat: ai_chatbot

Loading has no side effects beyond reading the source file.
"""

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Union

import yaml

from stackforge.config import StackforgeConfig
from stackforge.errors import ConfigurationError, UnknownProfileError
from stackforge.operations import Operation, OperationCatalog, OperationContext
from stackforge.schemas import BreakpointKind, OperationDef, PhaseDef, ProfileDef

logger = logging.getLogger(__name__)

# Operation keys that may be given at the top level of an operation entry
# and are moved into ``params`` for the handler
_PARAM_SHORTHANDS = ("command", "script", "rollback")


def normalize_profile_name(name: Union[str, int]) -> str:
    """Normalize a profile name: trimmed, case-folded, '-' and ' ' become '_'."""
    return str(name).strip().casefold().replace("-", "_").replace(" ", "_")


def _load_file(path: Path) -> dict:
    """
    Load a registry file (YAML or JSON).

    Raises:
        ValueError: If file format is unsupported or parsing fails
    """
    suffix = path.suffix.lower()

    with open(path) as f:
        if suffix in (".yaml", ".yml"):
            return yaml.safe_load(f)
        elif suffix == ".json":
            return json.load(f)
        else:
            raise ValueError(f"Unsupported file format: {suffix}")


def _stable_toposort(
    nodes: list[str],
    dependencies: Mapping[str, Iterable[str]],
    kind: str,
) -> list[str]:
    """
    Topologically sort nodes, breaking ties by declaration order.

    Raises:
        ConfigurationError: If the graph has a cycle
    """
    placed: list[str] = []
    placed_set: set[str] = set()
    remaining = list(nodes)
    while remaining:
        for node in remaining:
            if all(dep in placed_set for dep in dependencies.get(node, ())):
                placed.append(node)
                placed_set.add(node)
                remaining.remove(node)
                break
        else:
            raise ConfigurationError(
                f"Dependency cycle among {kind}s: {', '.join(remaining)}"
            )
    return placed


@dataclass(frozen=True)
class RegistryWarning:
    """Non-fatal finding about a registry."""
    code: str
    message: str
    phase_id: Optional[str] = None
    operation_id: Optional[str] = None

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class Registry:
    """
    Immutable, validated set of phases and operations.

    Built by load_registry() or Registry.from_dict(). with_profile()
    returns a new Registry; an instance is never modified after load.

    Usage:
        registry = load_registry("phases.yaml", config=config)
        registry = registry.with_profile("ai-chatbot")

        for phase in registry.phase_order:
            for op in registry.operations_in(phase.id):
                registry.handler(op.id).validate()
    """

    def __init__(
        self,
        phases: list[PhaseDef],
        operations: list[OperationDef],
        profiles: dict[str, ProfileDef],
        aliases: dict[str, str],
        flags: dict[str, bool],
        handlers: dict[str, Operation],
        phase_order: list[str],
        data: dict[str, Any],
        config: Optional[StackforgeConfig],
        catalog: OperationCatalog,
        source: Optional[Path] = None,
        profile: Optional[str] = None,
    ):
        self._phases = {p.id: p for p in phases}
        self._operations = {o.id: o for o in operations}
        self._profiles = profiles
        self._aliases = aliases
        self._flags = flags
        self._handlers = handlers
        self._phase_order = tuple(self._phases[pid] for pid in phase_order)
        self._data = data
        self._config = config
        self._catalog = catalog
        self._source = source
        self._profile = profile
        self._positions = {
            op_id: i
            for i, op_id in enumerate(
                op_id for phase in self._phase_order for op_id in phase.operations
            )
        }

    # -- construction ----------------------------------------------------

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        config: Optional[StackforgeConfig] = None,
        catalog: Optional[OperationCatalog] = None,
        source: Optional[Path] = None,
        profile: Optional[str] = None,
    ) -> "Registry":
        """
        Build and validate a registry from a parsed mapping.

        Args:
            data: Parsed registry document
            config: Run configuration (project root, flags, default timeout)
            catalog: Operation implementations (default: built-ins + entry points)
            source: File the data came from, for messages
            profile: Resolved profile key to apply

        Raises:
            ConfigurationError: On any structural problem
        """
        where = f" in {source}" if source else ""
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"Registry{where} must be a mapping")
        if "phases" not in data:
            raise ConfigurationError(f"Registry{where} missing required field 'phases'")
        if not isinstance(data["phases"], list):
            raise ConfigurationError(f"Registry{where}: 'phases' must be a list")

        catalog = catalog or OperationCatalog.create_default()

        # Top-level operations, referenced from phases by id
        shared_ops: dict[str, dict[str, Any]] = {}
        for i, entry in enumerate(data.get("operations") or []):
            if not isinstance(entry, dict) or "id" not in entry:
                raise ConfigurationError(f"Operation entry #{i + 1}{where} missing required field 'id'")
            op_id = str(entry["id"])
            if op_id in shared_ops:
                raise ConfigurationError(f"Duplicate operation id{where}: {op_id}")
            shared_ops[op_id] = entry

        phases: list[PhaseDef] = []
        operations: list[OperationDef] = []
        assigned: dict[str, str] = {}
        for i, raw_phase in enumerate(data["phases"]):
            try:
                phase = PhaseDef.from_dict(raw_phase)
            except ValueError as e:
                raise ConfigurationError(f"Invalid phase entry #{i + 1}{where}: {e}")
            if any(p.id == phase.id for p in phases):
                raise ConfigurationError(f"Duplicate phase id{where}: {phase.id}")
            phases.append(phase)

            for entry in raw_phase["operations"] or []:
                if isinstance(entry, dict):
                    op_id = str(entry["id"])
                    if op_id in shared_ops:
                        raise ConfigurationError(f"Duplicate operation id{where}: {op_id}")
                    raw_op = entry
                else:
                    op_id = str(entry)
                    if op_id not in shared_ops:
                        raise ConfigurationError(
                            f"Phase {phase.id} references unknown operation: {op_id}"
                        )
                    raw_op = shared_ops[op_id]
                if op_id in assigned:
                    raise ConfigurationError(
                        f"Duplicate operation id{where}: {op_id} "
                        f"(in phases {assigned[op_id]} and {phase.id})"
                    )
                assigned[op_id] = phase.id
                try:
                    operations.append(OperationDef.from_dict(cls._expand_shorthands(raw_op), phase.id))
                except ValueError as e:
                    raise ConfigurationError(f"Invalid operation {op_id} in phase {phase.id}: {e}")

        unassigned = [op_id for op_id in shared_ops if op_id not in assigned]
        if unassigned:
            raise ConfigurationError(f"Operations not assigned to any phase: {', '.join(unassigned)}")

        phase_ids = {p.id for p in phases}
        for phase in phases:
            for dep in phase.dependencies:
                if dep not in phase_ids:
                    raise ConfigurationError(f"Phase {phase.id} depends on unknown phase: {dep}")
        op_ids = {o.id for o in operations}
        for op in operations:
            missing = sorted(op.dependencies - op_ids)
            if missing:
                raise ConfigurationError(
                    f"Operation {op.key} depends on unknown operation(s): {', '.join(missing)}"
                )

        phase_order = _stable_toposort(
            [p.id for p in phases],
            {p.id: p.dependencies for p in phases},
            "phase",
        )
        _stable_toposort(
            [o.id for o in operations],
            {o.id: o.dependencies for o in operations},
            "operation",
        )

        # Dependencies must point strictly backwards in the global order
        by_id = {p.id: p for p in phases}
        position = {
            op_id: i
            for i, op_id in enumerate(op_id for pid in phase_order for op_id in by_id[pid].operations)
        }
        for op in operations:
            for dep in sorted(op.dependencies):
                if position[dep] >= position[op.id]:
                    raise ConfigurationError(
                        f"Operation {op.key} depends on {dep}, which does not run before it"
                    )

        profiles, aliases = cls._parse_profiles(data, phase_ids, op_ids, where)

        flags: dict[str, bool] = {}
        for name, value in (data.get("flags") or {}).items():
            if not isinstance(value, bool):
                raise ConfigurationError(f"Registry flag {name!r} must be true or false")
            flags[str(name)] = value
        if config is not None:
            flags.update(config.flags)

        overlay: Optional[ProfileDef] = None
        if profile is not None:
            overlay = profiles[profile]
            flags.update(overlay.flags)

        phases, operations = cls._apply_overlay(phases, operations, overlay, flags)

        handlers = cls._bind_handlers(operations, catalog, config, flags, source)

        return cls(
            phases=phases,
            operations=operations,
            profiles=profiles,
            aliases=aliases,
            flags=flags,
            handlers=handlers,
            phase_order=phase_order,
            data=dict(data),
            config=config,
            catalog=catalog,
            source=source,
            profile=profile,
        )

    @staticmethod
    def _expand_shorthands(entry: dict[str, Any]) -> dict[str, Any]:
        shorthands = {k: entry[k] for k in _PARAM_SHORTHANDS if k in entry}
        if not shorthands:
            return entry
        expanded = {k: v for k, v in entry.items() if k not in shorthands}
        expanded["params"] = {**shorthands, **(entry.get("params") or {})}
        return expanded

    @staticmethod
    def _parse_profiles(
        data: Mapping[str, Any],
        phase_ids: set[str],
        op_ids: set[str],
        where: str,
    ) -> tuple[dict[str, ProfileDef], dict[str, str]]:
        raw_profiles = data.get("profiles") or {}
        if not isinstance(raw_profiles, dict):
            raise ConfigurationError(f"'profiles'{where} must be a mapping of name to overlay")

        profiles: dict[str, ProfileDef] = {}
        normalized: dict[str, str] = {}
        for key, raw in raw_profiles.items():
            key = str(key)
            norm = normalize_profile_name(key)
            if norm in normalized:
                raise ConfigurationError(
                    f"Profiles {normalized[norm]!r} and {key!r} normalize to the same name"
                )
            try:
                profile = ProfileDef.from_dict(key, raw)
            except ValueError as e:
                raise ConfigurationError(f"Invalid profile{where}: {e}")
            for pid in profile.phases or ():
                if pid not in phase_ids:
                    raise ConfigurationError(f"Profile {key} lists unknown phase: {pid}")
            for target in profile.disable:
                if target not in phase_ids and target not in op_ids:
                    raise ConfigurationError(f"Profile {key} disables unknown phase or operation: {target}")
            profiles[key] = profile
            normalized[norm] = key

        raw_aliases = data.get("aliases") or {}
        if not isinstance(raw_aliases, dict):
            raise ConfigurationError(f"'aliases'{where} must be a mapping of alias to profile")
        aliases: dict[str, str] = {}
        for alias, target in raw_aliases.items():
            target_key = normalized.get(normalize_profile_name(target))
            if target_key is None:
                raise ConfigurationError(f"Alias {alias!r} points to unknown profile: {target!r}")
            aliases[normalize_profile_name(alias)] = target_key

        return profiles, aliases

    @staticmethod
    def _apply_overlay(
        phases: list[PhaseDef],
        operations: list[OperationDef],
        overlay: Optional[ProfileDef],
        flags: Mapping[str, bool],
    ) -> tuple[list[PhaseDef], list[OperationDef]]:
        """Resolve enabled state from the profile and flags, and aggregate breakpoints."""
        disabled = set(overlay.disable) if overlay else set()
        whitelist = set(overlay.phases) if overlay and overlay.phases is not None else None

        def flags_on(requires: Iterable[str]) -> bool:
            return all(flags.get(name, False) for name in requires)

        resolved_ops = []
        for op in operations:
            enabled = op.enabled and op.id not in disabled and flags_on(op.requires)
            resolved_ops.append(op if enabled == op.enabled else replace(op, enabled=enabled))
        ops_by_phase: dict[str, list[OperationDef]] = {}
        for op in resolved_ops:
            ops_by_phase.setdefault(op.phase_id, []).append(op)

        resolved_phases = []
        for phase in phases:
            enabled = (
                phase.enabled
                and phase.id not in disabled
                and (whitelist is None or phase.id in whitelist)
                and flags_on(phase.requires)
            )
            kind = BreakpointKind.aggregate(
                [phase.breakpoint] + [op.breakpoint for op in ops_by_phase.get(phase.id, []) if op.enabled]
            )
            resolved_phases.append(replace(phase, enabled=enabled, breakpoint_kind=kind))

        return resolved_phases, resolved_ops

    @staticmethod
    def _bind_handlers(
        operations: list[OperationDef],
        catalog: OperationCatalog,
        config: Optional[StackforgeConfig],
        flags: Mapping[str, bool],
        source: Optional[Path],
    ) -> dict[str, Operation]:
        if config is not None:
            project_root = config.project_root
            default_timeout = config.operation_timeout
        else:
            project_root = source.parent if source else Path.cwd()
            default_timeout = None

        handlers: dict[str, Operation] = {}
        for op in operations:
            context = OperationContext(
                definition=op,
                project_root=project_root,
                flags=dict(flags),
                timeout=op.timeout if op.timeout is not None else default_timeout,
                logger=logging.getLogger(f"stackforge.operations.{op.id}"),
            )
            try:
                handlers[op.id] = catalog.create(context)
            except KeyError as e:
                raise ConfigurationError(f"Operation {op.key}: {e.args[0] if e.args else e}")
        return handlers

    # -- accessors -------------------------------------------------------

    @property
    def phases(self) -> tuple[PhaseDef, ...]:
        """Phases in declaration order."""
        return tuple(self._phases.values())

    @property
    def operations(self) -> dict[str, OperationDef]:
        """Operation id -> definition."""
        return dict(self._operations)

    @property
    def phase_order(self) -> tuple[PhaseDef, ...]:
        """Phases in dependency order, ties broken by declaration order."""
        return self._phase_order

    @property
    def profiles(self) -> dict[str, ProfileDef]:
        return dict(self._profiles)

    @property
    def aliases(self) -> dict[str, str]:
        return dict(self._aliases)

    @property
    def flags(self) -> dict[str, bool]:
        """Effective feature flags."""
        return dict(self._flags)

    @property
    def profile(self) -> Optional[str]:
        """Key of the applied profile, if any."""
        return self._profile

    @property
    def source(self) -> Optional[Path]:
        return self._source

    @property
    def config(self) -> Optional[StackforgeConfig]:
        return self._config

    def has_phase(self, phase_id: str) -> bool:
        return phase_id in self._phases

    def get_phase(self, phase_id: str) -> PhaseDef:
        """
        Raises:
            ConfigurationError: If the phase does not exist
        """
        if phase_id not in self._phases:
            raise ConfigurationError(
                f"Unknown phase: {phase_id}. Available: {', '.join(self._phases)}"
            )
        return self._phases[phase_id]

    def find_operation(self, ref: str) -> OperationDef:
        """
        Look up an operation by id or by "phase/operation" key.

        Raises:
            ConfigurationError: If no such operation exists
        """
        op_id = ref.split("/", 1)[1] if "/" in ref else ref
        op = self._operations.get(op_id)
        if op is None or ("/" in ref and op.key != ref):
            raise ConfigurationError(f"Unknown operation: {ref}")
        return op

    def operations_in(self, phase_id: str) -> list[OperationDef]:
        """Member operations of a phase in declared order."""
        return [self._operations[op_id] for op_id in self.get_phase(phase_id).operations]

    def ordered_operations(self) -> list[OperationDef]:
        """All operations in global execution order."""
        return [self._operations[op_id] for phase in self._phase_order for op_id in phase.operations]

    def position(self, op_id: str) -> int:
        return self._positions[op_id]

    def handler(self, op_id: str) -> Operation:
        """Bound Operation implementation for an operation id."""
        return self._handlers[op_id]

    # -- profiles --------------------------------------------------------

    def resolve_profile(self, name: Union[str, int]) -> str:
        """
        Resolve a user-supplied profile name to a declared profile key.

        Accepts any case, '-' or ' ' for '_', a 1-based index into the
        declared profile list, or an alias.

        Raises:
            UnknownProfileError: If nothing matches
        """
        available = list(self._profiles)
        norm = normalize_profile_name(name)

        if norm.isdigit():
            index = int(norm)
            if 1 <= index <= len(available):
                return available[index - 1]
            raise UnknownProfileError(str(name), available)

        for key in available:
            if normalize_profile_name(key) == norm:
                return key
        if norm in self._aliases:
            return self._aliases[norm]
        raise UnknownProfileError(str(name), available)

    def with_profile(self, name: Union[str, int]) -> "Registry":
        """Return a new registry with the named profile applied."""
        key = self.resolve_profile(name)
        logger.info(
            f"Applying profile: {key}",
            extra={"event": "registry.profile", "metadata": {"profile": key}},
        )
        return Registry.from_dict(
            self._data,
            config=self._config,
            catalog=self._catalog,
            source=self._source,
            profile=key,
        )


def load_registry(
    source: Union[Path, str],
    config: Optional[StackforgeConfig] = None,
    catalog: Optional[OperationCatalog] = None,
) -> Registry:
    """
    Load a registry from a YAML or JSON file.

    Args:
        source: Path to the registry file
        config: Run configuration
        catalog: Operation implementations (default: built-ins + entry points)

    Returns:
        Validated Registry

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    path = Path(source)
    if not path.exists():
        raise ConfigurationError(f"Registry file not found: {path}")
    try:
        data = _load_file(path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load {path}: {e}")
    if data is None:
        raise ConfigurationError(f"Registry file is empty: {path}")

    registry = Registry.from_dict(data, config=config, catalog=catalog, source=path)
    logger.debug(
        f"Loaded registry {path}: {len(registry.phases)} phases, {len(registry.operations)} operations",
        extra={"event": "registry.loaded", "metadata": {"source": str(path)}},
    )
    return registry


def validate(registry: Registry) -> list[RegistryWarning]:
    """
    Lint a loaded registry for suspicious but legal definitions.

    Returns:
        Warnings in phase order
    """
    warnings: list[RegistryWarning] = []
    order = registry.phase_order

    created: set[str] = set()
    creative_phases: list[PhaseDef] = []
    creative_ops: set[str] = set()

    for phase in order:
        ops = registry.operations_in(phase.id)
        if not ops:
            warnings.append(RegistryWarning(
                "empty-phase",
                f"Phase {phase.id} has no operations",
                phase_id=phase.id,
            ))

        if phase.enabled:
            for dep in phase.dependencies:
                if not registry.get_phase(dep).enabled:
                    warnings.append(RegistryWarning(
                        "disabled-dependency",
                        f"Phase {phase.id} depends on disabled phase {dep}",
                        phase_id=phase.id,
                    ))

        for op in ops:
            for path in op.modifies:
                if path not in created and not op.dependencies:
                    warnings.append(RegistryWarning(
                        "modifies-uncreated",
                        f"Operation {op.key} modifies {path}, which no earlier operation creates",
                        phase_id=phase.id,
                        operation_id=op.id,
                    ))

            has_effects = bool(op.creates or op.modifies)
            after_creative = bool(creative_phases)
            depends_on_creative = bool(op.dependencies & creative_ops) or any(
                p.id in phase.dependencies for p in creative_phases
            )
            if has_effects and op.breakpoint == BreakpointKind.NONE and after_creative and not depends_on_creative:
                warnings.append(RegistryWarning(
                    "unordered-after-breakpoint",
                    f"Operation {op.key} has effects but does not depend on any earlier breakpoint step "
                    f"({', '.join(p.id for p in creative_phases)})",
                    phase_id=phase.id,
                    operation_id=op.id,
                ))

            created.update(op.creates)

        if phase.breakpoint_kind != BreakpointKind.NONE:
            creative_phases.append(phase)
            creative_ops.update(op.id for op in ops)

    enabled = [p for p in order if p.enabled]
    if enabled and enabled[-1].breakpoint_kind != BreakpointKind.NONE:
        last = enabled[-1]
        warnings.append(RegistryWarning(
            "final-breakpoint",
            f"Final phase {last.id} has a {last.breakpoint_kind.value} breakpoint; there is nothing left to resume into",
            phase_id=last.id,
        ))

    return warnings
