"""
Tests for stackforge.registry.

Tests cover:
- Loading from YAML and JSON files
- Structural errors (missing references, cycles, forward dependencies)
- Stable phase ordering
- Profile resolution and overlays
- Lint warnings from validate()
"""

import json

import pytest
import yaml

from stackforge.errors import ConfigurationError, UnknownProfileError
from stackforge.registry import (
    Registry,
    load_registry,
    normalize_profile_name,
    validate,
)
from stackforge.schemas import BreakpointKind


def _op(op_id, **extra):
    return {"id": op_id, "handler": "fake", **extra}


def _phase(phase_id, ops, **extra):
    return {"id": phase_id, "operations": ops, **extra}


PROFILED = {
    "flags": {"ENABLE_AUTH": True},
    "phases": [
        _phase("foundation", [_op("init")]),
        _phase("auth", [_op("login", requires=["ENABLE_AUTH"])], dependencies=["foundation"]),
        _phase("ai", [_op("sdk"), _op("lint")], dependencies=["foundation"], breakpoint="handoff"),
    ],
    "profiles": {
        "minimal": {"phases": ["foundation"]},
        "ai_chatbot": {"name": "AI Chatbot", "disable": ["lint"], "flags": {"ENABLE_AUTH": False}},
        "full": {},
    },
    "aliases": {"chat": "ai-chatbot"},
}


class TestLoadRegistry:
    """Tests for loading registry files."""

    def test_load_yaml(self, tmp_path, scenario, config, catalog):
        path = tmp_path / "phases.yaml"
        path.write_text(yaml.safe_dump(scenario))

        registry = load_registry(path, config=config, catalog=catalog)

        assert [p.id for p in registry.phase_order] == ["p1", "p2"]
        assert set(registry.operations) == {"a", "b", "c"}
        assert registry.source == path

    def test_load_json(self, tmp_path, scenario, config, catalog):
        path = tmp_path / "phases.json"
        path.write_text(json.dumps(scenario))

        registry = load_registry(path, config=config, catalog=catalog)

        assert registry.find_operation("c").key == "p2/c"

    def test_missing_file(self, tmp_path, config, catalog):
        with pytest.raises(ConfigurationError, match="not found"):
            load_registry(tmp_path / "nope.yaml", config=config, catalog=catalog)

    def test_empty_file(self, tmp_path, config, catalog):
        path = tmp_path / "phases.yaml"
        path.write_text("")
        with pytest.raises(ConfigurationError, match="empty"):
            load_registry(path, config=config, catalog=catalog)

    def test_unsupported_suffix(self, tmp_path, config, catalog):
        path = tmp_path / "phases.toml"
        path.write_text("phases = []")
        with pytest.raises(ConfigurationError, match="Unsupported file format"):
            load_registry(path, config=config, catalog=catalog)

    def test_invalid_yaml(self, tmp_path, config, catalog):
        path = tmp_path / "phases.yaml"
        path.write_text("phases: [unclosed")
        with pytest.raises(ConfigurationError, match="Failed to load"):
            load_registry(path, config=config, catalog=catalog)


class TestStructure:
    """Tests for structural validation at load time."""

    def test_missing_phases(self, make_registry):
        with pytest.raises(ConfigurationError, match="'phases'"):
            make_registry({"operations": []})

    def test_phase_missing_operations(self, make_registry):
        with pytest.raises(ConfigurationError, match="'operations'"):
            make_registry({"phases": [{"id": "p1"}]})

    def test_duplicate_phase(self, make_registry):
        data = {"phases": [_phase("p1", []), _phase("p1", [])]}
        with pytest.raises(ConfigurationError, match="Duplicate phase id"):
            make_registry(data)

    def test_duplicate_operation_across_phases(self, make_registry):
        data = {"phases": [_phase("p1", [_op("a")]), _phase("p2", [_op("a")])]}
        with pytest.raises(ConfigurationError, match="Duplicate operation id"):
            make_registry(data)

    def test_shared_operation_referenced_twice(self, make_registry):
        data = {
            "phases": [_phase("p1", ["a"]), _phase("p2", ["a"])],
            "operations": [_op("a")],
        }
        with pytest.raises(ConfigurationError, match="in phases p1 and p2"):
            make_registry(data)

    def test_unknown_referenced_operation(self, make_registry):
        with pytest.raises(ConfigurationError, match="unknown operation: ghost"):
            make_registry({"phases": [_phase("p1", ["ghost"])]})

    def test_unassigned_operation(self, make_registry):
        data = {"phases": [_phase("p1", [])], "operations": [_op("orphan")]}
        with pytest.raises(ConfigurationError, match="not assigned to any phase: orphan"):
            make_registry(data)

    def test_unknown_phase_dependency(self, make_registry):
        data = {"phases": [_phase("p1", [], dependencies=["p0"])]}
        with pytest.raises(ConfigurationError, match="unknown phase: p0"):
            make_registry(data)

    def test_unknown_operation_dependency(self, make_registry):
        data = {"phases": [_phase("p1", [_op("a", dependencies=["z"])])]}
        with pytest.raises(ConfigurationError, match=r"unknown operation\(s\): z"):
            make_registry(data)

    def test_phase_cycle(self, make_registry):
        data = {"phases": [
            _phase("p1", [], dependencies=["p2"]),
            _phase("p2", [], dependencies=["p1"]),
        ]}
        with pytest.raises(ConfigurationError, match="Dependency cycle among phases"):
            make_registry(data)

    def test_operation_cycle(self, make_registry):
        data = {"phases": [_phase("p1", [
            _op("a", dependencies=["b"]),
            _op("b", dependencies=["a"]),
        ])]}
        with pytest.raises(ConfigurationError, match="Dependency cycle among operations"):
            make_registry(data)

    def test_forward_dependency_within_phase(self, make_registry):
        data = {"phases": [_phase("p1", [_op("a", dependencies=["b"]), _op("b")])]}
        with pytest.raises(ConfigurationError, match="does not run before it"):
            make_registry(data)

    def test_forward_dependency_across_phases(self, make_registry):
        data = {"phases": [
            _phase("p1", [_op("a", dependencies=["c"])]),
            _phase("p2", [_op("c")]),
        ]}
        with pytest.raises(ConfigurationError, match="p1/a depends on c"):
            make_registry(data)

    def test_unknown_handler(self, make_registry):
        data = {"phases": [_phase("p1", [{"id": "a", "handler": "teleport"}])]}
        with pytest.raises(ConfigurationError, match="No operation registered for handler: teleport"):
            make_registry(data)

    def test_invalid_operation_entry(self, make_registry):
        data = {"phases": [_phase("p1", [_op("a", breakpoint="someday")])]}
        with pytest.raises(ConfigurationError, match="Invalid operation a in phase p1"):
            make_registry(data)


class TestOrdering:
    """Tests for phase order and operation positions."""

    def test_stable_topological_order(self, make_registry):
        data = {"phases": [
            _phase("c", [], dependencies=["a"]),
            _phase("b", []),
            _phase("a", []),
        ]}
        registry = make_registry(data)
        assert [p.id for p in registry.phase_order] == ["b", "a", "c"]
        assert [p.id for p in registry.phases] == ["c", "b", "a"]

    def test_ordered_operations(self, make_registry, scenario):
        registry = make_registry(scenario)
        assert [op.key for op in registry.ordered_operations()] == ["p1/a", "p1/b", "p2/c"]
        assert registry.position("a") < registry.position("b") < registry.position("c")

    def test_shared_operations_follow_phase_listing(self, make_registry):
        data = {
            "phases": [_phase("p1", ["second", "first"])],
            "operations": [_op("first"), _op("second")],
        }
        registry = make_registry(data)
        assert [op.id for op in registry.operations_in("p1")] == ["second", "first"]


class TestLookups:

    def test_get_phase_unknown(self, make_registry, scenario):
        registry = make_registry(scenario)
        with pytest.raises(ConfigurationError, match="Unknown phase: p9"):
            registry.get_phase("p9")

    def test_find_operation_by_key(self, make_registry, scenario):
        registry = make_registry(scenario)
        assert registry.find_operation("p1/b").id == "b"

    def test_find_operation_wrong_phase(self, make_registry, scenario):
        registry = make_registry(scenario)
        with pytest.raises(ConfigurationError, match="Unknown operation: p2/b"):
            registry.find_operation("p2/b")

    def test_handler_bound_with_context(self, make_registry, scenario, config):
        registry = make_registry(scenario)
        handler = registry.handler("b")
        assert handler.definition.key == "p1/b"
        assert handler.context.project_root == config.project_root
        assert handler.context.logger.name == "stackforge.operations.b"


class TestShorthands:
    """command/script/rollback at the top level move into params."""

    def test_command_moves_to_params(self, make_registry):
        data = {"phases": [_phase("p1", [_op("a", command="make", rollback="make clean")])]}
        op = make_registry(data).find_operation("a")
        assert op.params == {"command": "make", "rollback": "make clean"}

    def test_explicit_params_win(self, make_registry):
        data = {"phases": [_phase("p1", [_op("a", command="make", params={"command": "gmake"})])]}
        op = make_registry(data).find_operation("a")
        assert op.params["command"] == "gmake"


class TestTimeouts:

    def test_operation_timeout_overrides_config(self, make_registry):
        data = {"phases": [_phase("p1", [_op("a", timeout="2m"), _op("b")])]}
        registry = make_registry(data)
        assert registry.handler("a").context.timeout == 120.0
        assert registry.handler("b").context.timeout is None


class TestProfiles:
    """Tests for profile resolution and overlays."""

    @pytest.mark.parametrize("name,expected", [
        ("AI-Chatbot", "ai_chatbot"),
        (" ai chatbot ", "ai_chatbot"),
        ("Web-App", "web_app"),
    ])
    def test_normalize(self, name, expected):
        assert normalize_profile_name(name) == expected

    @pytest.mark.parametrize("name,expected", [
        ("ai-chatbot", "ai_chatbot"),
        ("AI_CHATBOT", "ai_chatbot"),
        ("1", "minimal"),
        (3, "full"),
        ("chat", "ai_chatbot"),
        ("Chat", "ai_chatbot"),
    ])
    def test_resolve(self, make_registry, name, expected):
        assert make_registry(PROFILED).resolve_profile(name) == expected

    @pytest.mark.parametrize("name", ["nope", "0", "4"])
    def test_resolve_unknown(self, make_registry, name):
        with pytest.raises(UnknownProfileError) as exc_info:
            make_registry(PROFILED).resolve_profile(name)
        assert "minimal, ai_chatbot, full" in str(exc_info.value)

    def test_whitelist(self, make_registry):
        registry = make_registry(PROFILED, profile="minimal")
        enabled = [p.id for p in registry.phase_order if p.enabled]
        assert enabled == ["foundation"]
        assert registry.profile == "minimal"

    def test_disable_and_flags(self, make_registry):
        registry = make_registry(PROFILED, profile="chat")
        assert registry.flags["ENABLE_AUTH"] is False
        assert not registry.find_operation("login").enabled
        assert not registry.find_operation("lint").enabled
        assert registry.find_operation("sdk").enabled

    def test_no_profile_keeps_everything(self, make_registry):
        registry = make_registry(PROFILED)
        assert all(op.enabled for op in registry.operations.values())
        assert registry.profile is None

    def test_with_profile_returns_new_registry(self, make_registry):
        base = make_registry(PROFILED)
        overlaid = base.with_profile("minimal")
        assert overlaid is not base
        assert base.get_phase("ai").enabled
        assert not overlaid.get_phase("ai").enabled

    def test_config_flags_override_registry(self, config, catalog):
        config = config.with_overrides(flags={"ENABLE_AUTH": False})
        registry = Registry.from_dict(PROFILED, config=config, catalog=catalog)
        assert not registry.find_operation("login").enabled

    def test_undeclared_flag_is_off(self, make_registry):
        data = {"phases": [_phase("p1", [_op("a", requires=["NEVER_SET"])])]}
        assert not make_registry(data).find_operation("a").enabled

    def test_profile_unknown_phase(self, make_registry):
        data = {"phases": [_phase("p1", [])], "profiles": {"x": {"phases": ["p9"]}}}
        with pytest.raises(ConfigurationError, match="unknown phase: p9"):
            make_registry(data)

    def test_profile_disables_unknown_target(self, make_registry):
        data = {"phases": [_phase("p1", [])], "profiles": {"x": {"disable": ["ghost"]}}}
        with pytest.raises(ConfigurationError, match="unknown phase or operation: ghost"):
            make_registry(data)

    def test_alias_to_unknown_profile(self, make_registry):
        data = {"phases": [_phase("p1", [])], "profiles": {"x": {}}, "aliases": {"y": "z"}}
        with pytest.raises(ConfigurationError, match="unknown profile"):
            make_registry(data)

    def test_colliding_profile_names(self, make_registry):
        data = {"phases": [_phase("p1", [])], "profiles": {"web-app": {}, "Web_App": {}}}
        with pytest.raises(ConfigurationError, match="normalize to the same name"):
            make_registry(data)


class TestBreakpointAggregate:
    """Phase breakpoint_kind is the highest of the phase and enabled members."""

    def test_aggregate_from_operations(self, make_registry):
        data = {"phases": [_phase("p1", [
            _op("a", breakpoint="verify"),
            _op("b", breakpoint="manual"),
        ], breakpoint="review")]}
        assert make_registry(data).get_phase("p1").breakpoint_kind == BreakpointKind.MANUAL

    def test_disabled_operation_ignored(self, make_registry):
        data = {"phases": [_phase("p1", [
            _op("a"),
            _op("b", breakpoint="handoff", enabled=False),
        ])]}
        assert make_registry(data).get_phase("p1").breakpoint_kind == BreakpointKind.NONE


class TestValidate:
    """Tests for non-fatal lint warnings."""

    def _codes(self, registry):
        return [w.code for w in validate(registry)]

    def test_clean_registry(self, make_registry, scenario):
        assert validate(make_registry(scenario)) == []

    def test_empty_phase(self, make_registry):
        data = {"phases": [_phase("p1", [_op("a")]), _phase("p2", [])]}
        assert self._codes(make_registry(data)) == ["empty-phase"]

    def test_disabled_dependency(self, make_registry):
        data = {"phases": [
            _phase("p1", [_op("a")], enabled=False),
            _phase("p2", [_op("b")], dependencies=["p1"]),
        ]}
        assert "disabled-dependency" in self._codes(make_registry(data))

    def test_modifies_uncreated(self, make_registry):
        data = {"phases": [_phase("p1", [_op("a", modifies=["package.json"])])]}
        warnings = validate(make_registry(data))
        assert [w.code for w in warnings] == ["modifies-uncreated"]
        assert warnings[0].operation_id == "a"
        assert "package.json" in str(warnings[0])

    def test_unordered_after_breakpoint(self, make_registry):
        data = {"phases": [
            _phase("ai", [_op("prompt", creates=["prompts/system.md"])], breakpoint="handoff"),
            _phase("deploy", [_op("ship", creates=["dist/app.js"])]),
        ]}
        assert self._codes(make_registry(data)) == ["unordered-after-breakpoint"]

    def test_ordered_after_breakpoint(self, make_registry):
        data = {"phases": [
            _phase("ai", [_op("prompt", creates=["prompts/system.md"])], breakpoint="handoff"),
            _phase("deploy", [_op("ship", creates=["dist/app.js"])], dependencies=["ai"]),
        ]}
        assert validate(make_registry(data)) == []

    def test_final_breakpoint(self, make_registry):
        data = {"phases": [_phase("p1", [_op("a", breakpoint="review")])]}
        warnings = validate(make_registry(data))
        assert [w.code for w in warnings] == ["final-breakpoint"]
        assert warnings[0].phase_id == "p1"
