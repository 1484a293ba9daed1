"""Tests for stackforge.schemas.

Covers definition parsing, breakpoint precedence, checkpoint records,
run state, planned effects, handoff rendering and run reports.
"""

from datetime import datetime, timezone

import pytest

from stackforge.schemas import (
    CHECKPOINT_SCHEMA_VERSION,
    BreakpointKind,
    CheckpointEntry,
    CheckpointStatus,
    HandoffArtifact,
    OperationDef,
    OperationOutcome,
    OutcomeStatus,
    PhaseDef,
    PlannedEffect,
    ProfileDef,
    RunMarker,
    RunMarkerStatus,
    RunMode,
    RunReport,
    RunScope,
    RunState,
    RunStatus,
    RunSummary,
    ScopeKind,
)


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class TestBreakpointKind:
    """Tests for the breakpoint precedence table."""

    def test_precedence_order(self):
        ordered = [
            BreakpointKind.NONE,
            BreakpointKind.VERIFY,
            BreakpointKind.REVIEW,
            BreakpointKind.MANUAL,
            BreakpointKind.HANDOFF,
        ]
        assert [k.precedence for k in ordered] == sorted(k.precedence for k in ordered)

    def test_aggregate_picks_highest(self):
        kinds = [BreakpointKind.VERIFY, BreakpointKind.HANDOFF, BreakpointKind.REVIEW]
        assert BreakpointKind.aggregate(kinds) == BreakpointKind.HANDOFF

    def test_aggregate_empty_is_none(self):
        assert BreakpointKind.aggregate([]) == BreakpointKind.NONE

    @pytest.mark.parametrize("value,expected", [
        (None, BreakpointKind.NONE),
        (False, BreakpointKind.NONE),
        (True, BreakpointKind.HANDOFF),
        ("Review", BreakpointKind.REVIEW),
        (" manual ", BreakpointKind.MANUAL),
    ])
    def test_parse(self, value, expected):
        assert BreakpointKind.parse(value) == expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="unknown breakpoint kind"):
            BreakpointKind.parse("pause")


class TestOperationDef:
    """Tests for OperationDef parsing and invariants."""

    def test_from_dict_defaults(self):
        op = OperationDef.from_dict({"id": "init"}, "foundation")
        assert op.key == "foundation/init"
        assert op.display_name == "init"
        assert op.handler == "shell"
        assert op.enabled is True
        assert op.dependencies == frozenset()
        assert op.breakpoint == BreakpointKind.NONE

    def test_from_dict_full(self):
        op = OperationDef.from_dict({
            "id": "db",
            "name": "Database",
            "depends_on": ["init"],
            "creates": "db/schema.sql",
            "modifies": ["package.json"],
            "breakpoint": "verify",
            "estimated_duration": "2m",
            "timeout": "1h",
            "requires": ["ENABLE_DB"],
            "params": {"command": "make db"},
        }, "core")
        assert op.dependencies == frozenset({"init"})
        assert op.creates == ("db/schema.sql",)
        assert op.modifies == ("package.json",)
        assert op.breakpoint == BreakpointKind.VERIFY
        assert op.estimated_duration == 120.0
        assert op.timeout == 3600.0
        assert op.requires == ("ENABLE_DB",)
        assert op.params == {"command": "make db"}

    def test_missing_id(self):
        with pytest.raises(ValueError, match="'id'"):
            OperationDef.from_dict({"name": "x"}, "p")

    def test_self_dependency(self):
        with pytest.raises(ValueError, match="depends on itself"):
            OperationDef.from_dict({"id": "a", "dependencies": ["a"]}, "p")

    def test_slash_in_id(self):
        with pytest.raises(ValueError, match="must not contain"):
            OperationDef(id="a/b", phase_id="p")

    def test_negative_duration(self):
        with pytest.raises(ValueError, match="estimated_duration"):
            OperationDef(id="a", phase_id="p", estimated_duration=-1)

    def test_to_dict_sorted_dependencies(self):
        op = OperationDef(id="c", phase_id="p", dependencies=frozenset({"b", "a"}))
        assert op.to_dict()["dependencies"] == ["a", "b"]


class TestPhaseDef:
    """Tests for PhaseDef parsing."""

    def test_inline_operations_reduced_to_ids(self):
        phase = PhaseDef.from_dict({
            "id": "p1",
            "operations": [{"id": "a", "command": "true"}, "b"],
        })
        assert phase.operations == ("a", "b")

    def test_requires_operations_field(self):
        with pytest.raises(ValueError, match="'operations'"):
            PhaseDef.from_dict({"id": "p1"})

    def test_empty_operations_allowed(self):
        phase = PhaseDef.from_dict({"id": "p1", "operations": []})
        assert phase.operations == ()

    def test_duplicate_operation(self):
        with pytest.raises(ValueError, match="more than once"):
            PhaseDef.from_dict({"id": "p1", "operations": ["a", "a"]})

    def test_self_dependency(self):
        with pytest.raises(ValueError, match="depends on itself"):
            PhaseDef.from_dict({"id": "p1", "dependencies": ["p1"], "operations": []})

    def test_breakpoint_true_is_handoff(self):
        phase = PhaseDef.from_dict({"id": "ai", "breakpoint": True, "operations": []})
        assert phase.breakpoint == BreakpointKind.HANDOFF


class TestProfileDef:

    def test_from_dict(self):
        profile = ProfileDef.from_dict("minimal", {
            "name": "Minimal",
            "phases": ["foundation"],
            "disable": "lint",
            "flags": {"ENABLE_AUTH": False},
        })
        assert profile.display_name == "Minimal"
        assert profile.phases == ("foundation",)
        assert profile.disable == ("lint",)
        assert profile.flags == {"ENABLE_AUTH": False}

    def test_empty_profile(self):
        profile = ProfileDef.from_dict("full", None)
        assert profile.phases is None
        assert profile.disable == ()

    def test_non_bool_flag(self):
        with pytest.raises(ValueError, match="true or false"):
            ProfileDef.from_dict("x", {"flags": {"ENABLE_AUTH": "yes"}})


class TestCheckpointEntry:
    """Tests for checkpoint record serialization."""

    def test_round_trip(self):
        entry = CheckpointEntry(
            key="p1/a",
            status=CheckpointStatus.FAILED,
            completed_at=NOW,
            run_id="abc",
            detail="boom",
        )
        data = entry.to_dict()
        assert data["schema_version"] == CHECKPOINT_SCHEMA_VERSION
        assert data["completed_at"] == "2024-05-01T12:00:00+00:00"
        assert CheckpointEntry.from_dict(data) == entry

    def test_key_parts(self):
        entry = CheckpointEntry(key="p1/a", status=CheckpointStatus.SUCCESS, completed_at=NOW)
        assert entry.phase_id == "p1"
        assert entry.operation_id == "a"
        assert entry.succeeded

    def test_naive_timestamp_rejected(self):
        with pytest.raises(ValueError, match="timezone-aware"):
            CheckpointEntry(key="p1/a", status=CheckpointStatus.SUCCESS, completed_at=datetime(2024, 1, 1))

    def test_bad_key_rejected(self):
        with pytest.raises(ValueError, match="phase/operation"):
            CheckpointEntry(key="a", status=CheckpointStatus.SUCCESS, completed_at=NOW)

    def test_newer_schema_rejected(self):
        data = {
            "schema_version": CHECKPOINT_SCHEMA_VERSION + 1,
            "key": "p1/a",
            "status": "success",
            "completed_at": NOW.isoformat(),
        }
        with pytest.raises(ValueError, match="newer than supported"):
            CheckpointEntry.from_dict(data)


class TestRunMarker:

    def test_round_trip(self):
        marker = RunMarker(
            run_id="r1",
            status=RunMarkerStatus.PAUSED,
            phase_id="ai",
            handoff_path="/tmp/ai.md",
            resume_command="stackforge run --resume",
            updated_at=NOW,
        )
        assert RunMarker.from_dict(marker.to_dict()) == marker

    def test_updated_at_defaults_to_now(self):
        marker = RunMarker(run_id="r1", status=RunMarkerStatus.RUNNING)
        assert marker.updated_at.tzinfo is not None


class TestRunState:
    """Tests for RunScope and RunState."""

    def test_scope_constructors(self):
        assert RunScope.all().kind == ScopeKind.ALL
        assert str(RunScope.phase("p1")) == "phase:p1"
        assert str(RunScope.operation("a")) == "operation:a"

    def test_scope_requires_target(self):
        with pytest.raises(ValueError):
            RunScope(ScopeKind.PHASE)

    def test_all_scope_rejects_target(self):
        with pytest.raises(ValueError):
            RunScope(ScopeKind.ALL, "p1")

    def test_defaults(self):
        state = RunState()
        assert state.mode == RunMode.EXECUTE
        assert state.scope == RunScope.all()
        assert len(state.run_id) == 12
        assert state.is_live

    def test_dry_run_not_live(self):
        assert not RunState(mode=RunMode.DRY_RUN).is_live
        assert not RunState(mode=RunMode.VALIDATE).is_live
        assert RunState(mode=RunMode.ROLLBACK).is_live


class TestRunSummary:
    """Tests for aggregating planned effects."""

    def test_from_effects_dedupes_paths(self):
        effects = [
            PlannedEffect("p/a", creates=("a.txt",), commands=("make a",), estimated_duration=10),
            PlannedEffect("p/b", creates=("b.txt",), modifies=("a.txt", "c.txt"), estimated_duration=5),
            PlannedEffect("p/c", modifies=("c.txt",), indeterminate=True, warning="no plan"),
        ]
        summary = RunSummary.from_effects(effects, pending_breakpoints=2)
        assert summary.operations == 3
        assert summary.files_to_create == 2
        assert summary.files_to_modify == 1  # a.txt is created in this run
        assert summary.commands == 1
        assert summary.estimated_duration == 15
        assert summary.pending_breakpoints == 2
        assert summary.indeterminate == 1
        assert summary.warnings == ("p/c: no plan",)

    def test_empty(self):
        summary = RunSummary.from_effects([])
        assert summary.operations == 0
        assert summary.to_dict()["warnings"] == []


class TestHandoffArtifact:

    def test_render_sections(self):
        artifact = HandoffArtifact(
            phase_id="ai",
            kind=BreakpointKind.HANDOFF,
            instructions="Write the system prompt.",
            affected_paths=("prompts/system.md",),
            operations=("prompt",),
            created_at=NOW,
            resume_hint="stackforge run --resume",
        )
        text = artifact.render("AI Integration")
        assert text.startswith("# Handoff: AI Integration")
        assert "## Work required" in text
        assert "Write the system prompt." in text
        assert "- `prompt`" in text
        assert "- `prompts/system.md`" in text
        assert "stackforge run --resume" in text

    def test_path_not_compared(self):
        a = HandoffArtifact(phase_id="ai", kind=BreakpointKind.REVIEW, instructions="x")
        b = HandoffArtifact(phase_id="ai", kind=BreakpointKind.REVIEW, instructions="x", path="/tmp/x.md")
        assert a == b


class TestRunReport:
    """Tests for RunReport accessors and serialization."""

    def _report(self):
        report = RunReport(run_id="r1", mode=RunMode.EXECUTE, started_at=NOW)
        report.outcomes = [
            OperationOutcome("p1/a", OutcomeStatus.EXECUTED, duration_seconds=1.23456),
            OperationOutcome("p1/b", OutcomeStatus.SKIPPED, reason="already checkpointed"),
            OperationOutcome("p2/c", OutcomeStatus.FAILED, reason="boom"),
        ]
        return report

    def test_status_lists(self):
        report = self._report()
        assert report.executed == ["p1/a"]
        assert report.skipped == ["p1/b"]
        assert report.failed == ["p2/c"]
        assert report.outcome_for("p2/c").operation_id == "c"
        assert report.outcome_for("missing") is None

    def test_success(self):
        report = self._report()
        assert report.success
        report.status = RunStatus.PAUSED
        assert report.success
        report.status = RunStatus.HALTED
        assert not report.success

    def test_to_dict(self):
        report = self._report()
        report.status = RunStatus.HALTED
        report.error = "p2/c: boom"
        data = report.to_dict()
        assert data["status"] == "halted"
        assert data["mode"] == "execute"
        assert data["error"] == "p2/c: boom"
        assert data["outcomes"][0]["duration_seconds"] == 1.235
        assert "handoff" not in data
        assert "warnings" not in data
