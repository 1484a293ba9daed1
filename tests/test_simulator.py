"""Tests for stackforge.simulator."""

from pathlib import Path
from unittest.mock import MagicMock

from stackforge.operations import NoOpOperation, OperationContext
from stackforge.schemas import OperationDef, PlannedEffect
from stackforge.simulator import DryRunSimulator


def _definition(**kwargs):
    return OperationDef(id="db", phase_id="core", **kwargs)


class TestSimulate:
    """Merging declared effects with the operation's own plan."""

    def test_merges_declared_and_planned(self):
        definition = _definition(creates=("db/schema.sql",), modifies=("package.json",))
        operation = MagicMock()
        operation.dry_run.return_value = PlannedEffect(
            operation_key="core/db",
            creates=("db/schema.sql", "db/seed.sql"),
            commands=("make db",),
            estimated_duration=30,
        )

        effect = DryRunSimulator().simulate(definition, operation)

        assert effect.operation_key == "core/db"
        assert effect.creates == ("db/schema.sql", "db/seed.sql")
        assert effect.modifies == ("package.json",)
        assert effect.commands == ("make db",)
        assert effect.estimated_duration == 30
        assert not effect.indeterminate

    def test_declared_duration_used_when_plan_has_none(self):
        definition = _definition(estimated_duration=45)
        operation = MagicMock()
        operation.dry_run.return_value = PlannedEffect(operation_key="core/db")

        assert DryRunSimulator().simulate(definition, operation).estimated_duration == 45

    def test_raising_plan_is_indeterminate(self):
        definition = _definition(creates=("db/schema.sql",))
        operation = MagicMock()
        operation.dry_run.side_effect = ConnectionError("database unreachable")

        effect = DryRunSimulator().simulate(definition, operation)

        assert effect.indeterminate
        assert effect.creates == ("db/schema.sql",)
        assert effect.warning == "plan unavailable: database unreachable"

    def test_missing_plan_is_indeterminate(self):
        operation = MagicMock()
        operation.dry_run.return_value = None

        effect = DryRunSimulator().simulate(_definition(), operation)

        assert effect.indeterminate
        assert effect.warning == "operation returned no plan"

    def test_default_operation_plan(self, tmp_path):
        definition = _definition(estimated_duration=5)
        operation = NoOpOperation(OperationContext(definition=definition, project_root=Path(tmp_path)))

        effect = DryRunSimulator().simulate(definition, operation)

        assert effect.commands == ()
        assert effect.estimated_duration == 5
        assert not effect.indeterminate


class TestSummarize:

    def test_counts_pending_breakpoints(self):
        effects = [
            PlannedEffect("core/a", creates=("a",), commands=("x", "y")),
            PlannedEffect("core/b", modifies=("a", "b")),
        ]
        summary = DryRunSimulator().summarize(effects, pending_breakpoints=2)

        assert summary.operations == 2
        assert summary.files_to_create == 1
        assert summary.files_to_modify == 1
        assert summary.commands == 2
        assert summary.pending_breakpoints == 2
