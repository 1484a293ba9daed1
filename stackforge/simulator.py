"""
Dry-run simulator - what a run would do, without doing it.

The simulator asks each operation for its plan (Operation.dry_run) and merges
it with the effects declared in the registry. It never performs side effects
and never fails structurally: a plan that cannot be computed becomes an
indeterminate effect carrying a warning.
"""

import logging
from typing import Iterable

from stackforge.operations import Operation
from stackforge.schemas import OperationDef, PlannedEffect, RunSummary

logger = logging.getLogger(__name__)


def _merge(*groups: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for group in groups:
        for item in group:
            seen.setdefault(item, None)
    return tuple(seen)


class DryRunSimulator:
    """Produces PlannedEffects for operations and summarizes them."""

    def simulate(self, definition: OperationDef, operation: Operation) -> PlannedEffect:
        """
        Plan one operation.

        Args:
            definition: Registry entry (declared, advisory effects)
            operation: Bound implementation

        Returns:
            PlannedEffect; indeterminate if the operation cannot plan
        """
        try:
            plan = operation.dry_run()
        except Exception as e:
            logger.warning(
                f"Dry run of {definition.key} failed: {e}",
                extra={"event": "simulator.indeterminate", "metadata": {"key": definition.key}},
            )
            return PlannedEffect(
                operation_key=definition.key,
                creates=definition.creates,
                modifies=definition.modifies,
                estimated_duration=definition.estimated_duration,
                indeterminate=True,
                warning=f"plan unavailable: {e}",
            )

        if plan is None:
            return PlannedEffect(
                operation_key=definition.key,
                creates=definition.creates,
                modifies=definition.modifies,
                estimated_duration=definition.estimated_duration,
                indeterminate=True,
                warning="operation returned no plan",
            )

        return PlannedEffect(
            operation_key=definition.key,
            creates=_merge(definition.creates, plan.creates),
            modifies=_merge(definition.modifies, plan.modifies),
            commands=tuple(plan.commands),
            estimated_duration=plan.estimated_duration or definition.estimated_duration,
            indeterminate=plan.indeterminate,
            warning=plan.warning,
        )

    def summarize(self, effects: Iterable[PlannedEffect], pending_breakpoints: int = 0) -> RunSummary:
        return RunSummary.from_effects(effects, pending_breakpoints=pending_breakpoints)
