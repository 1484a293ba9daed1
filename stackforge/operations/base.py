"""
Operation capability interface.

An Operation is the unit of work the engine invokes. The engine never knows
what an operation does; it only calls the four capabilities below:

- validate: check preconditions, no side effects
- dry_run: describe intended effects, no side effects
- execute: perform the work
- rollback: undo the work of a previously successful execute

Implementations are bound to OperationDefs by handler name when the registry
loads (see OperationCatalog). Each bound instance receives an OperationContext.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from stackforge.schemas import OperationDef, PlannedEffect


@dataclass(frozen=True)
class OperationResult:
    """Outcome of validate/execute/rollback: success flag plus a reason."""
    success: bool
    reason: Optional[str] = None

    @classmethod
    def ok(cls, reason: Optional[str] = None) -> "OperationResult":
        return cls(True, reason)

    @classmethod
    def fail(cls, reason: str) -> "OperationResult":
        return cls(False, reason)


@dataclass(frozen=True)
class OperationContext:
    """
    Everything an operation gets to see about its environment.

    Attributes:
        definition: The registry entry this instance is bound to
        project_root: Directory the operation should work in
        flags: Effective feature flags after profile resolution
        timeout: Seconds the engine allows execute/rollback to take (None = no limit)
        logger: Logger scoped to the operation
    """
    definition: OperationDef
    project_root: Path
    flags: Mapping[str, bool] = field(default_factory=dict)
    timeout: Optional[float] = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("stackforge.operations"))

    @property
    def key(self) -> str:
        return self.definition.key

    @property
    def params(self) -> dict[str, Any]:
        return self.definition.params


class Operation(ABC):
    """
    Abstract base class for operations.

    Subclasses must implement execute(). The defaults for the other
    capabilities are: validate succeeds, dry_run reports no effects beyond
    what the registry declares, and rollback is unsupported.
    """

    def __init__(self, context: OperationContext):
        self.context = context

    @property
    def definition(self) -> OperationDef:
        return self.context.definition

    @property
    def logger(self) -> logging.Logger:
        return self.context.logger

    def validate(self) -> OperationResult:
        """Check preconditions without side effects."""
        return OperationResult.ok()

    def dry_run(self) -> PlannedEffect:
        """Describe intended effects without performing them."""
        return PlannedEffect(
            operation_key=self.definition.key,
            estimated_duration=self.definition.estimated_duration,
        )

    @abstractmethod
    def execute(self) -> OperationResult:
        """
        Perform the operation.

        The engine does not interrupt a running call. Implementations must
        honour ``self.context.timeout`` themselves (ShellOperation passes it
        to subprocess.run); the engine only fails an operation whose
        measured duration exceeded it after the call returns.

        Returns:
            OperationResult; a failure halts the run

        Raises:
            Exception: Treated the same as a failed result
        """
        pass

    def rollback(self) -> OperationResult:
        """Undo a previously successful execute."""
        return OperationResult.fail(f"{type(self).__name__} does not support rollback")


class NoOpOperation(Operation):
    """
    Operation that does nothing and always succeeds.

    Useful for marker steps in a registry and in tests.
    """

    def execute(self) -> OperationResult:
        self.logger.debug(f"noop: {self.definition.key}")
        return OperationResult.ok("noop")

    def rollback(self) -> OperationResult:
        return OperationResult.ok("noop")
