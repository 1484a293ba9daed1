"""
Error classes for stackforge runs.

These error types tell the caller how far a failure reaches:
- ConfigurationError: The registry or configuration is unusable; no run starts
- PreconditionError: An operation's validate() failed; fix and re-run
- UnmetDependencyError: A narrowed run selected work whose dependencies are missing
- ExecutionError: A live operation failed or timed out; the run halted
- PersistenceError: A checkpoint could not be durably recorded; always fatal

Error handling contract:
- Operations return OperationResult values (success or failure with a reason)
- The engine turns failed results into these exceptions at the run boundary
- Nothing is retried automatically; retry is an explicit re-invocation
"""

from typing import Optional


class StackforgeError(Exception):
    """Base exception for stackforge."""
    pass


class ConfigurationError(StackforgeError):
    """
    Malformed or self-contradictory registry or configuration.

    Examples:
    - Dependency on an operation id that does not exist
    - Cycle in the phase dependency graph
    - Phase or operation entry missing a required field
    - Handler name that no implementation is registered for

    Fatal: the run never starts.
    """
    pass


class UnknownProfileError(ConfigurationError):
    """Raised when a profile name cannot be resolved after normalization."""

    def __init__(self, name: str, available: Optional[list[str]] = None):
        self.name = name
        self.available = list(available or [])
        message = f"Unknown profile: {name!r}"
        if self.available:
            message += f". Available: {', '.join(self.available)}"
        super().__init__(message)


class OperationError(StackforgeError):
    """Base for errors scoped to a single operation within a phase."""

    def __init__(self, phase_id: str, operation_id: Optional[str], reason: str):
        self.phase_id = phase_id
        self.operation_id = operation_id
        self.reason = reason
        super().__init__(f"{self.key}: {reason}")

    @property
    def key(self) -> str:
        if self.operation_id is None:
            return self.phase_id
        return f"{self.phase_id}/{self.operation_id}"


class PreconditionError(OperationError):
    """
    An operation's validate() reported failure.

    Recoverable: the checkpoint store is left untouched so a retry after
    fixing the precondition resumes cleanly.
    """
    pass


class ExecutionError(OperationError):
    """
    A live operation returned failure, raised, or timed out.

    The engine halts immediately and never writes a success checkpoint
    for the failing operation.
    """
    pass


class UnmetDependencyError(OperationError):
    """
    A single-phase or single-operation selection whose dependencies are
    not checkpointed as successful.
    """

    def __init__(self, phase_id: str, operation_id: Optional[str], missing: list[str]):
        self.missing = list(missing)
        super().__init__(
            phase_id,
            operation_id,
            f"dependencies not checkpointed: {', '.join(self.missing)}",
        )


class PersistenceError(StackforgeError):
    """
    The checkpoint store could not durably record an outcome.

    Fatal regardless of the operation's own success, since losing checkpoint
    state would cause wrong skip decisions on the next run.
    """
    pass
