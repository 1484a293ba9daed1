"""
Execution engine - dependency-ordered, checkpointed, resumable runs.

The ExecutionEngine implements:
- Scope selection (everything, one phase, one operation) with dependency checks
- Skip-if-checkpointed resume semantics
- Four modes: validate, dry-run, execute, rollback
- Breakpoint handling: handoff artifacts and pausing after a phase
- Interrupt handling: SIGINT/SIGTERM stop the run between operations

Execution flow (execute mode):
1. Plan: phases in dependency order, filtered by scope
2. For each enabled phase, for each enabled operation in declared order:
   a. Skip if checkpointed as success (unless force_rerun)
   b. validate(); failure halts with PreconditionError, nothing recorded
   c. execute() within the operation timeout
   d. Record success before moving on, or record failed and halt
3. After each phase, classify its breakpoint; emit a handoff and pause if needed
4. Return a RunReport (completed, paused or halted)

Configuration and persistence errors propagate out of run(). Precondition
and execution failures are returned in a halted report.
"""

import logging
import signal
import subprocess
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional

from stackforge.breakpoints import BreakpointCoordinator
from stackforge.checkpoint_store import CheckpointStore
from stackforge.config import StackforgeConfig
from stackforge.errors import (
    ExecutionError,
    OperationError,
    PreconditionError,
    UnmetDependencyError,
)
from stackforge.operations import OperationResult
from stackforge.registry import Registry
from stackforge.schemas import (
    BreakpointKind,
    CheckpointStatus,
    OperationDef,
    OperationOutcome,
    OutcomeStatus,
    PhaseDef,
    PlannedEffect,
    RunMarker,
    RunMarkerStatus,
    RunMode,
    RunReport,
    RunState,
    RunStatus,
    ScopeKind,
)
from stackforge.simulator import DryRunSimulator

logger = logging.getLogger(__name__)

# (phase, operations selected in that phase)
Plan = list[tuple[PhaseDef, list[OperationDef]]]


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class _Halt(Exception):
    """Internal: stop the run and return a halted report."""

    def __init__(self, error: OperationError):
        self.error = error
        super().__init__(str(error))


class _Pause(Exception):
    """Internal: stop the run and return a paused report."""
    pass


class _Interrupted(Exception):
    """Internal: a shutdown signal was received."""
    pass


class ExecutionEngine:
    """
    Runs a registry under a RunState.

    Usage:
        engine = ExecutionEngine(config, FileCheckpointStore(config.state_dir))
        report = engine.run(registry, RunState(mode=RunMode.EXECUTE))

        if report.status == RunStatus.PAUSED:
            print(report.resume_command)
    """

    def __init__(
        self,
        config: StackforgeConfig,
        store: CheckpointStore,
        simulator: Optional[DryRunSimulator] = None,
        coordinator: Optional[BreakpointCoordinator] = None,
        shutdown_event: Optional[threading.Event] = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Run configuration
            store: Checkpoint store (sole holder of cross-run state)
            simulator: Dry-run simulator (default: DryRunSimulator)
            coordinator: Breakpoint coordinator (default: writes to config.handoff_dir)
            shutdown_event: Pre-made shutdown event; when given, no signal
                handlers are installed (for embedding and tests)
        """
        self._config = config
        self._store = store
        self._simulator = simulator or DryRunSimulator()
        self._coordinator = coordinator or BreakpointCoordinator(
            config.handoff_dir, config_path=config.config_path
        )
        self._shutdown_event = shutdown_event

    @property
    def store(self) -> CheckpointStore:
        return self._store

    # -- public API ------------------------------------------------------

    def run(self, registry: Registry, run_state: RunState) -> RunReport:
        """
        Run the selected scope in the selected mode.

        Args:
            registry: Loaded registry (profile already applied)
            run_state: Mode, scope and flags for this invocation

        Returns:
            RunReport describing what happened

        Raises:
            ConfigurationError: Unknown scope target
            UnmetDependencyError: A narrowed scope whose dependencies are not checkpointed
            PersistenceError: A checkpoint could not be durably recorded
        """
        report = RunReport(run_id=run_state.run_id, mode=run_state.mode, started_at=_utcnow())
        plan = self._plan(registry, run_state, report)
        started = time.monotonic()

        logger.info(
            f"Run {run_state.run_id} started: mode={run_state.mode.value} scope={run_state.scope}",
            extra={
                "event": "run.started",
                "metadata": {
                    "run_id": run_state.run_id,
                    "mode": run_state.mode.value,
                    "scope": str(run_state.scope),
                    "profile": run_state.profile,
                },
            },
        )

        if run_state.is_live:
            self._write_marker(run_state, RunMarkerStatus.RUNNING)

        with self._shutdown_handler_context() as shutdown:
            try:
                if run_state.mode == RunMode.ROLLBACK:
                    self._run_rollback(registry, plan, run_state, report, shutdown)
                else:
                    self._run_forward(registry, plan, run_state, report, shutdown)
            except _Halt as halt:
                self._halt(report, run_state, halt.error)
            except _Pause:
                pass
            except _Interrupted:
                report.status = RunStatus.HALTED
                report.error = "interrupted by signal"
                report.resume_command = self._coordinator.resume_command(run_state)
                if run_state.is_live:
                    self._write_marker(
                        run_state,
                        RunMarkerStatus.INTERRUPTED,
                        phase_id=report.halted_phase,
                        resume_command=report.resume_command,
                    )
                logger.warning(
                    f"Run {run_state.run_id} interrupted",
                    extra={"event": "run.interrupted", "metadata": {"run_id": run_state.run_id}},
                )
            except UnmetDependencyError as e:
                if run_state.is_live:
                    self._write_marker(run_state, RunMarkerStatus.HALTED, phase_id=e.phase_id, operation_key=e.key)
                raise
            finally:
                report.elapsed_seconds = time.monotonic() - started

        if report.status == RunStatus.COMPLETED and run_state.is_live:
            self._write_marker(run_state, RunMarkerStatus.COMPLETED)

        logger.info(
            f"Run {run_state.run_id} {report.status.value} in {report.elapsed_seconds:.1f}s",
            extra={
                "event": f"run.{report.status.value}",
                "metadata": {
                    "run_id": run_state.run_id,
                    "executed": len(report.executed),
                    "skipped": len(report.skipped),
                    "failed": len(report.failed),
                },
            },
        )
        return report

    # -- planning --------------------------------------------------------

    def _plan(self, registry: Registry, run_state: RunState, report: RunReport) -> Plan:
        """Select phases and operations for the scope and check narrowed dependencies."""
        scope = run_state.scope
        enforce = run_state.mode in (RunMode.EXECUTE, RunMode.VALIDATE)

        if scope.kind == ScopeKind.OPERATION:
            op = registry.find_operation(scope.target)
            phase = registry.get_phase(op.phase_id)
            if run_state.mode != RunMode.ROLLBACK:
                missing = self._unmet_operation_deps(registry, [op])
                if missing:
                    self._unmet(report, enforce, op.phase_id, op.id, missing)
            return [(phase, [op])]

        if scope.kind == ScopeKind.PHASE:
            phase = registry.get_phase(scope.target)
            ops = registry.operations_in(phase.id)
            if run_state.mode != RunMode.ROLLBACK:
                missing = [
                    dep for dep in phase.dependencies
                    if not self._phase_complete(registry, registry.get_phase(dep))
                ]
                missing += self._unmet_operation_deps(registry, ops)
                if missing:
                    self._unmet(report, enforce, phase.id, None, missing)
            return [(phase, ops)]

        return [(phase, registry.operations_in(phase.id)) for phase in registry.phase_order]

    def _unmet(
        self,
        report: RunReport,
        enforce: bool,
        phase_id: str,
        operation_id: Optional[str],
        missing: list[str],
    ) -> None:
        error = UnmetDependencyError(phase_id, operation_id, missing)
        if enforce:
            raise error
        report.warnings.append(str(error))

    def _phase_complete(self, registry: Registry, phase: PhaseDef) -> bool:
        """A phase is complete when every enabled member is checkpointed; disabled phases count as complete."""
        if not phase.enabled:
            return True
        return all(self._store.has(op.key) for op in registry.operations_in(phase.id) if op.enabled)

    def _unmet_operation_deps(self, registry: Registry, ops: list[OperationDef]) -> list[str]:
        """Dependencies outside ``ops`` that are not satisfied."""
        selected = {op.id for op in ops}
        missing: list[str] = []
        for op in ops:
            for dep_id in sorted(op.dependencies - selected):
                dep = registry.operations[dep_id]
                if not self._dependency_satisfied(registry, dep) and dep.key not in missing:
                    missing.append(dep.key)
        return missing

    def _dependency_satisfied(self, registry: Registry, dep: OperationDef) -> bool:
        if not dep.enabled or not registry.get_phase(dep.phase_id).enabled:
            return True
        return self._store.has(dep.key)

    # -- forward modes ---------------------------------------------------

    def _run_forward(
        self,
        registry: Registry,
        plan: Plan,
        run_state: RunState,
        report: RunReport,
        shutdown: threading.Event,
    ) -> None:
        mode = run_state.mode
        single_operation = run_state.scope.kind == ScopeKind.OPERATION
        effects: list[PlannedEffect] = []
        pending_breakpoints = 0

        for phase, ops in plan:
            if not phase.enabled and not single_operation:
                logger.info(
                    f"Phase {phase.id} disabled, skipping",
                    extra={"event": "phase.disabled", "metadata": {"phase": phase.id}},
                )
                for op in ops:
                    self._outcome(report, op, OutcomeStatus.DISABLED, "phase disabled")
                continue

            logger.info(
                f"Phase {phase.id}: {phase.display_name}",
                extra={"event": "phase.started", "metadata": {"phase": phase.id, "mode": mode.value}},
            )
            ran_any = False
            pending_any = False

            for op in ops:
                if shutdown.is_set():
                    report.halted_phase = phase.id
                    raise _Interrupted()

                if not op.enabled:
                    self._outcome(report, op, OutcomeStatus.DISABLED, "operation disabled")
                    continue

                if not run_state.force_rerun and self._store.has(op.key):
                    self._outcome(report, op, OutcomeStatus.SKIPPED, "already checkpointed")
                    continue

                pending_any = True
                if mode == RunMode.VALIDATE:
                    self._validate_operation(registry, op, report)
                elif mode == RunMode.DRY_RUN:
                    effects.append(self._simulate_operation(registry, op, report))
                else:
                    self._execute_operation(registry, op, run_state, report)
                    ran_any = True

            kind = phase.breakpoint_kind
            if kind == BreakpointKind.NONE:
                continue

            enabled_ops = [op for op in ops if op.enabled]
            if mode == RunMode.DRY_RUN:
                if pending_any:
                    pending_breakpoints += 1
            elif mode == RunMode.EXECUTE and (ran_any or not run_state.resume_requested):
                self._handle_breakpoint(phase, enabled_ops, kind, run_state, report)

        if mode == RunMode.DRY_RUN:
            report.summary = self._simulator.summarize(effects, pending_breakpoints)
            report.warnings.extend(report.summary.warnings)

    def _validate_operation(self, registry: Registry, op: OperationDef, report: RunReport) -> None:
        started = time.monotonic()
        result = self._invoke(registry.handler(op.id).validate)
        duration = time.monotonic() - started
        if not result.success:
            self._outcome(report, op, OutcomeStatus.FAILED, result.reason, duration)
            raise _Halt(PreconditionError(op.phase_id, op.id, result.reason or "validation failed"))
        self._outcome(report, op, OutcomeStatus.VALIDATED, result.reason, duration)

    def _simulate_operation(self, registry: Registry, op: OperationDef, report: RunReport) -> PlannedEffect:
        effect = self._simulator.simulate(op, registry.handler(op.id))
        self._outcome(report, op, OutcomeStatus.SIMULATED, effect.warning, effect=effect)
        return effect

    def _execute_operation(
        self,
        registry: Registry,
        op: OperationDef,
        run_state: RunState,
        report: RunReport,
    ) -> None:
        handler = registry.handler(op.id)

        result = self._invoke(handler.validate)
        if not result.success:
            self._outcome(report, op, OutcomeStatus.FAILED, result.reason)
            raise _Halt(PreconditionError(op.phase_id, op.id, result.reason or "validation failed"))

        missing = [
            registry.operations[dep].key
            for dep in sorted(op.dependencies)
            if not self._dependency_satisfied(registry, registry.operations[dep])
        ]
        if missing:
            raise UnmetDependencyError(op.phase_id, op.id, missing)

        timeout = self._timeout_for(op)
        logger.info(
            f"Executing {op.key}",
            extra={"event": "operation.started", "metadata": {"key": op.key, "timeout": timeout}},
        )
        started = time.monotonic()
        result = self._invoke(handler.execute)
        duration = time.monotonic() - started
        if result.success and timeout is not None and duration > timeout:
            result = OperationResult.fail(f"exceeded timeout of {timeout:g}s ({duration:.1f}s)")

        if not result.success:
            reason = result.reason or "operation failed"
            self._store.record(op.key, CheckpointStatus.FAILED, detail=reason, run_id=run_state.run_id)
            self._outcome(report, op, OutcomeStatus.FAILED, reason, duration)
            logger.error(
                f"Operation {op.key} failed: {reason}",
                extra={"event": "operation.failed", "metadata": {"key": op.key, "reason": reason}},
            )
            raise _Halt(ExecutionError(op.phase_id, op.id, reason))

        self._store.record(op.key, CheckpointStatus.SUCCESS, run_id=run_state.run_id)
        report.last_checkpointed = op.key
        self._outcome(report, op, OutcomeStatus.EXECUTED, result.reason, duration)
        logger.info(
            f"Operation {op.key} completed in {duration:.1f}s",
            extra={"event": "operation.completed", "metadata": {"key": op.key, "duration": duration}},
        )

    def _handle_breakpoint(
        self,
        phase: PhaseDef,
        ops: list[OperationDef],
        kind: BreakpointKind,
        run_state: RunState,
        report: RunReport,
    ) -> None:
        artifact = self._coordinator.emit_handoff(phase, ops, run_state)
        report.handoff = artifact
        if not self._coordinator.should_pause(kind, run_state):
            return

        report.status = RunStatus.PAUSED
        report.halted_phase = phase.id
        report.resume_command = artifact.resume_hint
        self._write_marker(
            run_state,
            RunMarkerStatus.PAUSED,
            phase_id=phase.id,
            handoff_path=artifact.path,
            resume_command=artifact.resume_hint,
        )
        logger.info(
            f"Paused at {kind.value} breakpoint after phase {phase.id}",
            extra={
                "event": "run.paused",
                "metadata": {"phase": phase.id, "kind": kind.value, "handoff": artifact.path},
            },
        )
        raise _Pause()

    # -- rollback --------------------------------------------------------

    def _run_rollback(
        self,
        registry: Registry,
        plan: Plan,
        run_state: RunState,
        report: RunReport,
        shutdown: threading.Event,
    ) -> None:
        single_operation = run_state.scope.kind == ScopeKind.OPERATION
        for phase, ops in reversed(plan):
            if not phase.enabled and not single_operation:
                for op in reversed(ops):
                    self._outcome(report, op, OutcomeStatus.DISABLED, "phase disabled")
                continue

            for op in reversed(ops):
                if shutdown.is_set():
                    report.halted_phase = phase.id
                    raise _Interrupted()

                if not op.enabled:
                    self._outcome(report, op, OutcomeStatus.DISABLED, "operation disabled")
                    continue
                if not self._store.has(op.key):
                    self._outcome(report, op, OutcomeStatus.SKIPPED, "not checkpointed")
                    continue

                started = time.monotonic()
                result = self._invoke(registry.handler(op.id).rollback)
                duration = time.monotonic() - started
                if not result.success:
                    reason = result.reason or "rollback failed"
                    self._outcome(report, op, OutcomeStatus.FAILED, reason, duration)
                    raise _Halt(ExecutionError(op.phase_id, op.id, reason))

                self._store.clear(op.key)
                self._outcome(report, op, OutcomeStatus.ROLLED_BACK, result.reason, duration)
                logger.info(
                    f"Rolled back {op.key}",
                    extra={"event": "operation.rolled_back", "metadata": {"key": op.key}},
                )

    # -- helpers ---------------------------------------------------------

    def _timeout_for(self, op: OperationDef) -> Optional[float]:
        return op.timeout if op.timeout is not None else self._config.operation_timeout

    def _invoke(self, capability: Callable[[], Any]) -> OperationResult:
        """Call an operation capability; exceptions and timeouts become failed results."""
        try:
            result = capability()
        except (subprocess.TimeoutExpired, TimeoutError) as e:
            return OperationResult.fail(f"timed out: {e}")
        except Exception as e:
            logger.error(f"Operation raised {type(e).__name__}: {e}", exc_info=True)
            return OperationResult.fail(f"{type(e).__name__}: {e}")
        if not isinstance(result, OperationResult):
            return OperationResult.fail(f"returned {type(result).__name__}, expected OperationResult")
        return result

    def _outcome(
        self,
        report: RunReport,
        op: OperationDef,
        status: OutcomeStatus,
        reason: Optional[str] = None,
        duration: float = 0.0,
        effect: Optional[PlannedEffect] = None,
    ) -> None:
        report.outcomes.append(OperationOutcome(
            key=op.key,
            status=status,
            reason=reason,
            duration_seconds=duration,
            effect=effect,
        ))

    def _halt(self, report: RunReport, run_state: RunState, error: OperationError) -> None:
        report.status = RunStatus.HALTED
        report.halted_phase = error.phase_id
        report.halted_operation = error.key
        report.error = str(error)
        report.resume_command = self._coordinator.resume_command(run_state)
        if report.last_checkpointed is None:
            succeeded = [e for e in self._store.list() if e.succeeded]
            if succeeded:
                report.last_checkpointed = max(succeeded, key=lambda e: e.completed_at).key
        if run_state.is_live:
            self._write_marker(
                run_state,
                RunMarkerStatus.HALTED,
                phase_id=error.phase_id,
                operation_key=error.key,
                resume_command=report.resume_command,
            )
        logger.error(
            f"Run {run_state.run_id} halted at {error.key}: {error.reason}",
            extra={
                "event": "run.halted",
                "metadata": {"key": error.key, "error_type": type(error).__name__},
            },
        )

    def _write_marker(self, run_state: RunState, status: RunMarkerStatus, **fields: Any) -> None:
        self._store.write_marker(RunMarker(
            run_id=run_state.run_id,
            status=status,
            mode=run_state.mode.value,
            **fields,
        ))

    @contextmanager
    def _shutdown_handler_context(self) -> Iterator[threading.Event]:
        """
        Install SIGINT/SIGTERM handlers that set a shutdown event.

        The engine checks the event between operations, so an in-flight
        checkpoint write is never torn. A second SIGINT raises
        KeyboardInterrupt as usual.

        Outside the main thread, or when an event was injected, no handlers
        are installed. Original handlers are restored on exit.
        """
        if self._shutdown_event is not None:
            yield self._shutdown_event
            return

        shutdown_event = threading.Event()

        if threading.current_thread() is not threading.main_thread():
            yield shutdown_event
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, frame: Any) -> None:
            shutdown_event.set()
            signal.signal(signal.SIGINT, signal.default_int_handler)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield shutdown_event
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
