"""
CLI interface for stackforge.

Provides commands to run, simulate, validate and roll back provisioning
phases, inspect checkpoint state, and manage profiles.

Exit codes:
    0  success, or a clean pause at a breakpoint
    1  operation failure (precondition, execution, unmet dependency, persistence)
    2  configuration error
"""

import json
from pathlib import Path
from typing import Optional

import click
import yaml

from stackforge import __version__
from stackforge.errors import ConfigurationError, PersistenceError, UnmetDependencyError
from stackforge.schemas import (
    OutcomeStatus,
    RunMode,
    RunReport,
    RunScope,
    RunState,
    RunStatus,
    generate_run_id,
)
from stackforge.utils import (
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
)

EXIT_FAILURE = 1
EXIT_CONFIG = 2

OUTCOME_ICONS = {
    OutcomeStatus.EXECUTED: "✓",
    OutcomeStatus.VALIDATED: "✓",
    OutcomeStatus.ROLLED_BACK: "↺",
    OutcomeStatus.SIMULATED: "~",
    OutcomeStatus.SKIPPED: "-",
    OutcomeStatus.DISABLED: "·",
    OutcomeStatus.FAILED: "✗",
}


def _fail(message: str, code: int = EXIT_FAILURE) -> None:
    click.echo(f"✗ {message}", err=True)
    raise SystemExit(code)


def _get_config(ctx):
    """Load configuration once per invocation; config errors exit with code 2."""
    from stackforge.config import load_config

    if "config" not in ctx.obj:
        try:
            config = load_config(ctx.obj.get("config_path"))
        except ConfigurationError as e:
            _fail(f"Configuration error: {e}", EXIT_CONFIG)
        if ctx.obj.get("verbose"):
            config = config.with_overrides(log_level="DEBUG")
        ctx.obj["config"] = config
    return ctx.obj["config"]


def _get_registry(ctx, profile: Optional[str] = None):
    from stackforge.registry import load_registry

    config = _get_config(ctx)
    try:
        registry = load_registry(config.registry_path, config=config)
        profile = profile or config.default_profile
        if profile:
            registry = registry.with_profile(profile)
    except ConfigurationError as e:
        _fail(f"Configuration error: {e}", EXIT_CONFIG)
    return registry


def _get_store(ctx):
    from stackforge.checkpoint_store import FileCheckpointStore

    return FileCheckpointStore(_get_config(ctx).state_dir)


@click.group()
@click.version_option(version=__version__, prog_name="stackforge")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    help="Path to stackforge.yaml (default: search ./stackforge.yaml, then ~/.config/stackforge)",
)
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx, config_path: Optional[Path], verbose: bool):
    """
    stackforge - Resumable, phase-ordered project provisioning.

    Runs idempotent setup operations grouped into dependency-linked phases,
    checkpointing each one so interrupted runs resume where they stopped.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _print_report(report: RunReport) -> None:
    for outcome in report.outcomes:
        icon = OUTCOME_ICONS[outcome.status]
        line = f"  {icon} {outcome.key} [{outcome.status.value}]"
        if outcome.reason and outcome.status != OutcomeStatus.SKIPPED:
            line += f" {outcome.reason}"
        click.echo(line)

    if report.summary is not None:
        summary = report.summary
        click.echo()
        print_info(
            f"{summary.operations} operation(s): {summary.files_to_create} file(s) to create, "
            f"{summary.files_to_modify} to modify, {summary.commands} command(s), "
            f"~{format_duration(summary.estimated_duration)}"
        )
        if summary.pending_breakpoints:
            print_info(f"{summary.pending_breakpoints} breakpoint(s) would pause a live run")
        if summary.indeterminate:
            print_warning(f"{summary.indeterminate} operation(s) could not compute a plan")

    for warning in report.warnings:
        print_warning(warning)

    click.echo()
    elapsed = format_duration(report.elapsed_seconds)
    if report.status == RunStatus.COMPLETED:
        print_success(f"Run {report.run_id} completed ({report.mode.value}) in {elapsed}")
    elif report.status == RunStatus.PAUSED:
        print_info(f"Paused after phase {report.halted_phase} for {report.handoff.kind.value}")
        if report.handoff.path:
            print_info(f"Handoff: {report.handoff.path}")
        print_info(f"Resume with: {report.resume_command}")
    else:
        print_error(f"Run {report.run_id} halted: {report.error}")
        if report.last_checkpointed:
            print_info(f"Last checkpointed: {report.last_checkpointed}")
        if report.halted_operation:
            print_info(f"Fix {report.halted_operation} and run again")


@main.command("run")
@click.option("--phase", "phase_id", help="Run a single phase")
@click.option("--operation", "operation_id", help="Run a single operation (id or phase/id)")
@click.option("--dry-run", is_flag=True, help="Show what would be done without doing it")
@click.option("--validate", "validate_only", is_flag=True, help="Check preconditions only")
@click.option("--rollback", is_flag=True, help="Undo checkpointed operations in reverse order")
@click.option("--force", is_flag=True, help="Re-run operations even if checkpointed")
@click.option("--resume", is_flag=True, help="Continue after a breakpoint pause")
@click.option("--continue-through-breakpoints", "--skip-breaks", "continue_through", is_flag=True,
              help="Write handoffs but never pause")
@click.option("--profile", help="Profile name, number or alias")
@click.option("--json", "as_json", is_flag=True, help="Print the run report as JSON")
@click.pass_context
def run(ctx, phase_id, operation_id, dry_run, validate_only, rollback, force, resume,
        continue_through, profile, as_json):
    """Run phases in dependency order, resuming from checkpoints."""
    from stackforge.engine import ExecutionEngine
    from stackforge.utils import setup_logging

    if sum([dry_run, validate_only, rollback]) > 1:
        raise click.UsageError("--dry-run, --validate and --rollback are mutually exclusive")
    if phase_id and operation_id:
        raise click.UsageError("--phase and --operation are mutually exclusive")

    config = _get_config(ctx)
    run_id = generate_run_id()
    setup_logging(config, run_id=run_id, console_output=config.console_output and not as_json)
    registry = _get_registry(ctx, profile)

    if dry_run:
        mode = RunMode.DRY_RUN
    elif validate_only:
        mode = RunMode.VALIDATE
    elif rollback:
        mode = RunMode.ROLLBACK
    else:
        mode = RunMode.EXECUTE

    if operation_id:
        scope = RunScope.operation(operation_id)
    elif phase_id:
        scope = RunScope.phase(phase_id)
    else:
        scope = RunScope.all()

    run_state = RunState(
        mode=mode,
        scope=scope,
        resume_requested=resume,
        force_rerun=force,
        continue_through_breakpoints=continue_through,
        profile=registry.profile,
        run_id=run_id,
    )

    if not as_json:
        label = {RunMode.DRY_RUN: "DRY RUN", RunMode.VALIDATE: "VALIDATE", RunMode.ROLLBACK: "ROLLBACK"}
        print_banner(f"stackforge {label.get(mode, 'RUN')} ({scope})")

    engine = ExecutionEngine(config, _get_store(ctx))
    try:
        report = engine.run(registry, run_state)
    except ConfigurationError as e:
        _fail(f"Configuration error: {e}", EXIT_CONFIG)
    except UnmetDependencyError as e:
        _fail(str(e))
    except PersistenceError as e:
        _fail(f"Checkpoint state could not be saved: {e}")

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _print_report(report)

    if report.status == RunStatus.HALTED:
        raise SystemExit(EXIT_FAILURE)


@main.command("status")
@click.option("--profile", help="Profile name, number or alias")
@click.option("--json", "as_json", is_flag=True, help="Print status as JSON")
@click.pass_context
def status(ctx, profile, as_json):
    """Show checkpoint progress per phase."""
    registry = _get_registry(ctx, profile)
    store = _get_store(ctx)
    try:
        entries = {e.key: e for e in store.list()}
        marker = store.read_marker()
    except PersistenceError as e:
        _fail(f"Cannot read checkpoint state: {e}")

    phases = []
    for phase in registry.phase_order:
        ops = registry.operations_in(phase.id)
        enabled = [op for op in ops if op.enabled]
        done = [op for op in enabled if op.key in entries and entries[op.key].succeeded]
        phases.append({
            "id": phase.id,
            "enabled": phase.enabled,
            "done": len(done),
            "total": len(enabled),
            "operations": {
                op.id: entries[op.key].status.value if op.key in entries else "pending"
                for op in ops
            },
        })

    if as_json:
        click.echo(json.dumps({
            "phases": phases,
            "marker": marker.to_dict() if marker else None,
        }, indent=2))
        return

    for info in phases:
        if not info["enabled"]:
            state = "disabled"
        elif info["done"] == info["total"]:
            state = "complete"
        elif info["done"]:
            state = "partial"
        else:
            state = "pending"
        click.echo(f"{info['id']}: {state} ({info['done']}/{info['total']})")
        for op_id, op_state in info["operations"].items():
            click.echo(f"  {op_id}: {op_state}")

    if marker is not None:
        click.echo()
        click.echo(f"Last run: {marker.run_id} {marker.status.value} ({marker.mode})")
        if marker.phase_id:
            click.echo(f"  Phase: {marker.phase_id}")
        if marker.operation_key:
            click.echo(f"  Operation: {marker.operation_key}")
        if marker.handoff_path:
            click.echo(f"  Handoff: {marker.handoff_path}")
        if marker.resume_command:
            click.echo(f"  Resume: {marker.resume_command}")


@main.command("list")
@click.option("--profile", help="Profile name, number or alias")
@click.pass_context
def list_phases(ctx, profile):
    """List phases and operations in execution order."""
    registry = _get_registry(ctx, profile)
    for index, phase in enumerate(registry.phase_order, start=1):
        flags = []
        if not phase.enabled:
            flags.append("disabled")
        if phase.breakpoint_kind.value != "none":
            flags.append(f"breakpoint: {phase.breakpoint_kind.value}")
        suffix = f" ({', '.join(flags)})" if flags else ""
        click.echo(f"{index}. {phase.id} - {phase.display_name}{suffix}")
        for op in registry.operations_in(phase.id):
            details = [op.handler]
            if op.dependencies:
                details.append(f"after {', '.join(sorted(op.dependencies))}")
            if not op.enabled:
                details.append("disabled")
            click.echo(f"   {op.id} [{'; '.join(details)}]")


@main.command("clear-state")
@click.argument("target", required=False)
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def clear_state(ctx, target, yes):
    """
    Clear checkpoints.

    TARGET may be an operation id, an operation key (phase/operation) or a
    phase id. With no TARGET, all checkpoint state is removed.
    """
    store = _get_store(ctx)
    try:
        if target is None:
            if not yes:
                click.confirm("Clear ALL checkpoint state?", abort=True)
            store.clear_all()
            print_success("Cleared all checkpoint state")
            return

        if "/" in target:
            cleared = [target] if store.clear(target) else []
        else:
            registry = _get_registry(ctx)
            if registry.has_phase(target):
                cleared = store.clear_prefix(target)
            else:
                try:
                    key = registry.find_operation(target).key
                except ConfigurationError as e:
                    _fail(str(e), EXIT_CONFIG)
                cleared = [key] if store.clear(key) else []
    except PersistenceError as e:
        _fail(f"Cannot update checkpoint state: {e}")

    if cleared:
        for key in cleared:
            print_success(f"Cleared {key}")
    else:
        print_info(f"Nothing checkpointed for {target}")


@main.command("profiles")
@click.pass_context
def profiles(ctx):
    """List available profiles and aliases."""
    registry = _get_registry(ctx)
    available = registry.profiles
    if not available:
        click.echo("No profiles defined.")
        return
    for index, profile in enumerate(available.values(), start=1):
        line = f"{index}. {profile.key}"
        if profile.name:
            line += f" - {profile.name}"
        click.echo(line)
        if profile.description:
            click.echo(f"   {profile.description}")
    if registry.aliases:
        click.echo()
        click.echo("Aliases:")
        for alias, target in sorted(registry.aliases.items()):
            click.echo(f"  {alias} -> {target}")


@main.command("check")
@click.option("--profile", help="Profile name, number or alias")
@click.option("--strict", is_flag=True, help="Exit non-zero if there are warnings")
@click.pass_context
def check(ctx, profile, strict):
    """Load the registry and report problems."""
    from stackforge.registry import validate

    registry = _get_registry(ctx, profile)
    warnings = validate(registry)
    print_success(
        f"{len(registry.phases)} phase(s), {len(registry.operations)} operation(s) in {registry.source}"
    )
    for warning in warnings:
        print_warning(str(warning))
    if warnings and strict:
        raise SystemExit(EXIT_FAILURE)


STARTER_REGISTRY = {
    "phases": [
        {
            "id": "foundation",
            "name": "Foundation",
            "operations": [
                {
                    "id": "hello",
                    "command": "echo 'stackforge is set up'",
                },
            ],
        },
    ],
}


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
@click.option("--directory", type=click.Path(file_okay=False, path_type=Path), default=".",
              help="Project directory (default: current directory)")
def init(force: bool, directory: Path):
    """Write a starter stackforge.yaml and phases.yaml."""
    from stackforge.config import CONFIG_FILENAME

    directory.mkdir(parents=True, exist_ok=True)
    cfg_path = directory / CONFIG_FILENAME
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(EXIT_FAILURE)

    default_cfg = {
        "project_root": ".",
        "registry": "phases.yaml",
        "state_dir": ".stackforge/state",
        "handoff_dir": ".stackforge/handoffs",
        "log_file": ".stackforge/logs/stackforge-{date}.log",
        "log_level": "INFO",
        "log_format": "structured",
        "operation_timeout": 600,
        "flags": {},
        "env_file": ".env",
    }
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    registry_path = directory / "phases.yaml"
    if not registry_path.exists():
        registry_path.write_text(yaml.safe_dump(STARTER_REGISTRY, sort_keys=False))

    click.echo(f"Initialized stackforge config at {cfg_path}")
    click.echo(f"Define phases in {registry_path}, then run `stackforge run --dry-run`.")
